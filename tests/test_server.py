import logging
import os
import socket
import struct
import threading
import time

import pytest

from conftest import closed_port, recv_all, recv_exact
from ssh_router.Core.RouteTable import RouteTable
from ssh_router.SshRouterServer import SshRouterServer


def connect(server, host="127.0.0.1"):
    return socket.create_connection((host, server.server_address[1]), timeout=5)


def test_bytes_pass_through_unmodified(start_router, echo_server):
    router = start_router({"127.0.0.1": echo_server.target})
    payload = os.urandom(512 * 1024)

    client = connect(router)
    try:
        sender = threading.Thread(
            target=lambda: (client.sendall(payload), client.shutdown(socket.SHUT_WR)),
            daemon=True,
        )
        sender.start()
        echoed = recv_all(client, timeout=10)
        sender.join(5)
    finally:
        client.close()

    assert echoed == payload


def test_client_half_close_still_receives_reply(start_router, reply_server):
    router = start_router({"127.0.0.1": reply_server.target})

    client = connect(router)
    try:
        client.sendall(b"a" * 1000)
        client.shutdown(socket.SHUT_WR)
        assert recv_all(client) == b"got 1000"
    finally:
        client.close()


def test_no_route_closes_connection(start_router, echo_server, caplog):
    router = start_router({"10.0.0.5": echo_server.target})

    with caplog.at_level(logging.WARNING, logger="ssh_router"):
        client = connect(router)
        try:
            assert recv_all(client) == b""
        finally:
            client.close()

    assert echo_server.accepted == 0
    assert any("No matching route" in r.getMessage() for r in caplog.records)


def test_empty_table_closes_every_connection(start_router):
    router = start_router({})

    for _ in range(3):
        client = connect(router)
        try:
            assert recv_all(client) == b""
        finally:
            client.close()


def test_unreachable_target_closes_connection(start_router):
    router = start_router({"127.0.0.1": f"127.0.0.1:{closed_port()}"}, connect_timeout=2)

    client = connect(router)
    try:
        assert recv_all(client) == b""
    finally:
        client.close()


def test_reset_session_does_not_affect_other_sessions(start_router, echo_server):
    router = start_router({"127.0.0.1": echo_server.target})

    survivor = connect(router)
    victim = connect(router)
    try:
        survivor.sendall(b"one")
        assert recv_exact(survivor, 3) == b"one"
        victim.sendall(b"two")
        assert recv_exact(victim, 3) == b"two"

        # abortive close sends RST to the router
        victim.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
        victim.close()
        time.sleep(0.2)

        survivor.sendall(b"three")
        assert recv_exact(survivor, 5) == b"three"

        late = connect(router)
        try:
            late.sendall(b"four")
            assert recv_exact(late, 4) == b"four"
        finally:
            late.close()
    finally:
        survivor.close()


def test_concurrent_sessions_on_different_routes(start_router, echo_server, reply_server):
    router = start_router(
        {"127.0.0.1": echo_server.target, "127.0.0.2": reply_server.target},
        listening_addr="0.0.0.0",
    )
    try:
        second = connect(router, "127.0.0.2")
    except OSError:
        pytest.skip("127.0.0.2 is not routable to loopback on this platform")

    first = connect(router, "127.0.0.1")
    try:
        first.sendall(b"ping")
        second.sendall(b"12345")
        second.shutdown(socket.SHUT_WR)

        assert recv_all(second) == b"got 5"
        assert recv_exact(first, 4) == b"ping"
        first.sendall(b"pong")
        assert recv_exact(first, 4) == b"pong"
    finally:
        first.close()
        second.close()

    assert echo_server.accepted == 1
    assert reply_server.accepted == 1


def test_stop_closes_listener(echo_server):
    server = SshRouterServer(RouteTable.from_mapping({"127.0.0.1": echo_server.target}),
                             listening_addr="127.0.0.1", listening_port=0)
    server.bind()
    port = server.server_address[1]
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    time.sleep(0.1)

    assert server.stop(timeout=3)
    thread.join(3)
    assert not thread.is_alive()
    assert server.server_socket is None
    with pytest.raises(OSError):
        socket.create_connection(("127.0.0.1", port), timeout=1)


def test_stop_keeps_established_sessions(echo_server):
    server = SshRouterServer(RouteTable.from_mapping({"127.0.0.1": echo_server.target}),
                             listening_addr="127.0.0.1", listening_port=0)
    server.bind()
    threading.Thread(target=server.serve_forever, daemon=True).start()

    client = connect(server)
    try:
        client.sendall(b"before")
        assert recv_exact(client, 6) == b"before"

        assert server.stop(timeout=3)

        client.sendall(b"after")
        assert recv_exact(client, 5) == b"after"
    finally:
        client.close()


def test_bind_failure_raises():
    holder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    holder.bind(("127.0.0.1", 0))
    holder.listen(1)
    try:
        server = SshRouterServer(RouteTable(), listening_addr="127.0.0.1",
                                 listening_port=holder.getsockname()[1])
        with pytest.raises(OSError):
            server.bind()
        assert server.server_socket is None
    finally:
        holder.close()


def test_handler_error_is_isolated(start_router, echo_server, caplog):
    router = start_router({"127.0.0.1": echo_server.target})

    def explode(inbound):
        raise RuntimeError("boom")

    original = router.router.handle
    router.router.handle = explode
    with caplog.at_level(logging.ERROR, logger="ssh_router"):
        client = connect(router)
        try:
            assert recv_all(client) == b""
        finally:
            client.close()
    router.router.handle = original

    assert any("Error handling client" in r.getMessage() for r in caplog.records)

    client = connect(router)
    try:
        client.sendall(b"still up")
        assert recv_exact(client, 8) == b"still up"
    finally:
        client.close()
