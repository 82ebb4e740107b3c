import logging
import socket
import threading

import pytest

from ssh_router.Core.RouteTable import RouteTable
from ssh_router.SshRouterServer import SshRouterServer


def recv_all(sock: socket.socket, timeout: float = 5.0) -> bytes:
    """Read until EOF."""
    sock.settimeout(timeout)
    chunks = []
    while True:
        data = sock.recv(65536)
        if not data:
            return b"".join(chunks)
        chunks.append(data)


def recv_exact(sock: socket.socket, size: int, timeout: float = 5.0) -> bytes:
    sock.settimeout(timeout)
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


def closed_port() -> int:
    """A loopback port nothing is listening on."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


def loopback_pair():
    """Return (client, accepted) connected over 127.0.0.1."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    client = socket.create_connection(listener.getsockname(), timeout=5)
    accepted, _ = listener.accept()
    listener.close()
    return client, accepted


class TargetServer:
    """
    Threaded upstream used as a route target.

    mode "echo" echoes until EOF then closes; mode "reply" reads until EOF,
    then answers with b"got <n>" and closes.
    """

    def __init__(self, mode: str = "echo"):
        self.mode = mode
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(16)
        self.sock.settimeout(0.2)
        self.address = self.sock.getsockname()
        self.accepted = 0
        self.eof_seen = threading.Event()
        self._running = True
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    @property
    def target(self) -> str:
        return f"{self.address[0]}:{self.address[1]}"

    def _serve(self):
        while self._running:
            try:
                conn, _ = self.sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            self.accepted += 1
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn: socket.socket):
        conn.settimeout(10)
        received = 0
        try:
            while True:
                data = conn.recv(65536)
                if not data:
                    self.eof_seen.set()
                    break
                received += len(data)
                if self.mode == "echo":
                    conn.sendall(data)
            if self.mode == "reply":
                conn.sendall(f"got {received}".encode())
        except OSError:
            self.eof_seen.set()
        finally:
            conn.close()

    def close(self):
        self._running = False
        self._thread.join(2)
        self.sock.close()


@pytest.fixture
def echo_server():
    server = TargetServer("echo")
    yield server
    server.close()


@pytest.fixture
def reply_server():
    server = TargetServer("reply")
    yield server
    server.close()


@pytest.fixture
def start_router():
    """Start SshRouterServer instances on an ephemeral port; stopped at teardown."""
    servers = []

    def _start(routes, listening_addr="127.0.0.1", **kwargs):
        table = routes if isinstance(routes, RouteTable) else RouteTable.from_mapping(routes)
        server = SshRouterServer(table, listening_addr=listening_addr, listening_port=0, **kwargs)
        server.bind()
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        servers.append(server)
        return server

    yield _start

    for server in servers:
        server.stop(timeout=3)


@pytest.fixture
def restore_logging():
    """Undo logging.basicConfig(force=True) done by the code under test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
