"""
SSH Router Server
Description: A transparent TCP router. Each inbound connection is forwarded
             to the upstream chosen by the local IP address the client
             connected to, then relayed byte for byte in both directions.
"""

import logging
import socket
import threading
import time
from typing import List, Optional, Tuple

from .Core.ConnectionRouter import ConnectionRouter
from .Core.Config import DEFAULT_LISTEN_ADDRESS, DEFAULT_LISTEN_PORT
from .Core.Dialer import DEFAULT_CONNECT_TIMEOUT, Dialer
from .Core.header import InboundConnection
from .Core.Relay import BUFFER_SIZE
from .Core.RouteTable import RouteTable

logger = logging.getLogger(__name__)


class SshRouterServer:
    """
    Listens for TCP connections and hands each one to a ConnectionRouter
    on its own thread.

    Attributes:
        route_table (RouteTable): Shared, read-only route table
        listening_addr (str): The address on which the router listens
        listening_port (int): The port on which the router listens
        router (ConnectionRouter): Per-connection routing logic
        server_socket (socket): The listening socket, None until bound
        client_threads (list): Connection threads still being tracked
        running (bool): Flag indicating if the accept loop is running
    """

    def __init__(self, route_table: RouteTable, listening_addr: str = DEFAULT_LISTEN_ADDRESS,
                 listening_port: int = DEFAULT_LISTEN_PORT, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
                 idle_timeout: Optional[float] = None, buffer_size: int = BUFFER_SIZE,
                 router: Optional[ConnectionRouter] = None):
        """
        Initialize the router server.

        Args:
            route_table (RouteTable): Routes keyed by local IP
            listening_addr (str): The address to listen on (default: '0.0.0.0')
            listening_port (int): The port to listen on (default: 2222)
            connect_timeout (float): Outbound connect timeout in seconds (default: 5)
            idle_timeout (float): Relay idle timeout in seconds, None to disable
            buffer_size (int): Relay chunk size in bytes
            router (ConnectionRouter): Custom router, built from the above if None
        """
        self.route_table = route_table
        self.listening_addr = listening_addr
        self.listening_port = listening_port
        self.router = router or ConnectionRouter(
            route_table,
            Dialer(timeout=connect_timeout),
            buffer_size=buffer_size,
            idle_timeout=idle_timeout,
        )
        self.server_socket: Optional[socket.socket] = None
        self.client_threads: List[threading.Thread] = []
        self.running = False
        self._stopped = threading.Event()

    @property
    def server_address(self) -> Tuple:
        """The bound (host, port); useful when listening on port 0."""
        if self.server_socket is None:
            raise RuntimeError("server socket is not bound")
        return self.server_socket.getsockname()

    def bind(self):
        """
        Create and bind the listening socket.

        Raises:
            OSError: The address cannot be bound. Fatal at startup.
        """
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.listening_addr, self.listening_port))
            sock.listen(128)
            sock.settimeout(1)
        except OSError:
            sock.close()
            raise
        self.server_socket = sock
        logger.info(f"Listening on {self.listening_addr}:{self.server_address[1]}")

    def handle_client(self, client_socket: socket.socket, addr: Tuple):
        """
        Route one accepted connection.

        Args:
            client_socket (socket): The socket connected to the client
            addr (tuple): The client's address
        """
        try:
            inbound = InboundConnection.from_socket(client_socket, addr)
        except OSError as e:
            logger.warning(f"Connection from {addr[0]}:{addr[1]} dropped before routing: {e}")
            client_socket.close()
            return

        try:
            self.router.handle(inbound)
        except Exception:
            logger.exception(f"Error handling client {inbound.describe_peer()}")
            client_socket.close()

    def signal_handler(self, sig, frame):
        """
        Handle shutdown signals and stop accepting connections.

        Args:
            sig (int): Signal number
            frame: Current stack frame
        """
        logger.info(f"Received signal {sig}, shutting down...")
        self.stop()

    def serve_forever(self):
        """
        Accept connections until stop() is called.
        """
        if self.server_socket is None:
            self.bind()

        self.running = True
        self._stopped.clear()
        logger.info("✅ Accept loop started")

        try:
            while self.running:
                try:
                    client_socket, addr = self.server_socket.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    if self.running:
                        logger.error(f"Error accepting connection: {e}")
                        time.sleep(0.1)
                    continue

                client_socket.settimeout(None)
                client_handler = threading.Thread(
                    target=self.handle_client,
                    args=(client_socket, addr),
                    daemon=True,
                )
                client_handler.start()
                self.client_threads.append(client_handler)

                # Clean up finished threads
                self.client_threads = [t for t in self.client_threads if t.is_alive()]
        finally:
            self.cleanup()
            self._stopped.set()

    def start(self):
        """
        Bind the listening socket and run the accept loop.
        """
        self.bind()
        self.serve_forever()

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Stop accepting connections. Established sessions keep running.

        Args:
            timeout (float): Seconds to wait for the accept loop to exit

        Returns:
            bool: True if the accept loop has exited
        """
        self.running = False
        if timeout is None:
            return self._stopped.is_set()
        return self._stopped.wait(timeout)

    def cleanup(self):
        """
        Close the listening socket.
        """
        if self.server_socket:
            self.server_socket.close()
            self.server_socket = None
            logger.info("🛑 Listener closed")
