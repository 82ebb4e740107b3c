import logging
import selectors
import socket
import threading
import time
from typing import Callable, Dict, List, Optional

BUFFER_SIZE = 65536

CLIENT_TO_TARGET = "client to target"
TARGET_TO_CLIENT = "target to client"

logger = logging.getLogger(__name__)


def copy(source: socket.socket, destination: socket.socket, buffer_size: int = BUFFER_SIZE,
         on_chunk: Optional[Callable[[int], None]] = None,
         wait_readable: Optional[Callable[[socket.socket], None]] = None) -> int:
    """
    Copy bytes from source to destination until source reaches EOF.

    Args:
        source: Socket to read from
        destination: Socket to write to
        buffer_size: Maximum bytes read per chunk
        on_chunk: Called with the size of every chunk written
        wait_readable: Called before every read; blocks until source is readable

    Returns:
        int: Total bytes copied

    Raises:
        OSError: A read or write failed, or wait_readable gave up
    """
    total = 0
    while True:
        if wait_readable is not None:
            wait_readable(source)
        data = source.recv(buffer_size)
        if not data:
            return total
        destination.sendall(data)
        total += len(data)
        if on_chunk is not None:
            on_chunk(len(data))


def _shutdown(sock: socket.socket, how: int):
    try:
        sock.shutdown(how)
    except OSError:
        # peer already gone or socket already shut down
        pass


class RelayPair:
    """
    Two relay directions for one routed session.

    EOF in one direction is forwarded as a half-close (SHUT_WR on the
    destination) and the other direction keeps running. An error in either
    direction shuts both sockets down so the other direction ends too.
    Both sockets are closed once both directions have finished.

    With an idle timeout the session is torn down only when neither
    direction has moved data for that long. A direction blocked writing to
    a slow receiver counts as active.
    """

    def __init__(self, client: socket.socket, target: socket.socket, session_id: str = "",
                 buffer_size: int = BUFFER_SIZE, idle_timeout: Optional[float] = None):
        self.client = client
        self.target = target
        self.session_id = session_id
        self.buffer_size = buffer_size
        self.idle_timeout = idle_timeout

        self.bytes_client_to_target = 0
        self.bytes_target_to_client = 0
        self.closed = threading.Event()

        self._torn_down = threading.Event()
        self._lock = threading.Lock()
        self._remaining = 2
        self._threads: List[threading.Thread] = []
        self._last_activity = time.monotonic()
        self._busy: Dict[str, bool] = {CLIENT_TO_TARGET: False, TARGET_TO_CLIENT: False}

    def start(self):
        """Start both directions on their own daemon threads."""
        self._last_activity = time.monotonic()
        self._threads = [
            threading.Thread(
                target=self._forward,
                args=(CLIENT_TO_TARGET, self.client, self.target),
                name=f"relay-{self.session_id}-up",
                daemon=True,
            ),
            threading.Thread(
                target=self._forward,
                args=(TARGET_TO_CLIENT, self.target, self.client),
                name=f"relay-{self.session_id}-down",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for both directions. Returns True if the session is closed."""
        for thread in self._threads:
            thread.join(timeout)
        return self.closed.is_set()

    @property
    def torn_down(self) -> bool:
        return self._torn_down.is_set()

    def _count(self, direction: str, size: int):
        if direction == CLIENT_TO_TARGET:
            self.bytes_client_to_target += size
        else:
            self.bytes_target_to_client += size
        with self._lock:
            self._last_activity = time.monotonic()

    def _wait_readable(self, direction: str, selector: selectors.BaseSelector):
        """
        Block until the direction's source socket is readable.

        Raises:
            TimeoutError: Neither direction has moved data for idle_timeout seconds
        """
        while True:
            with self._lock:
                self._busy[direction] = False
                idle_for = time.monotonic() - self._last_activity
                other_busy = any(self._busy.values())

            if not other_busy and idle_for >= self.idle_timeout:
                raise TimeoutError(f"session idle for {idle_for:.1f}s")

            wait = self.idle_timeout if other_busy else self.idle_timeout - idle_for
            if selector.select(max(wait, 0.01)):
                with self._lock:
                    self._busy[direction] = True
                    self._last_activity = time.monotonic()
                return

    def _forward(self, direction: str, src: socket.socket, dst: socket.socket):
        selector = None
        wait_readable = None
        try:
            if self.idle_timeout is not None:
                selector = selectors.DefaultSelector()
                selector.register(src, selectors.EVENT_READ)
                wait_readable = lambda sock: self._wait_readable(direction, selector)
            total = copy(src, dst, self.buffer_size, lambda size: self._count(direction, size), wait_readable)
        except OSError as e:
            if self._torn_down.is_set():
                logger.debug(f"Session {self.session_id} {direction} stopped after teardown: {e}")
            else:
                logger.error(f"Error forwarding {direction} (session {self.session_id}): {e}")
                self.teardown()
        else:
            logger.debug(f"Session {self.session_id} {direction} reached EOF after {total} bytes")
            _shutdown(dst, socket.SHUT_WR)
        finally:
            if selector is not None:
                selector.close()
            with self._lock:
                self._busy[direction] = False
            self._finish()

    def teardown(self):
        """Shut both sockets down so both directions stop."""
        self._torn_down.set()
        _shutdown(self.client, socket.SHUT_RDWR)
        _shutdown(self.target, socket.SHUT_RDWR)

    def _finish(self):
        with self._lock:
            self._remaining -= 1
            if self._remaining:
                return

        self.client.close()
        self.target.close()
        self.closed.set()
        logger.info(
            f"Session {self.session_id} closed: ↑{self.bytes_client_to_target} ↓{self.bytes_target_to_client} bytes"
        )
