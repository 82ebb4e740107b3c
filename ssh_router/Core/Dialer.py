import logging
import socket
from typing import Optional

from .header import DialError, TargetAddress

DEFAULT_CONNECT_TIMEOUT = 5.0

logger = logging.getLogger(__name__)


class Dialer:
    """Opens outbound connections to route targets."""

    def __init__(self, timeout: float = DEFAULT_CONNECT_TIMEOUT):
        """
        Args:
            timeout: Connect timeout in seconds
        """
        self.timeout = timeout

    def connect(self, target: TargetAddress, timeout: Optional[float] = None) -> socket.socket:
        """
        Connect to target. No retries.

        Raises:
            DialError: Resolution, refusal or timeout
        """
        if timeout is None:
            timeout = self.timeout

        logger.debug(f"Dialing {target} (timeout {timeout}s)")
        try:
            # create_connection closes its own socket on failure
            sock = socket.create_connection((target.host, target.port), timeout=timeout)
        except OSError as e:
            raise DialError(target, e) from e

        try:
            # relay reads and writes block; only the connect is bounded
            sock.settimeout(None)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError as e:
            sock.close()
            raise DialError(target, e) from e
        return sock
