import logging
import uuid
from typing import Optional

from .Dialer import Dialer
from .header import DialError, InboundConnection, SessionState
from .Relay import BUFFER_SIZE, RelayPair
from .RouteTable import RouteTable

logger = logging.getLogger(__name__)


class ConnectionRouter:
    """
    Routes one inbound connection at a time: route lookup, dial, relay.

    A single instance is shared by every connection thread; it holds no
    per-session state.
    """

    def __init__(self, route_table: RouteTable, dialer: Optional[Dialer] = None,
                 buffer_size: int = BUFFER_SIZE, idle_timeout: Optional[float] = None):
        self.route_table = route_table
        self.dialer = dialer or Dialer()
        self.buffer_size = buffer_size
        self.idle_timeout = idle_timeout

    def handle(self, inbound: InboundConnection) -> SessionState:
        """
        Drive one connection through the routing state machine.

        Args:
            inbound: The accepted connection

        Returns:
            SessionState: NO_ROUTE, DIAL_FAILED or RELAYING
        """
        session_id = str(uuid.uuid4())[:8]
        logger.info(f"Incoming connection to: {inbound.describe_local()} from {inbound.describe_peer()}")

        target = self.route_table.resolve(inbound.local_addr)
        if target is None:
            logger.warning(f"No matching route found for local address {inbound.local_ip}")
            return self._close(inbound, SessionState.NO_ROUTE)

        inbound.target = target
        inbound.state = SessionState.ROUTE_RESOLVED
        logger.info(f"Routing connection {inbound.describe_peer()} -> {target} (session {session_id})")

        inbound.state = SessionState.DIALING
        try:
            outbound = self.dialer.connect(target)
        except DialError as e:
            logger.warning(f"Failed to connect to target {e.target}: {e.cause}")
            return self._close(inbound, SessionState.DIAL_FAILED)

        relay = RelayPair(
            inbound.sock,
            outbound,
            session_id=session_id,
            buffer_size=self.buffer_size,
            idle_timeout=self.idle_timeout,
        )
        try:
            relay.start()
        except Exception:
            # inbound is closed by the caller
            outbound.close()
            raise
        inbound.state = SessionState.RELAYING
        return inbound.state

    def _close(self, inbound: InboundConnection, state: SessionState) -> SessionState:
        inbound.sock.close()
        inbound.state = state
        return state
