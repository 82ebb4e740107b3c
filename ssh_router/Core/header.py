import ipaddress
import socket
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

# =============================================================================
# Core Types & Errors
# =============================================================================

class SessionState(Enum):
    ACCEPTED = "accepted"
    ROUTE_RESOLVED = "route_resolved"
    DIALING = "dialing"
    RELAYING = "relaying"
    NO_ROUTE = "no_route"
    DIAL_FAILED = "dial_failed"


class SshRouterError(Exception):
    """Base error for the router."""


class ConfigError(SshRouterError):
    """Configuration is missing or invalid. Fatal at startup."""


class DialError(SshRouterError):
    """Outbound connect to a target failed."""

    def __init__(self, target: "TargetAddress", cause: BaseException):
        self.target = target
        self.cause = cause
        super().__init__(f"Failed to connect to target {target}: {cause}")


@dataclass(frozen=True)
class TargetAddress:
    host: str
    port: int

    @classmethod
    def parse(cls, value: str) -> "TargetAddress":
        """
        Parse a "host:port" string.

        IPv6 literals must be bracketed ("[::1]:22").

        Raises:
            ValueError: The string is not a valid host:port pair
        """
        if not isinstance(value, str):
            raise ValueError(f"target must be a string, got {type(value).__name__}")

        text = value.strip()
        if text.startswith("["):
            end = text.find("]")
            if end == -1 or text[end + 1:end + 2] != ":":
                raise ValueError(f"invalid target address: {value!r}")
            host, port_str = text[1:end], text[end + 2:]
            ipaddress.IPv6Address(host)
        else:
            host, sep, port_str = text.rpartition(":")
            if not sep or not host or ":" in host:
                raise ValueError(f"invalid target address: {value!r}")

        if not port_str.isdigit():
            raise ValueError(f"invalid port in target address: {value!r}")
        port = int(port_str)
        if not 0 < port < 65536:
            raise ValueError(f"port out of range in target address: {value!r}")

        return cls(host=host, port=port)

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass
class InboundConnection:
    sock: socket.socket
    local_addr: Tuple
    peer_addr: Tuple
    start_time: datetime = field(default_factory=datetime.now)
    target: Optional[TargetAddress] = None
    state: SessionState = SessionState.ACCEPTED

    @classmethod
    def from_socket(cls, sock: socket.socket, peer_addr: Optional[Tuple] = None) -> "InboundConnection":
        """Tag an accepted socket with the local address it arrived on."""
        return cls(
            sock=sock,
            local_addr=sock.getsockname(),
            peer_addr=peer_addr if peer_addr is not None else sock.getpeername(),
        )

    @property
    def local_ip(self) -> str:
        return self.local_addr[0]

    def describe_peer(self) -> str:
        return f"{self.peer_addr[0]}:{self.peer_addr[1]}"

    def describe_local(self) -> str:
        return f"{self.local_addr[0]}:{self.local_addr[1]}"
