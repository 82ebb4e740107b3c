import ipaddress
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Union

from .header import ConfigError, TargetAddress

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def normalize_ip(value: Any) -> IPAddress:
    """
    Turn an IP string, ip_address object or sockaddr tuple into an ip_address.

    IPv4-mapped IPv6 addresses are unwrapped so "::ffff:10.0.0.5" and
    "10.0.0.5" are the same key. Any port in a sockaddr tuple is dropped.
    """
    if isinstance(value, tuple):
        value = value[0]
    if isinstance(value, str):
        # scoped link-local addresses from getsockname() carry "%iface"
        value = value.split("%", 1)[0]
    ip = ipaddress.ip_address(value)
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


class RouteTable:
    """
    Immutable mapping from the local IP a connection arrived on to its
    upstream target. Built once at startup and shared read-only by every
    connection handler.
    """

    def __init__(self, routes: Optional[Mapping[IPAddress, TargetAddress]] = None):
        self._routes = MappingProxyType(dict(routes or {}))

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str]) -> "RouteTable":
        """
        Validate and parse configured routes.

        Args:
            mapping: Local IP string -> "host:port" target string

        Returns:
            RouteTable

        Raises:
            ConfigError: An entry is malformed or two keys name the same IP
        """
        routes: Dict[IPAddress, TargetAddress] = {}
        for key, value in mapping.items():
            try:
                ip = normalize_ip(str(key).strip())
            except ValueError:
                raise ConfigError(f"Invalid route key {key!r}: not an IP address") from None
            try:
                target = TargetAddress.parse(value)
            except ValueError as e:
                raise ConfigError(f"Invalid route target for {key!r}: {e}") from None
            if ip in routes:
                raise ConfigError(f"Duplicate route for {ip} (key {key!r})")
            routes[ip] = target
        return cls(routes)

    def resolve(self, local_addr: Any) -> Optional[TargetAddress]:
        """Return the target for a local address, or None when unrouted."""
        try:
            ip = normalize_ip(local_addr)
        except ValueError:
            return None
        return self._routes.get(ip)

    def items(self):
        return self._routes.items()

    def __contains__(self, local_addr: Any) -> bool:
        return self.resolve(local_addr) is not None

    def __iter__(self) -> Iterator[IPAddress]:
        return iter(self._routes)

    def __len__(self) -> int:
        return len(self._routes)

    def __repr__(self) -> str:
        pairs = ", ".join(f"{ip} -> {target}" for ip, target in self._routes.items())
        return f"RouteTable({pairs})"
