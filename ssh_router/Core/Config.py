import json
import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .Dialer import DEFAULT_CONNECT_TIMEOUT
from .header import ConfigError
from .Relay import BUFFER_SIZE
from .RouteTable import RouteTable

DEFAULT_CONFIG_PATH = "/etc/ssh_router/config.toml"
DEFAULT_LISTEN_ADDRESS = "0.0.0.0"
DEFAULT_LISTEN_PORT = 2222


@dataclass
class RouterConfig:
    """
    Parsed router configuration.

    Attributes:
        routes: Local IP string -> "host:port" target string
        listen_port: Port the router listens on
        listen_address: Address the router binds
        connect_timeout: Seconds allowed for each outbound connect
        idle_timeout: Seconds neither relay direction may be quiet before the session is torn down
        buffer_size: Relay chunk size in bytes
        log_level: Logging level name
        log_file: Optional path of a rotating log file
    """
    routes: Dict[str, str] = field(default_factory=dict)
    listen_port: int = DEFAULT_LISTEN_PORT
    listen_address: str = DEFAULT_LISTEN_ADDRESS
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    idle_timeout: Optional[float] = None
    buffer_size: int = BUFFER_SIZE
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def route_table(self) -> RouteTable:
        """Validate every route and build the shared table."""
        return RouteTable.from_mapping(self.routes)


def _positive_number(data: Dict[str, Any], key: str, default, optional: bool = False):
    value = data.get(key, default)
    if value is None and optional:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"'{key}' must be a positive number, got {value!r}")
    return value


def config_from_dict(data: Dict[str, Any]) -> RouterConfig:
    """
    Build a RouterConfig from an already-parsed record.

    Raises:
        ConfigError: Missing routes or values of the wrong type
    """
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a table/object at the top level")

    routes = data.get("routes")
    if not isinstance(routes, dict):
        raise ConfigError("'routes' must be a table mapping local IPs to \"host:port\" targets")
    for key, value in routes.items():
        if not isinstance(value, str):
            raise ConfigError(f"Route target for {key!r} must be a string, got {value!r}")

    listen_port = data.get("listen_port", DEFAULT_LISTEN_PORT)
    if isinstance(listen_port, bool) or not isinstance(listen_port, int) or not 0 <= listen_port < 65536:
        raise ConfigError(f"'listen_port' must be an integer between 0 and 65535, got {listen_port!r}")

    listen_address = data.get("listen_address", DEFAULT_LISTEN_ADDRESS)
    if not isinstance(listen_address, str) or not listen_address:
        raise ConfigError(f"'listen_address' must be a non-empty string, got {listen_address!r}")

    buffer_size = data.get("buffer_size", BUFFER_SIZE)
    if isinstance(buffer_size, bool) or not isinstance(buffer_size, int) or buffer_size <= 0:
        raise ConfigError(f"'buffer_size' must be a positive integer, got {buffer_size!r}")

    logging_cfg = data.get("logging", {})
    if not isinstance(logging_cfg, dict):
        raise ConfigError("'logging' must be a table")
    log_level = str(logging_cfg.get("level", "INFO")).upper()
    if log_level not in logging.getLevelNamesMapping():
        raise ConfigError(f"'logging.level' must be a log level name, got {logging_cfg.get('level')!r}")
    log_file = logging_cfg.get("file")
    if log_file is not None and not isinstance(log_file, str):
        raise ConfigError(f"'logging.file' must be a path string, got {log_file!r}")

    return RouterConfig(
        routes=dict(routes),
        listen_port=listen_port,
        listen_address=listen_address,
        connect_timeout=_positive_number(data, "connect_timeout", DEFAULT_CONNECT_TIMEOUT),
        idle_timeout=_positive_number(data, "idle_timeout", None, optional=True),
        buffer_size=buffer_size,
        log_level=log_level,
        log_file=log_file,
    )


def load_config(path: Union[str, Path] = DEFAULT_CONFIG_PATH) -> RouterConfig:
    """
    Load router configuration from a TOML or JSON file.

    Files ending in .json are read as JSON; anything else as TOML.

    Args:
        path: Config file path

    Returns:
        RouterConfig

    Raises:
        ConfigError: File unreadable, unparsable or invalid
    """
    path = Path(path)
    try:
        if path.suffix.lower() == ".json":
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        else:
            with open(path, "rb") as f:
                data = tomllib.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    except (tomllib.TOMLDecodeError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot parse config {path}: {e}") from e

    return config_from_dict(data)
