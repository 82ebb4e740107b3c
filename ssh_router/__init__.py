from .Core.Config import RouterConfig, load_config
from .Core.ConnectionRouter import ConnectionRouter
from .Core.Dialer import Dialer
from .Core.header import ConfigError, DialError, SessionState, SshRouterError, TargetAddress
from .Core.Relay import RelayPair, copy
from .Core.RouteTable import RouteTable
from .SshRouterServer import SshRouterServer

__version__ = "0.1.0"
