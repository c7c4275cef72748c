"""Multi-port TCP forwarding proxy."""

from .config import PortPair, ProxyConfig
from .errors import BindError, ConfigError, FatalError
from .supervisor import ProxySupervisor, run

__version__ = "1.0.0"

__all__ = [
    "BindError",
    "ConfigError",
    "FatalError",
    "PortPair",
    "ProxyConfig",
    "ProxySupervisor",
    "run",
]
