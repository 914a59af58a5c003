"""Core."""

from .config import (
    NodeproxyConfig,
    PerformanceConfig,
    ServerConfig,
    TimeoutConfig,
    clear_config,
    get_config,
    load_config_from_file,
    server_settings_from_file,
)
from .errors import DialError, HijackError, HijackNotSupportedError, NodeproxyError

__all__ = [
    # Config
    "ServerConfig",
    "NodeproxyConfig",
    "PerformanceConfig",
    "TimeoutConfig",
    "get_config",
    "server_settings_from_file",
    "clear_config",
    "load_config_from_file",
    # Errors
    "NodeproxyError",
    "DialError",
    "HijackError",
    "HijackNotSupportedError",
]
