# tunnelgate Core Module
from .config import Settings, get_settings, settings
from .exceptions import (
    ConfigurationError,
    ProcessError,
    ProviderAPIError,
    RoutingError,
    TunnelGateError,
)
from .logging import get_logger, setup_logging

__all__ = [
    "settings",
    "get_settings",
    "Settings",
    "setup_logging",
    "get_logger",
    "TunnelGateError",
    "ConfigurationError",
    "ProviderAPIError",
    "ProcessError",
    "RoutingError",
]
