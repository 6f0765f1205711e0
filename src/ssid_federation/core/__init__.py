"""Core infrastructure: configuration, logging and the exception hierarchy."""

from .config import FederationSettings, clear_config_cache, get_config
from .exceptions import FederationError
from .logging import configure_logging, get_logger

__all__ = [
    "FederationError",
    "FederationSettings",
    "clear_config_cache",
    "configure_logging",
    "get_config",
    "get_logger",
]
