"""User and project configuration."""

from .loader import ConfigLoadError, ConfigLoader, default_search_paths
from .models import HermesConfig
from .tokens import CloudCredentials

__all__ = [
    "CloudCredentials",
    "ConfigLoadError",
    "ConfigLoader",
    "HermesConfig",
    "default_search_paths",
]
