"""
Configuration system for streamdash.

Provides layered configuration loading (defaults < user < project < env)
with pydantic validation.
"""

from .env import load_layered_env
from .loader import ConfigError, deep_merge, load_config
from .models import (
    ApiConfig,
    DiscoveryConfig,
    EventsConfig,
    ScannerConfig,
    StreamdashConfig,
    get_project_storage_dir,
)

__all__ = [
    "ApiConfig",
    "ConfigError",
    "DiscoveryConfig",
    "EventsConfig",
    "ScannerConfig",
    "StreamdashConfig",
    "deep_merge",
    "get_project_storage_dir",
    "load_config",
    "load_layered_env",
]
