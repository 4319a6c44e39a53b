"""Configuration parsing and validation."""

from .models import (
    ExecutorConfig,
    LoggingConfig,
    ProviderConfig,
    RetryConfig,
    StateConfig,
    TerrapinConfig,
)
from .parser import CONFIG_FILENAME, load_config

__all__ = [
    "TerrapinConfig",
    "StateConfig",
    "ExecutorConfig",
    "RetryConfig",
    "ProviderConfig",
    "LoggingConfig",
    "CONFIG_FILENAME",
    "load_config",
]
