"""Configuration loading and validation."""

from .models import (
    # Enums
    ScanStatus,
    # Config models
    AppConfig,
    ChainConfig,
    DatabaseConfig,
    LoggingConfig,
    RetryConfig,
    ScannerConfig,
    SourceConfig,
)
from .loader import ConfigError, load_app_config, resolve_config_path, validate_app_config_file

__all__ = [
    # Enums
    "ScanStatus",
    # Config models
    "AppConfig",
    "ChainConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "RetryConfig",
    "ScannerConfig",
    "SourceConfig",
    # Loaders
    "ConfigError",
    "load_app_config",
    "resolve_config_path",
    "validate_app_config_file",
]
