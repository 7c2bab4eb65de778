"""Configuration module for stackkit.

This module provides YAML configuration parsing and validation for stackkit.yaml.
"""

from stackkit.config.parser import (
    BuildConfig,
    PathsConfig,
    StackKitConfig,
    ConfigError,
    parse_config,
)

__all__ = [
    "BuildConfig",
    "PathsConfig",
    "StackKitConfig",
    "ConfigError",
    "parse_config",
]
