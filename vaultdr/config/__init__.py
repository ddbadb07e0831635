"""Configuration management for vaultdr."""

from .manager import ConfigManager
from .schemas import DR_CONFIG_SCHEMA
from .settings import DRConfig
from .validator import ConfigValidationError

__all__ = ["ConfigManager", "ConfigValidationError", "DRConfig", "DR_CONFIG_SCHEMA"]
