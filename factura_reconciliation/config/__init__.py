"""
Configuration management for the reconciliation system.

Loads and stores reconciliation settings as JSON, applies environment
overrides and validates the result.
"""

from .config_manager import ConfigManager
from .validation import SettingsValidator, ValidationResult

__all__ = [
    "ConfigManager",
    "SettingsValidator",
    "ValidationResult"
]
