"""
Configuration manager for the reconciliation system.

Stores reconciliation settings as JSON in a configuration directory and
resolves the ledger database URL. Environment variables override values from
the settings file.
"""

import os
import json
import time
from dataclasses import fields
from typing import Any, Dict, Optional
from pathlib import Path

from factura_reconciliation.models import ConfigurationError, ReconciliationSettings
from .validation import SettingsValidator

import logging
logger = logging.getLogger(__name__)

ENV_PREFIX = 'FACTURAS_'
DATABASE_URL_ENV = 'FACTURAS_DATABASE_URL'
CONFIG_DIR_ENV = 'FACTURAS_CONFIG_DIR'


class ConfigManager:
    """
    Manages settings storage and retrieval for the reconciliation system.

    Settings are read from ``settings.json`` in the configuration directory,
    then each field can be overridden by an environment variable named
    ``FACTURAS_<FIELD>`` (for example ``FACTURAS_AUTO_CREATE_THRESHOLD``).
    """

    def __init__(self, config_dir: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        """
        Initialize configuration manager.

        Args:
            config_dir: Directory to store configuration files. If None, uses
                FACTURAS_CONFIG_DIR or ~/.factura_reconciliation/config.
            environ: Environment mapping (defaults to os.environ)
        """
        self.logger = logging.getLogger(f"{__name__}.ConfigManager")
        self.environ = os.environ if environ is None else environ

        if config_dir:
            self.config_dir = Path(config_dir)
        elif self.environ.get(CONFIG_DIR_ENV):
            self.config_dir = Path(self.environ[CONFIG_DIR_ENV])
        else:
            self.config_dir = Path.home() / '.factura_reconciliation' / 'config'

        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.settings_file = self.config_dir / 'settings.json'
        self.validator = SettingsValidator()

        self.logger.info(f"Configuration manager initialized with directory: {self.config_dir}")

    def load_settings(self) -> ReconciliationSettings:
        """
        Load reconciliation settings.

        Returns:
            ReconciliationSettings from the file (defaults if not found) with
            environment overrides applied

        Raises:
            ConfigurationError: If the file is unreadable, an override is
                malformed or the resulting settings are invalid
        """
        settings_data: Dict[str, Any] = {}
        if self.settings_file.exists():
            try:
                with open(self.settings_file, 'r') as f:
                    settings_data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                self.logger.error(f"Failed to load settings: {e}")
                raise ConfigurationError(f"Could not read settings file {self.settings_file}: {e}")

            # Remove metadata
            settings_data.pop('updated_at', None)
        else:
            self.logger.info("No settings file found, using defaults")

        settings_data.update(self._environment_overrides())
        settings = ReconciliationSettings.from_dict(settings_data)

        result = self.validator.validate_settings(settings)
        for warning in result.warnings:
            self.logger.warning(f"Settings: {warning}")
        if not result.is_valid:
            raise ConfigurationError(f"Invalid settings: {'; '.join(result.errors)}")

        return settings

    def save_settings(self, settings: ReconciliationSettings) -> bool:
        """
        Save reconciliation settings.

        Args:
            settings: Settings to save

        Returns:
            True if saved successfully, False otherwise

        Raises:
            ConfigurationError: If the settings are invalid
        """
        result = self.validator.validate_settings(settings)
        if not result.is_valid:
            raise ConfigurationError(f"Invalid settings: {'; '.join(result.errors)}")

        try:
            settings_data = settings.to_dict()
            settings_data['updated_at'] = time.time()

            with open(self.settings_file, 'w') as f:
                json.dump(settings_data, f, indent=2)

            self.logger.info("Saved reconciliation settings")
            return True

        except OSError as e:
            self.logger.error(f"Failed to save reconciliation settings: {e}")
            return False

    def get_database_url(self) -> str:
        """Ledger database URL, defaulting to a SQLite file in the config directory."""
        url = self.environ.get(DATABASE_URL_ENV)
        if url:
            return url
        return f"sqlite:///{self.config_dir / 'facturas.db'}"

    def get_config_info(self) -> Dict[str, Any]:
        """
        Get information about the configuration manager.

        Returns:
            Dictionary with configuration manager information
        """
        return {
            'config_directory': str(self.config_dir),
            'settings_file_exists': self.settings_file.exists(),
            'database_url_from_env': bool(self.environ.get(DATABASE_URL_ENV)),
            'overrides': sorted(self._environment_overrides()),
        }

    def _environment_overrides(self) -> Dict[str, Any]:
        overrides = {}
        for settings_field in fields(ReconciliationSettings):
            name = f"{ENV_PREFIX}{settings_field.name.upper()}"
            raw = self.environ.get(name)
            if raw is None or raw == '':
                continue

            default = getattr(ReconciliationSettings(), settings_field.name)
            try:
                if isinstance(default, float):
                    overrides[settings_field.name] = float(raw)
                elif isinstance(default, int):
                    overrides[settings_field.name] = int(raw)
                else:
                    overrides[settings_field.name] = raw.strip()
            except ValueError:
                raise ConfigurationError(f"Invalid value for {name}: '{raw}'")
        return overrides
