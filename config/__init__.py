"""
Configuration Module for BillFlow.

Centralized configuration management backed by config/settings.yaml.
Thresholds, weights, timeouts and storage locations are all read from
here; components fall back to documented defaults when a key is absent.
"""

import os
import yaml
from pathlib import Path
from typing import Any, Dict, Optional


# Environment variable that points at an alternative settings file
CONFIG_ENV_VAR = "BILLFLOW_CONFIG"


class ConfigurationManager:
    """
    Centralized configuration management for the bill engine.

    Loads settings.yaml once per process and provides dot-notation access
    to nested keys. Runtime overrides (CLI flags, tests) are applied with
    set() and survive until reload() or reset().

    Example:
        >>> config = ConfigurationManager()
        >>> config.get("matching.fuzzy.floor")
        0.6
    """

    _instance: Optional['ConfigurationManager'] = None
    _config: Dict[str, Any] = {}

    def __new__(cls, config_path: Optional[str] = None) -> 'ConfigurationManager':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None) -> None:
        """
        Initialize the configuration manager.

        Args:
            config_path: Optional path to a settings file. Defaults to the
                        BILLFLOW_CONFIG environment variable, then to
                        config/settings.yaml.
        """
        if self._initialized:
            return

        if config_path is None:
            config_path = os.environ.get(CONFIG_ENV_VAR)

        if config_path is None:
            self.config_path = Path(__file__).parent / "settings.yaml"
        else:
            self.config_path = Path(config_path)

        self._load_config()
        self._initialized = True

    def _load_config(self) -> None:
        """
        Load configuration from the YAML file.

        Raises:
            FileNotFoundError: If the configuration file doesn't exist.
            yaml.YAMLError: If the configuration file is invalid.
        """
        if not self.config_path.exists():
            raise FileNotFoundError(
                f"Configuration file not found: {self.config_path}"
            )

        with open(self.config_path, 'r', encoding='utf-8') as f:
            self._config = yaml.safe_load(f) or {}

        self._resolve_paths()

    def _resolve_paths(self) -> None:
        """Resolve relative entries under paths.* against the project root."""
        project_root = Path(__file__).parent.parent

        for key, value in self._config.get('paths', {}).items():
            if value and not Path(value).is_absolute():
                self._config['paths'][key] = str(project_root / value)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value using dot notation.

        Args:
            key: Configuration key in dot notation (e.g., "ocr.workers").
            default: Value returned when the key doesn't exist.

        Returns:
            Configuration value or default.
        """
        value = self._config

        try:
            for k in key.split('.'):
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """
        Override a configuration value at runtime.

        Intermediate sections are created as needed.

        Args:
            key: Configuration key in dot notation.
            value: New value.
        """
        keys = key.split('.')
        section = self._config
        for k in keys[:-1]:
            if not isinstance(section.get(k), dict):
                section[k] = {}
            section = section[k]
        section[keys[-1]] = value

    def reload(self) -> None:
        """Reload configuration from file, discarding runtime overrides."""
        self._load_config()

    @classmethod
    def reset(cls) -> None:
        """
        Reset the singleton instance.
        Used by tests and by the CLI when --config is given.
        """
        cls._instance = None


def get_config(key: str, default: Any = None) -> Any:
    """
    Convenience function to get configuration values.

    Args:
        key: Configuration key in dot notation.
        default: Default value if key doesn't exist.

    Returns:
        Configuration value or default.
    """
    return ConfigurationManager().get(key, default)


__all__ = ['ConfigurationManager', 'get_config', 'CONFIG_ENV_VAR']
