"""
Configuration utility for the extension runtime.
"""

import copy
import logging
import os
import json
from typing import Dict, Any, Optional
import threading

logger = logging.getLogger(__name__)


def default_base_directory() -> str:
    """Directory holding configuration, catalog and extensions (~/.prism)."""
    return os.path.join(os.path.expanduser("~"), ".prism")


class Config:
    """Configuration manager for the extension runtime."""

    def __init__(self, config_path: Optional[str] = None, base_dir: Optional[str] = None):
        """
        Initialize the configuration manager.

        Args:
            config_path: Path to the config file
            base_dir: Directory that relative defaults are placed under
        """
        self.base_dir = base_dir or default_base_directory()

        if not config_path:
            config_path = os.path.join(self.base_dir, "config.json")

        self.config_path = config_path
        self.config: Dict[str, Any] = {}
        self._lock = threading.Lock()

        self.load()

        logger.debug(f"Configuration initialized (config_path: {config_path})")

    def load(self) -> None:
        """Load configuration from file, layering it over the defaults."""
        self._set_defaults()
        try:
            if os.path.exists(self.config_path):
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    with self._lock:
                        _deep_merge(self.config, loaded)
                logger.debug(f"Configuration loaded from {self.config_path}")
            else:
                logger.debug(f"Configuration file not found at {self.config_path}, using defaults")
        except (OSError, ValueError) as e:
            logger.error(f"Error loading configuration: {e}")

    def save(self) -> None:
        """Save configuration to file."""
        try:
            with self._lock:
                config_copy = copy.deepcopy(self.config)

            config_dir = os.path.dirname(self.config_path)
            if config_dir:
                os.makedirs(config_dir, exist_ok=True)

            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(config_copy, f, indent=4)

            logger.debug(f"Configuration saved to {self.config_path}")
        except OSError as e:
            logger.error(f"Error saving configuration: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.

        Args:
            key: Configuration key (can be nested using dots, e.g. 'extensions.directory')
            default: Default value if key doesn't exist

        Returns:
            Any: Configuration value or default
        """
        with self._lock:
            config = self.config
            parts = key.split('.')
            for part in parts[:-1]:
                if part not in config or not isinstance(config[part], dict):
                    return default
                config = config[part]
            return config.get(parts[-1], default)

    def set(self, key: str, value: Any) -> None:
        """
        Set a configuration value.

        Args:
            key: Configuration key (can be nested using dots)
            value: Configuration value
        """
        with self._lock:
            config = self.config
            parts = key.split('.')
            for part in parts[:-1]:
                if not isinstance(config.get(part), dict):
                    config[part] = {}
                config = config[part]
            config[parts[-1]] = value

    def remove(self, key: str) -> bool:
        """
        Remove a configuration value.

        Returns:
            bool: True if key was removed
        """
        with self._lock:
            config = self.config
            parts = key.split('.')
            for part in parts[:-1]:
                if part not in config or not isinstance(config[part], dict):
                    return False
                config = config[part]
            if parts[-1] in config:
                del config[parts[-1]]
                return True
            return False

    def get_all(self) -> Dict[str, Any]:
        """Get a copy of all configuration values."""
        with self._lock:
            return copy.deepcopy(self.config)

    def _set_defaults(self) -> None:
        """Set default configuration values."""
        with self._lock:
            self.config = {
                "extensions": {
                    "directory": os.path.join(self.base_dir, "extensions"),
                    "metadata_file": os.path.join(self.base_dir, "extensions.json"),
                    "staging_directory": None,
                    "background": {
                        "enabled": True,
                        "max_timer_rounds": 100
                    }
                },
                "content_blocking": {
                    "enabled": True,
                    "rule_store_directory": os.path.join(self.base_dir, "content-rules")
                },
                "logging": {
                    "level": "INFO",
                    "log_to_file": False,
                    "file": None
                }
            }


def _deep_merge(target: Dict[str, Any], source: Dict[str, Any]) -> None:
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = value
