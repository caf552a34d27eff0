"""
Configuration Manager
---------------------
Loads configuration from YAML with environment variable overrides.

Environment variables use the TOOLOS_ prefix and underscores for nesting:
    runtime.rate_limit_per_minute -> TOOLOS_RUNTIME_RATE_LIMIT_PER_MINUTE
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
import logging
import os

import yaml


class ConfigManager:
    """
    Centralized configuration management.
    Loads configuration from YAML with environment variable overrides.
    """

    ENV_PREFIX = "TOOLOS_"

    def __init__(self, config_path: Optional[str] = "config.yaml"):
        self._config_path = Path(config_path) if config_path else None
        self._config: Dict[str, Any] = {}
        self._logger = logging.getLogger("toolos.infra.config")

        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from file."""
        if self._config_path is None:
            return
        if self._config_path.exists():
            with open(self._config_path, "r") as f:
                self._config = yaml.safe_load(f) or {}
            self._logger.info(f"Loaded config from {self._config_path}")
        else:
            self._logger.debug(f"Config file not found: {self._config_path}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.
        Supports dot notation: 'section.key'
        Environment variables override file config.
        """
        env_key = f"{self.ENV_PREFIX}{key.upper().replace('.', '_')}"
        env_value = os.getenv(env_key)
        if env_value is not None:
            return yaml.safe_load(env_value)

        parts = key.split(".")
        value = self._config

        for part in parts:
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value (runtime only, not persisted)."""
        parts = key.split(".")
        config = self._config

        for part in parts[:-1]:
            if part not in config:
                config[part] = {}
            config = config[part]

        config[parts[-1]] = value

    def get_section(self, section: str) -> Dict[str, Any]:
        """Get an entire configuration section."""
        return self._config.get(section, {})

    def reload(self) -> None:
        """Reload configuration from file."""
        self._load_config()


@dataclass
class RuntimeConfig:
    """Tunables for the execution core."""
    rate_limit_per_minute: int = 60
    rate_window_seconds: float = 60.0
    deadman_timeout_seconds: float = 60.0
    state_history_size: int = 4
    compiled_cache_size: int = 64
    database_path: Optional[str] = None  # None -> ephemeral memory
    log_level: str = "INFO"
    log_dir: str = "logs"

    @classmethod
    def from_config(cls, config: ConfigManager) -> "RuntimeConfig":
        """Build from the `runtime` section of a ConfigManager."""
        defaults = cls()
        return cls(
            rate_limit_per_minute=int(config.get(
                "runtime.rate_limit_per_minute", defaults.rate_limit_per_minute)),
            rate_window_seconds=float(config.get(
                "runtime.rate_window_seconds", defaults.rate_window_seconds)),
            deadman_timeout_seconds=float(config.get(
                "runtime.deadman_timeout_seconds", defaults.deadman_timeout_seconds)),
            state_history_size=int(config.get(
                "runtime.state_history_size", defaults.state_history_size)),
            compiled_cache_size=int(config.get(
                "runtime.compiled_cache_size", defaults.compiled_cache_size)),
            database_path=config.get("database.path", defaults.database_path),
            log_level=str(config.get("logging.level", defaults.log_level)),
            log_dir=str(config.get("logging.dir", defaults.log_dir)),
        )
