"""
Collector daemon configuration.

Two layers:

- :class:`CollectorSettings` -- process-level settings loaded from environment
  variables (or a ``.env`` file) via Pydantic BaseSettings: where the config
  file lives, log verbosity, health file path and shutdown grace period.
- :func:`load_config` -- reads and validates the JSON file enumerating the
  plugs and the InfluxDB connection into a :class:`CollectorConfig`.

Any problem with either layer is a :class:`ConfigError`, which is fatal at
startup.

CHANGELOG:
- 2026-10-10: Wrap file and validation errors in ConfigError
- 2026-10-06: Initial creation (STORY-004)

TODO:
- None
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings

from collector.src.errors import ConfigError
from collector.src.models import CollectorConfig

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class CollectorSettings(BaseSettings):
    """Process settings for the collector daemon.

    Attributes:
        config_path: Path of the JSON device/backend configuration file.
        log_level: Root log level name.
        health_path: Path of the JSON health file. Empty disables it.
        shutdown_grace_s: Seconds in-flight cycles get to finish on shutdown.
    """

    config_path: str = "config.json"
    log_level: str = "INFO"
    health_path: str = ""
    shutdown_grace_s: float = 10.0

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        """Normalize the level name and reject unknown ones."""
        level = v.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}")
        return level

    @field_validator("shutdown_grace_s")
    @classmethod
    def grace_must_be_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("SHUTDOWN_GRACE_S must be >= 0")
        return v

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


def load_settings() -> CollectorSettings:
    """Load process settings, converting validation failures to ConfigError."""
    try:
        return CollectorSettings()
    except ValidationError as exc:
        raise ConfigError(f"invalid environment settings: {exc}") from exc


def load_config(path: str | Path) -> CollectorConfig:
    """Read and validate the collector's JSON configuration file.

    Args:
        path: Location of the configuration file.

    Returns:
        The validated :class:`CollectorConfig`.

    Raises:
        ConfigError: If the file cannot be read, is not valid JSON, or does
            not satisfy the configuration schema.
    """
    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"config file can not be read from '{config_path}': {exc}") from exc

    try:
        return CollectorConfig.model_validate_json(text)
    except ValidationError as exc:
        raise ConfigError(f"config file '{config_path}' is invalid: {exc}") from exc
