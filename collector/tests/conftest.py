"""
Shared test fixtures for collector daemon tests.

Provides environment cleanup for CollectorSettings, ready-made device and
InfluxDB configurations, and a config file writer.

CHANGELOG:
- 2026-10-06: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from collector.src.models import DeviceConfig, InfluxConfig

# All CollectorSettings environment variable names, used for cleanup.
_ALL_COLLECTOR_ENV_VARS = (
    "CONFIG_PATH",
    "LOG_LEVEL",
    "HEALTH_PATH",
    "SHUTDOWN_GRACE_S",
)


@pytest.fixture(autouse=True)
def _clean_collector_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all collector env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file or config.json is
    accidentally picked up.
    """
    for var in _ALL_COLLECTOR_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def device() -> DeviceConfig:
    return DeviceConfig(name="fridge", host="192.168.1.50", poll_interval_s=60)


@pytest.fixture()
def influx_config() -> InfluxConfig:
    return InfluxConfig(
        url="http://influx.test:8086",
        org="home",
        bucket="shelly",
        token="influx-secret-token",
    )


@pytest.fixture()
def config_dict() -> dict[str, Any]:
    """A complete, valid configuration file body."""
    return {
        "network_timeout_s": 2,
        "batch_size": 10,
        "flush_interval_s": 5,
        "devices": [
            {"name": "fridge", "host": "192.168.1.50", "poll_interval_s": 30},
            {
                "name": "dryer",
                "host": "192.168.1.51",
                "poll_interval_s": 60,
                "username": "admin",
                "password": "pw",
            },
        ],
        "influxdb2": {
            "url": "https://influx.example.com/",
            "org": "home",
            "bucket": "shelly",
            "token": "influx-secret-token",
        },
    }


@pytest.fixture()
def write_config(tmp_path: Path):
    """Return a function writing a dict as JSON config and returning its path."""

    def _write(body: dict[str, Any] | str, name: str = "config.json") -> Path:
        path = tmp_path / name
        path.write_text(body if isinstance(body, str) else json.dumps(body))
        return path

    return _write
