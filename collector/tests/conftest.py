"""
Shared test fixtures for collector tests.

Provides environment variable fixtures for CollectorSettings configuration
tests. All collector env vars are cleaned before each test to ensure
isolation.

CHANGELOG:
- 2026-10-17: Clean PLUGS and PLUG_TIMEOUT_S
- 2026-10-16: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json

import pytest

# All CollectorSettings environment variable names, used for cleanup.
_ALL_COLLECTOR_ENV_VARS = (
    "COLLECTOR_CONFIG",
    "POWER_INTERVAL_S",
    "WEATHER_INTERVAL_S",
    "RAILS",
    "PLUGS",
    "PLUG_TIMEOUT_S",
    "WEATHER_URL",
    "WEATHER_LAT",
    "WEATHER_LON",
    "WEATHER_APP_ID",
    "WEATHER_TIMEOUT_S",
    "WEATHER_STALE_AFTER_CYCLES",
    "OUTPUT_PATH",
    "HEALTH_PATH",
    "POWER_DOWN_BETWEEN_READS",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_collector_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all collector env vars and isolate from config files.

    This runs automatically for every test in the collector test suite.
    Changes working directory to tmp_path so no .env or collector.toml file
    is accidentally loaded by Pydantic BaseSettings.
    """
    for var in _ALL_COLLECTOR_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set all required and optional environment variables.

    Returns the dict of env var names to values for assertion convenience.
    """
    env = {
        "POWER_INTERVAL_S": "2",
        "WEATHER_INTERVAL_S": "600",
        "RAILS": json.dumps(
            [
                {"label": "solar", "bus": "/dev/i2c-1", "address": 64},
                {"label": "load", "bus": 1, "address": 65, "expected_amps": 3.2},
            ]
        ),
        "WEATHER_URL": "https://weather.example.com/data/2.5/weather",
        "WEATHER_LAT": "52.37",
        "WEATHER_LON": "4.89",
        "WEATHER_APP_ID": "secret-app-id",
        "WEATHER_TIMEOUT_S": "5",
        "WEATHER_STALE_AFTER_CYCLES": "4",
        "OUTPUT_PATH": "/tmp/records.csv",
        "HEALTH_PATH": "/tmp/health.json",
        "POWER_DOWN_BETWEEN_READS": "false",
        "LOG_LEVEL": "debug",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the required environment variables (no optional ones).

    Optional variables should fall back to their defaults.
    """
    env = {
        "RAILS": json.dumps([{"label": "main"}]),
        "WEATHER_LAT": "10.5",
        "WEATHER_LON": "-20.25",
        "WEATHER_APP_ID": "app-id-xyz",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env
