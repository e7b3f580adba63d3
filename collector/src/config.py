"""
Collector configuration loaded from a TOML file and environment variables.

Uses Pydantic BaseSettings for loading and validation. Sources, highest
priority first: constructor kwargs, environment variables, ``.env`` file,
TOML file, secrets directory. The TOML file location is taken from the
``COLLECTOR_CONFIG`` environment variable (default ``collector.toml``);
a missing file is skipped.

Example ``collector.toml``::

    power_interval_s = 5
    weather_interval_s = 300
    weather_lat = 52.37
    weather_lon = 4.89
    weather_app_id = "..."
    output_path = "/data/records.csv"

    [[rails]]
    label = "solar"
    bus = "/dev/i2c-1"
    address = 0x40
    expected_amps = 2.0

    [[plugs]]
    label = "heater"
    url = "https://fritz.box"
    password = "..."
    ain = "11630 0123456"

CHANGELOG:
- 2026-10-17: Add FRITZ!DECT plugs
- 2026-10-16: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import os
import re

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

CONFIG_ENV_VAR = "COLLECTOR_CONFIG"
"""Environment variable naming the TOML configuration file."""

DEFAULT_CONFIG_FILE = "collector.toml"

_LABEL_RE = re.compile(r"^[a-z][a-z0-9_]*$")


def _column_safe_label(kind: str, v: str) -> str:
    if not _LABEL_RE.match(v):
        raise ValueError(f"{kind} label '{v}' must match {_LABEL_RE.pattern}")
    return v


class RailConfig(BaseModel):
    """One monitored power rail (a single INA219 on an I2C bus).

    Attributes:
        label: Rail identifier, used as the column prefix in records.
        bus: I2C bus device node (``/dev/i2c-1``) or bus number.
        address: 7-bit I2C address of the INA219 (default 0x40).
        expected_amps: Maximum expected current, sets the current LSB.
        shunt_ohms: Shunt resistor value in ohms.
    """

    label: str
    bus: str | int = "/dev/i2c-1"
    address: int = 0x40
    expected_amps: float = Field(default=1.0, gt=0)
    shunt_ohms: float = Field(default=0.1, gt=0)

    @field_validator("label")
    @classmethod
    def label_must_be_column_safe(cls, v: str) -> str:
        """Rail labels end up in CSV headers and SQLite column names."""
        return _column_safe_label("rail", v)

    @field_validator("address")
    @classmethod
    def address_must_be_valid(cls, v: int) -> int:
        """Validate the 7-bit I2C address (0x03-0x77, reserved ranges excluded)."""
        if v < 0x03 or v > 0x77:
            raise ValueError("rail address must be between 0x03 and 0x77")
        return v


class PlugConfig(BaseModel):
    """One FRITZ!DECT smart plug read through a FRITZ!Box.

    Attributes:
        label: Plug identifier, used as the column prefix in records.
        url: Base URL of the FRITZ!Box (``https://fritz.box``).
        user: FRITZ!Box user name; empty for password-only logins.
        password: FRITZ!Box password. Never logged.
        ain: Actor identification number of the plug.
        verify_tls: Verify the FRITZ!Box certificate (self-signed by default).
    """

    label: str
    url: str
    user: str = ""
    password: str
    ain: str
    verify_tls: bool = False

    @field_validator("label")
    @classmethod
    def label_must_be_column_safe(cls, v: str) -> str:
        return _column_safe_label("plug", v)

    @field_validator("url")
    @classmethod
    def url_must_be_http(cls, v: str) -> str:
        """Validate the FRITZ!Box URL and drop a trailing slash."""
        if not v.lower().startswith(("https://", "http://")):
            raise ValueError("plug url must start with https:// or http://")
        return v.rstrip("/")

    @field_validator("ain")
    @classmethod
    def ain_must_be_set(cls, v: str) -> str:
        """Reject an empty actor identification number."""
        if not v.strip():
            raise ValueError("plug ain must not be empty")
        return v.strip()


class CollectorSettings(BaseSettings):
    """Collector daemon configuration.

    Attributes:
        power_interval_s: Seconds between power (fast loop) ticks.
        weather_interval_s: Seconds between weather (slow loop) fetches.
        rails: Power rails to sample on every fast tick, in column order.
        plugs: FRITZ!DECT plugs read on every fast tick after the rails.
        plug_timeout_s: Upper bound for reading one plug (login included).
        weather_url: Weather endpoint (OpenWeatherMap current-weather API).
        weather_lat: Latitude of the observation site.
        weather_lon: Longitude of the observation site.
        weather_app_id: API key for the weather service. Never logged.
        weather_timeout_s: Upper bound for a single weather request.
        weather_stale_after_cycles: Number of weather intervals after which
            a cached sample is flagged ``stale`` in emitted records.
        output_path: Record file. ``.db``/``.sqlite``/``.sqlite3`` selects
            the SQLite sink, anything else the CSV sink.
        health_path: JSON health file path.
        power_down_between_reads: Put each INA219 into power-down mode
            between reads.
        log_level: Root logging level name.
    """

    power_interval_s: float = Field(default=5.0, gt=0)
    weather_interval_s: float = Field(default=300.0, gt=0)
    rails: list[RailConfig]
    plugs: list[PlugConfig] = []
    plug_timeout_s: float = Field(default=3.0, gt=0)
    weather_url: str = "https://api.openweathermap.org/data/2.5/weather"
    weather_lat: float = Field(ge=-90, le=90)
    weather_lon: float = Field(ge=-180, le=180)
    weather_app_id: str
    weather_timeout_s: float = Field(default=10.0, gt=0)
    weather_stale_after_cycles: int = Field(default=3, ge=1)
    output_path: str = "data.csv"
    health_path: str = "health.json"
    power_down_between_reads: bool = True
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Insert the TOML file below env vars and above secrets."""
        toml_file = os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_FILE)
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=toml_file),
            file_secret_settings,
        )

    @field_validator("rails")
    @classmethod
    def rails_must_be_unique(cls, v: list[RailConfig]) -> list[RailConfig]:
        """Require at least one rail and unique labels."""
        if not v:
            raise ValueError("RAILS must define at least one rail")
        labels = [rail.label for rail in v]
        duplicates = sorted({label for label in labels if labels.count(label) > 1})
        if duplicates:
            raise ValueError(f"duplicate rail labels: {', '.join(duplicates)}")
        return v

    @field_validator("weather_url")
    @classmethod
    def weather_url_must_be_http(cls, v: str) -> str:
        """Validate that the weather endpoint is an HTTP(S) URL."""
        if not v.lower().startswith(("https://", "http://")):
            raise ValueError("WEATHER_URL must start with https:// or http://")
        return v

    @field_validator("weather_app_id")
    @classmethod
    def weather_app_id_must_be_set(cls, v: str) -> str:
        """Reject an empty weather API key."""
        if not v.strip():
            raise ValueError("WEATHER_APP_ID must not be empty")
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        """Validate and normalise the logging level name."""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"LOG_LEVEL '{v}' is not a logging level")
        return level

    @model_validator(mode="after")
    def _timeout_within_interval(self) -> CollectorSettings:
        """A weather request must finish well before the next one is due."""
        if self.weather_timeout_s >= self.weather_interval_s:
            raise ValueError(
                "WEATHER_TIMEOUT_S must be smaller than WEATHER_INTERVAL_S"
            )
        return self

    @model_validator(mode="after")
    def _plugs_fit_fast_loop(self) -> CollectorSettings:
        """Plug labels share the column namespace with rails."""
        if not self.plugs:
            return self
        labels = self.rail_ids + self.plug_ids
        duplicates = sorted({label for label in labels if labels.count(label) > 1})
        if duplicates:
            raise ValueError(f"duplicate source labels: {', '.join(duplicates)}")
        if self.plug_timeout_s >= self.power_interval_s:
            raise ValueError("PLUG_TIMEOUT_S must be smaller than POWER_INTERVAL_S")
        return self

    @property
    def rail_ids(self) -> list[str]:
        """Rail labels in configuration (column) order."""
        return [rail.label for rail in self.rails]

    @property
    def plug_ids(self) -> list[str]:
        """Plug labels in configuration (column) order."""
        return [plug.label for plug in self.plugs]


def load_settings() -> CollectorSettings:
    """Load settings from ``$COLLECTOR_CONFIG`` and the environment.

    Raises:
        pydantic.ValidationError: If the resolved configuration is invalid.
    """
    return CollectorSettings()
