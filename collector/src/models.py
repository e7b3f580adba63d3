"""
Pydantic models for power samples, weather samples, and merged records.

All models are frozen: once produced by a reader or the weather client a
sample is never mutated, and a MergedRecord handed to the sink is final.

The persisted column layout is defined here as well so that every sink
renders records in the same fixed, stable order:

    timestamp,
    <rail>_voltage, <rail>_current, <rail>_power   (per rail, config order)
    <plug>_power, <plug>_energy, <plug>_temperature (per plug, config order)
    weather_<field> ...                            (WEATHER_FIELDS order)
    weather_fetched_at, weather_status

CHANGELOG:
- 2026-10-17: Add FRITZ!DECT plug samples and columns
- 2026-10-16: Initial creation

TODO:
- None
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, model_validator

WeatherStatus = Literal["fresh", "stale", "absent"]

POWER_FIELDS: tuple[str, ...] = ("voltage", "current", "power")
"""Per-rail value columns, in order."""

PLUG_FIELDS: tuple[str, ...] = ("power", "energy", "temperature")
"""Per-plug value columns, in order."""

WEATHER_FIELDS: tuple[str, ...] = (
    "temperature",
    "humidity",
    "pressure",
    "visibility",
    "wind_speed",
    "wind_direction",
    "cloud_coverage",
    "condition_id",
)
"""Weather value columns, in order."""


class PowerSample(BaseModel):
    """A single reading from one power rail.

    Attributes:
        rail_id: Label of the configured rail.
        voltage: Bus voltage in volts.
        current: Current in milliamps (signed).
        power: Power in milliwatts.
        sampled_at: Time the registers were read.
    """

    model_config = ConfigDict(frozen=True)

    rail_id: str
    voltage: float
    current: float
    power: float
    sampled_at: datetime


class PlugSample(BaseModel):
    """A single reading from one FRITZ!DECT smart plug.

    Attributes:
        plug_id: Label of the configured plug.
        power: Switched load in milliwatts.
        energy: Energy counter since the plug was reset, in watt-hours.
        temperature: Plug temperature in degrees Celsius.
        sampled_at: Time the values were read.
    """

    model_config = ConfigDict(frozen=True)

    plug_id: str
    power: float
    energy: float
    temperature: float
    sampled_at: datetime


class WeatherSample(BaseModel):
    """A complete weather observation.

    Attributes:
        temperature: Air temperature in degrees Celsius.
        humidity: Relative humidity in percent.
        pressure: Atmospheric pressure in hPa.
        visibility: Visibility in metres.
        wind_speed: Wind speed in m/s.
        wind_direction: Wind direction in degrees.
        cloud_coverage: Cloud coverage in percent.
        condition_id: Provider weather-condition code.
        fetched_at: Time the observation was fetched.
    """

    model_config = ConfigDict(frozen=True)

    temperature: float
    humidity: float
    pressure: float
    visibility: float
    wind_speed: float
    wind_direction: float
    cloud_coverage: float
    condition_id: int
    fetched_at: datetime


class MergedRecord(BaseModel):
    """One row of the output stream: all rails and plugs plus the cached weather.

    ``weather`` is ``None`` exactly when ``weather_status`` is ``"absent"``.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    power: tuple[PowerSample, ...]
    plugs: tuple[PlugSample, ...] = ()
    weather: WeatherSample | None = None
    weather_status: WeatherStatus = "absent"

    @model_validator(mode="after")
    def _weather_matches_status(self) -> MergedRecord:
        if (self.weather is None) != (self.weather_status == "absent"):
            raise ValueError(
                f"weather_status '{self.weather_status}' does not match "
                f"weather {'absent' if self.weather is None else 'present'}"
            )
        return self

    @property
    def rail_ids(self) -> list[str]:
        return [sample.rail_id for sample in self.power]

    @property
    def plug_ids(self) -> list[str]:
        return [sample.plug_id for sample in self.plugs]

    def as_row(self) -> list[datetime | float | int | str | None]:
        """Return the row values in :func:`record_columns` order.

        Absent weather values are ``None``; sinks render them as their
        empty marker.
        """
        row: list[datetime | float | int | str | None] = [self.timestamp]
        for sample in self.power:
            row.extend(getattr(sample, name) for name in POWER_FIELDS)
        for plug in self.plugs:
            row.extend(getattr(plug, name) for name in PLUG_FIELDS)
        if self.weather is None:
            row.extend([None] * len(WEATHER_FIELDS))
            row.append(None)
        else:
            row.extend(getattr(self.weather, name) for name in WEATHER_FIELDS)
            row.append(self.weather.fetched_at)
        row.append(self.weather_status)
        return row


def record_columns(
    rail_ids: Sequence[str], plug_ids: Sequence[str] = ()
) -> list[str]:
    """Return the persisted column names for the given rails and plugs."""
    columns = ["timestamp"]
    for rail_id in rail_ids:
        columns.extend(f"{rail_id}_{name}" for name in POWER_FIELDS)
    for plug_id in plug_ids:
        columns.extend(f"{plug_id}_{name}" for name in PLUG_FIELDS)
    columns.extend(f"weather_{name}" for name in WEATHER_FIELDS)
    columns.extend(["weather_fetched_at", "weather_status"])
    return columns
