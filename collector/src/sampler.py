"""
Sampler/correlator: drives the power and weather sources on two cadences.

Runs two concurrent asyncio loops owned by one :class:`Sampler` instance:

1. **Power loop** (fast, ``power_interval_s``): reads every configured rail
   and FRITZ!DECT plug, merges the readings with a snapshot of the weather
   cache into a MergedRecord, and appends it to the record sink.
2. **Weather loop** (slow, ``weather_interval_s``): fetches the current
   weather and replaces the cache on success.

The loops share nothing but the :class:`WeatherCache`. The weather loop is
its only writer and the power loop its only reader. A failure in one
source never suppresses work in the other:

- Any failed rail or plug read skips the whole cycle (no partial rows) and
  bumps that source's failure counter.
- A failed weather fetch leaves the cache untouched; records keep using the
  last good sample.
- Before the first successful fetch, records carry ``weather_status="absent"``.
- A cached sample older than ``stale_after_cycles`` weather intervals is
  still emitted but flagged ``"stale"``.
- A sink failure is logged and counted; the power loop continues.

Both loops tick on a fixed cadence measured from their own start time, so
slow I/O within a tick does not accumulate drift. An overrunning tick skips
the missed slots instead of firing a burst.

Errors outside SensorError/WeatherError/SinkError are not caught here; they
cancel the sibling loop and propagate to the entrypoint.

CHANGELOG:
- 2026-10-17: Read FRITZ!DECT plugs on the power loop
- 2026-10-16: Flag stale weather after configurable number of missed cycles
- 2026-10-16: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from collector.src.models import (
    MergedRecord,
    PlugSample,
    PowerSample,
    WeatherSample,
    WeatherStatus,
)
from collector.src.power import SensorError
from collector.src.sink import SinkError
from collector.src.weather import WeatherError

if TYPE_CHECKING:
    from collector.src.fritz import FritzPlugReader
    from collector.src.health import HealthWriter
    from collector.src.power import PowerReader
    from collector.src.sink import RecordSink
    from collector.src.weather import WeatherClient

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER_CYCLES: int = 3


# ---------------------------------------------------------------------------
# Shared state
# ---------------------------------------------------------------------------


class WeatherCache:
    """Latest successfully fetched weather sample, or ``None``.

    Readers always get a whole sample: the slot holds an immutable object
    that is replaced, never modified.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sample: WeatherSample | None = None

    def update(self, sample: WeatherSample) -> None:
        with self._lock:
            self._sample = sample

    def snapshot(self) -> WeatherSample | None:
        with self._lock:
            return self._sample


@dataclass
class SamplerStats:
    """Counters for one sampler instance."""

    records_emitted: int = 0
    cycles_skipped: int = 0
    source_failures: dict[str, int] = field(default_factory=dict)
    weather_fetches: int = 0
    weather_failures: int = 0
    sink_failures: int = 0
    last_record_ts: datetime | None = None
    last_weather_ts: datetime | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "records_emitted": self.records_emitted,
            "cycles_skipped": self.cycles_skipped,
            "source_failures": dict(self.source_failures),
            "weather_fetches": self.weather_fetches,
            "weather_failures": self.weather_failures,
            "sink_failures": self.sink_failures,
        }


# ---------------------------------------------------------------------------
# Sampler
# ---------------------------------------------------------------------------


class Sampler:
    """Correlates power readings with cached weather into a record stream.

    Args:
        power_reader: Reads one rail per call (blocking; run in a thread).
        weather_client: Fetches a complete weather sample.
        sink: Record sink, already opened.
        rail_ids: Rails to read each tick, in column order.
        plug_readers: FRITZ!DECT plug readers, read after the rails in
            column order.
        power_interval_s: Seconds between power ticks.
        weather_interval_s: Seconds between weather fetches.
        stale_after_cycles: Weather intervals after which a cached sample
            is flagged ``stale``.
        health: HealthWriter instance, or None to skip health writes.
        clock: Returns the current UTC time (record timestamps, staleness).
    """

    def __init__(
        self,
        *,
        power_reader: PowerReader,
        weather_client: WeatherClient,
        sink: RecordSink,
        rail_ids: Sequence[str],
        plug_readers: Sequence[FritzPlugReader] = (),
        power_interval_s: float,
        weather_interval_s: float,
        stale_after_cycles: int = DEFAULT_STALE_AFTER_CYCLES,
        health: HealthWriter | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not rail_ids:
            raise ValueError("at least one rail is required")
        self._power_reader = power_reader
        self._weather_client = weather_client
        self._sink = sink
        self._rail_ids = list(rail_ids)
        self._plug_readers = list(plug_readers)
        self._power_interval_s = power_interval_s
        self._weather_interval_s = weather_interval_s
        self._stale_after_s = stale_after_cycles * weather_interval_s
        self._health = health
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._cache = WeatherCache()
        self._stats = SamplerStats(
            source_failures={
                label: 0
                for label in self._rail_ids + [p.label for p in self._plug_readers]
            }
        )
        self._last_ts: datetime | None = None

    @property
    def cache(self) -> WeatherCache:
        return self._cache

    @property
    def stats(self) -> SamplerStats:
        return self._stats

    # ------------------------------------------------------------------
    # Single ticks (easily testable)
    # ------------------------------------------------------------------

    async def power_tick(self) -> MergedRecord | None:
        """Read all rails and plugs and append one merged record.

        Returns:
            The record handed to the sink and persisted, or ``None`` when
            the cycle was skipped (source failure) or the sink failed.
        """
        samples: list[PowerSample] = []
        failed: list[str] = []
        for rail_id in self._rail_ids:
            try:
                samples.append(
                    await asyncio.to_thread(self._power_reader.read, rail_id)
                )
            except SensorError as exc:
                self._stats.source_failures[rail_id] += 1
                failed.append(rail_id)
                logger.warning(
                    "Power read failed (failures for rail=%s: %d): %s",
                    rail_id,
                    self._stats.source_failures[rail_id],
                    exc,
                )

        plugs: list[PlugSample] = []
        for reader in self._plug_readers:
            try:
                plugs.append(await reader.read())
            except SensorError as exc:
                self._stats.source_failures[reader.label] += 1
                failed.append(reader.label)
                logger.warning(
                    "Plug read failed (failures for plug=%s: %d): %s",
                    reader.label,
                    self._stats.source_failures[reader.label],
                    exc,
                )

        if failed:
            self._stats.cycles_skipped += 1
            logger.warning("Skipping record: sources %s failed this cycle", failed)
            self._report_health()
            return None

        now = self._monotonic_now()
        weather = self._cache.snapshot()
        record = MergedRecord(
            timestamp=now,
            power=tuple(samples),
            plugs=tuple(plugs),
            weather=weather,
            weather_status=self.weather_status(weather, now),
        )

        try:
            await self._sink.append(record)
        except SinkError as exc:
            self._stats.sink_failures += 1
            logger.error(
                "Record at %s not persisted (sink failures: %d): %s",
                now.isoformat(),
                self._stats.sink_failures,
                exc,
            )
            self._report_health()
            return None

        self._stats.records_emitted += 1
        self._stats.last_record_ts = now
        logger.debug(
            "Record emitted at %s (weather=%s)", now.isoformat(), record.weather_status
        )
        self._report_health(record_ts=now)
        return record

    async def weather_tick(self) -> bool:
        """Fetch weather and refresh the cache on success.

        Returns:
            True if the cache was updated, False if the fetch failed.
        """
        try:
            sample = await self._weather_client.fetch()
        except WeatherError as exc:
            self._stats.weather_failures += 1
            cached = self._cache.snapshot()
            logger.warning(
                "Weather fetch failed (failures: %d), cache %s: %s",
                self._stats.weather_failures,
                f"kept from {cached.fetched_at.isoformat()}" if cached else "still empty",
                exc,
            )
            self._report_health()
            return False

        self._cache.update(sample)
        self._stats.weather_fetches += 1
        self._stats.last_weather_ts = sample.fetched_at
        logger.info("Weather cache updated (temperature=%.2f)", sample.temperature)
        self._report_health(weather_ts=sample.fetched_at)
        return True

    def weather_status(
        self, weather: WeatherSample | None, now: datetime
    ) -> WeatherStatus:
        """Classify a cache snapshot as fresh, stale, or absent."""
        if weather is None:
            return "absent"
        age_s = (now - weather.fetched_at).total_seconds()
        if age_s > self._stale_after_s:
            return "stale"
        return "fresh"

    # ------------------------------------------------------------------
    # Loop runners
    # ------------------------------------------------------------------

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Run the power and weather loops until shutdown_event is set.

        Both loops run as independent asyncio tasks. When the event is set
        each loop finishes its current tick and returns. If a loop raises,
        the other is cancelled and the exception propagates.
        """
        logger.info("Starting power and weather loops")
        tasks = [
            asyncio.create_task(
                _run_every(
                    "power", self._power_interval_s, self.power_tick, shutdown_event
                )
            ),
            asyncio.create_task(
                _run_every(
                    "weather",
                    self._weather_interval_s,
                    self.weather_tick,
                    shutdown_event,
                )
            ),
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        logger.info("Sampler stopped")

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _monotonic_now(self) -> datetime:
        """Current time, never earlier than the previous record's timestamp."""
        now = self._clock()
        if self._last_ts is not None and now < self._last_ts:
            logger.warning(
                "Wall clock went back %.3fs; clamping record timestamp",
                (self._last_ts - now).total_seconds(),
            )
            now = self._last_ts
        self._last_ts = now
        return now

    def _report_health(
        self,
        *,
        record_ts: datetime | None = None,
        weather_ts: datetime | None = None,
    ) -> None:
        if self._health is None:
            return
        try:
            if record_ts is not None:
                self._health.record_record(record_ts)
            if weather_ts is not None:
                self._health.record_weather(weather_ts)
            self._health.set_counters(self._stats.as_dict())
        except OSError:
            logger.warning("Failed to write health file", exc_info=True)


async def _run_every(
    name: str,
    interval_s: float,
    tick: Callable[[], Awaitable[object]],
    shutdown_event: asyncio.Event,
) -> None:
    """Call *tick* on a fixed cadence until shutdown_event is set.

    Slots are measured from the loop start on the event loop's monotonic
    clock. A tick that runs past one or more slots skips them.
    """
    loop = asyncio.get_running_loop()
    logger.info("%s loop started (interval=%ss)", name.capitalize(), interval_s)
    next_tick = loop.time()
    while not shutdown_event.is_set():
        await tick()
        next_tick += interval_s
        now = loop.time()
        if now >= next_tick:
            overrun = now - next_tick
            missed = int(overrun // interval_s) + 1
            logger.warning(
                "%s tick overran by %.2fs, skipping %d slot(s)",
                name.capitalize(),
                overrun,
                missed,
            )
            next_tick += missed * interval_s
        # Sleep until the next slot, waking early on shutdown
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=next_tick - now)
    logger.info("%s loop stopped", name.capitalize())
