"""
Collector daemon entrypoint.

Loads configuration, probes the power rails and FRITZ!DECT plugs, opens the record sink, and
runs the :class:`~collector.src.sampler.Sampler` until SIGTERM/SIGINT.

Exit codes:
- 0: graceful shutdown after a signal.
- 1: fatal startup failure (invalid configuration, unreachable rail or
  plug, unopenable sink) or an unexpected error escaping the sampler loops.

Structured JSON logging is used for all events. Secrets (the weather API
key, plug passwords) are never logged; only a short fingerprint of the API
key is shown at startup.

CHANGELOG:
- 2026-10-17: Probe and read FRITZ!DECT plugs; reject unparseable TOML
- 2026-10-16: Return exit codes for fatal startup failures
- 2026-10-16: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import signal
import sys
import tomllib
from datetime import UTC, datetime

from pydantic import ValidationError
from pydantic_settings import SettingsError

from collector.src.config import CollectorSettings, load_settings
from collector.src.fritz import FritzPlugReader
from collector.src.health import HealthWriter
from collector.src.models import record_columns
from collector.src.power import PowerReader, SensorError
from collector.src.sampler import Sampler
from collector.src.sink import SinkError, open_sink
from collector.src.weather import WeatherClient

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class _JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str | int = logging.INFO) -> None:
    """Configure structured JSON logging for the collector daemon.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: CollectorSettings) -> None:
    """Log a config summary at startup, excluding secrets.

    Logs intervals, rails, plugs, weather location, and output paths but
    replaces weather_app_id with a fingerprint and omits plug passwords.
    """
    rails = ", ".join(
        f"{rail.label}@{rail.bus}:0x{rail.address:02x}" for rail in settings.rails
    )
    plugs = ", ".join(
        f"{plug.label}@{plug.url} ain={plug.ain}" for plug in settings.plugs
    )
    logger.info(
        "Collector starting with config: "
        "power_interval_s=%s, weather_interval_s=%s, rails=[%s], plugs=[%s], "
        "weather_url=%s, weather_lat=%s, weather_lon=%s, weather_timeout_s=%s, "
        "weather_stale_after_cycles=%s, output_path=%s, health_path=%s, "
        "power_down_between_reads=%s, weather_app_id_masked=%s",
        settings.power_interval_s,
        settings.weather_interval_s,
        rails,
        plugs,
        settings.weather_url,
        settings.weather_lat,
        settings.weather_lon,
        settings.weather_timeout_s,
        settings.weather_stale_after_cycles,
        settings.output_path,
        settings.health_path,
        settings.power_down_between_reads,
        _masked_token(settings.weather_app_id),
    )


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def run_collector(
    settings: CollectorSettings, shutdown_event: asyncio.Event
) -> int:
    """Build components from *settings* and run until shutdown.

    Returns:
        The process exit code.
    """
    try:
        power_reader = PowerReader(
            settings.rails, power_down=settings.power_down_between_reads
        )
        await asyncio.to_thread(power_reader.probe)
        plug_readers = [
            FritzPlugReader(plug, timeout_s=settings.plug_timeout_s)
            for plug in settings.plugs
        ]
        for reader in plug_readers:
            await reader.probe()
    except (SensorError, ValueError):
        logger.critical("Power source initialisation failed", exc_info=True)
        return EXIT_FATAL

    weather_client = WeatherClient(
        url=settings.weather_url,
        lat=settings.weather_lat,
        lon=settings.weather_lon,
        app_id=settings.weather_app_id,
        timeout_s=settings.weather_timeout_s,
    )
    health = HealthWriter(settings.health_path)
    sink = open_sink(
        settings.output_path, record_columns(settings.rail_ids, settings.plug_ids)
    )

    try:
        await sink.open()
    except SinkError:
        logger.critical("Record sink cannot be opened", exc_info=True)
        return EXIT_FATAL

    try:
        sampler = Sampler(
            power_reader=power_reader,
            weather_client=weather_client,
            sink=sink,
            rail_ids=settings.rail_ids,
            plug_readers=plug_readers,
            power_interval_s=settings.power_interval_s,
            weather_interval_s=settings.weather_interval_s,
            stale_after_cycles=settings.weather_stale_after_cycles,
            health=health,
        )
        await sampler.run(shutdown_event)
    except Exception:
        logger.critical("Sampler stopped by unexpected error", exc_info=True)
        return EXIT_FATAL
    finally:
        await sink.close()

    logger.info("Shutdown complete")
    return EXIT_OK


async def async_main() -> int:
    """Async entrypoint: load config, install signal handlers, run.

    Returns:
        The process exit code.
    """
    configure_logging()

    try:
        settings = load_settings()
    except ValidationError as exc:
        # Input values are left out so a bad secret is not echoed.
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
            for err in exc.errors()
        ]
        logger.critical("Invalid configuration: %s", "; ".join(problems))
        return EXIT_FATAL
    except (tomllib.TOMLDecodeError, SettingsError) as exc:
        logger.critical("Invalid configuration: %s: %s", type(exc).__name__, exc)
        return EXIT_FATAL

    configure_logging(settings.log_level)
    log_config_summary(settings)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    return await run_collector(settings, shutdown_event)


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event.

    Args:
        shutdown_event: The event to set for graceful shutdown.
    """
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the collector daemon."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
