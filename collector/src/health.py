"""
Health file writer for the collector daemon.

Writes a JSON health file at a configurable path with:
- last_record_ts: ISO timestamp of the most recent record handed to the sink.
- last_weather_ts: ISO timestamp of the most recent successful weather fetch.
- counters: sampler counters (records emitted, skipped cycles, per-rail
  failures, weather failures, sink failures).

The file is replaced atomically (temp file + rename) on every state change,
providing a simple liveness signal for systemd watchdogs or monitoring.

CHANGELOG:
- 2026-10-16: Track record/weather timestamps and sampler counters
- 2026-10-16: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path


class HealthWriter:
    """Writes collector health status to a JSON file.

    Each mutating method updates the in-memory state and immediately
    rewrites the health file so it always reflects the latest status.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_record_ts: str | None = None
        self._last_weather_ts: str | None = None
        self._counters: dict[str, object] = {}

    def record_record(self, ts: datetime) -> None:
        """Record that a row was persisted and write health file."""
        self._last_record_ts = ts.isoformat()
        self._write()

    def record_weather(self, ts: datetime) -> None:
        """Record a successful weather fetch and write health file."""
        self._last_weather_ts = ts.isoformat()
        self._write()

    def set_counters(self, counters: Mapping[str, object]) -> None:
        """Replace the counters snapshot and write health file.

        Args:
            counters: JSON-serialisable counter values.
        """
        self._counters = dict(counters)
        self._write()

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        data = {
            "last_record_ts": self._last_record_ts,
            "last_weather_ts": self._last_weather_ts,
            "counters": self._counters,
        }
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(data))
        os.replace(tmp, self.path)
