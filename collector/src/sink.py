"""
Append-only record sinks: CSV (default) and SQLite.

Both sinks persist one row per MergedRecord in the fixed column order from
:func:`collector.src.models.record_columns`. A row is either written
completely or not at all:

- CsvSink renders the record to a single line and writes it with one
  ``write`` call followed by flush + fsync. On open, a torn trailing row
  left by a crash is truncated back to the last complete line.
- SqliteSink inserts each record in its own transaction (WAL mode).

An existing file or table whose columns differ from the configured layout
is rejected at open time, so a rail change never silently shifts columns.

Operations:
- open(): create or validate the store.
- append(record): persist one record, raising SinkError on failure.
- close(): release the file or connection.

Supports async context manager protocol for clean resource management.

CHANGELOG:
- 2026-10-16: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import csv
import io
import logging
import os
import sqlite3
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import IO, Protocol

import aiosqlite

from collector.src.models import MergedRecord

logger = logging.getLogger(__name__)

SQLITE_SUFFIXES = frozenset({".db", ".sqlite", ".sqlite3"})

_TAIL_CHUNK = 4096


class SinkError(Exception):
    """A record could not be persisted, or the store could not be opened."""


class RecordSink(Protocol):
    """Interface shared by all sinks."""

    async def open(self) -> None: ...

    async def append(self, record: MergedRecord) -> None: ...

    async def close(self) -> None: ...


def _render(value: datetime | float | int | str | None) -> str | float | int | None:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


# ---------------------------------------------------------------------------
# CSV
# ---------------------------------------------------------------------------


class CsvSink:
    """Append-only CSV file with a header row.

    Absent values are written as empty fields.

    Args:
        path: CSV file path. Parent directories are created.
        columns: Expected header, from ``record_columns``.

    Usage::

        async with CsvSink("/data/records.csv", columns) as sink:
            await sink.append(record)
    """

    def __init__(self, path: str | Path, columns: Sequence[str]) -> None:
        self._path = Path(path)
        self._columns = list(columns)
        self._fh: IO[str] | None = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def open(self) -> None:
        """Create the file with a header, or validate an existing one.

        Raises:
            SinkError: If the file cannot be opened or its header differs.
        """
        try:
            self._fh = await asyncio.to_thread(self._open_sync)
        except (OSError, UnicodeDecodeError, csv.Error) as exc:
            raise SinkError(f"cannot open {self._path}: {exc}") from exc
        logger.info("CSV sink open at %s (%d columns)", self._path, len(self._columns))

    async def close(self) -> None:
        if self._fh is not None:
            await asyncio.to_thread(self._fh.close)
            self._fh = None

    async def __aenter__(self) -> CsvSink:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    async def append(self, record: MergedRecord) -> None:
        """Append one record as a complete CSV line.

        Raises:
            SinkError: If the write or fsync fails.
        """
        assert self._fh is not None, "Sink not opened. Call open() or use async with."
        line = self._format(record)
        async with self._lock:
            try:
                await asyncio.to_thread(self._write_line, line)
            except OSError as exc:
                raise SinkError(f"write to {self._path} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Private helpers (run in a worker thread)
    # ------------------------------------------------------------------

    def _open_sync(self) -> IO[str]:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        if self._path.exists():
            _truncate_torn_tail(self._path)
        header = self._format_row(self._columns)
        if not self._path.exists() or self._path.stat().st_size == 0:
            fh = self._path.open("a", encoding="utf-8", newline="")
            fh.write(header)
            fh.flush()
            os.fsync(fh.fileno())
            return fh

        with self._path.open("r", encoding="utf-8", newline="") as existing:
            found = next(csv.reader(existing), [])
        if found != self._columns:
            raise SinkError(
                f"{self._path} has columns {found}, expected {self._columns}; "
                "use a new output path after changing rails"
            )
        return self._path.open("a", encoding="utf-8", newline="")

    def _write_line(self, line: str) -> None:
        assert self._fh is not None
        self._fh.write(line)
        self._fh.flush()
        os.fsync(self._fh.fileno())

    def _format(self, record: MergedRecord) -> str:
        values = record.as_row()
        if len(values) != len(self._columns):
            raise SinkError(
                f"record has {len(values)} values, header has {len(self._columns)} columns"
            )
        return self._format_row(
            ["" if value is None else _render(value) for value in values]
        )

    @staticmethod
    def _format_row(values: Sequence[object]) -> str:
        buf = io.StringIO()
        csv.writer(buf, lineterminator="\n").writerow(values)
        return buf.getvalue()


def _truncate_torn_tail(path: Path) -> None:
    """Drop a partially written last line (no trailing newline)."""
    with path.open("rb+") as fh:
        size = fh.seek(0, os.SEEK_END)
        if size == 0:
            return
        fh.seek(size - 1)
        if fh.read(1) == b"\n":
            return
        pos = size
        while pos > 0:
            step = min(_TAIL_CHUNK, pos)
            pos -= step
            fh.seek(pos)
            idx = fh.read(step).rfind(b"\n")
            if idx != -1:
                keep = pos + idx + 1
                break
        else:
            keep = 0
        fh.truncate(keep)
        fh.flush()
        os.fsync(fh.fileno())
    logger.warning(
        "Truncated torn row at end of %s (%d bytes dropped)", path, size - keep
    )


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------

_TEXT_COLUMNS = frozenset({"timestamp", "weather_fetched_at", "weather_status"})


class SqliteSink:
    """Append-only SQLite table ``records`` in WAL mode.

    Absent values are stored as NULL. Rows are never updated or deleted.

    Args:
        path: SQLite database file path.
        columns: Expected table columns, from ``record_columns``.
    """

    table = "records"

    def __init__(self, path: str | Path, columns: Sequence[str]) -> None:
        self._path = Path(path)
        self._columns = list(columns)
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        quoted = ", ".join(f'"{c}"' for c in self._columns)
        placeholders = ", ".join("?" for _ in self._columns)
        self._insert_sql = (
            f"INSERT INTO {self.table} ({quoted}) VALUES ({placeholders});"  # noqa: S608
        )

    @property
    def path(self) -> Path:
        return self._path

    async def open(self) -> None:
        """Open the database, create the table, or validate its columns.

        Raises:
            SinkError: If the database cannot be opened or the existing
                table has different columns.
        """
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(str(self._path))
            await self._db.execute("PRAGMA journal_mode=WAL;")
            await self._db.execute(self._create_sql())
            await self._db.commit()
            cursor = await self._db.execute(f"PRAGMA table_info({self.table});")
            found = [row[1] for row in await cursor.fetchall()]
        except (OSError, sqlite3.Error) as exc:
            await self.close()
            raise SinkError(f"cannot open {self._path}: {exc}") from exc

        if found != self._columns:
            await self.close()
            raise SinkError(
                f"{self._path} table '{self.table}' has columns {found}, "
                f"expected {self._columns}"
            )
        logger.info("SQLite sink open at %s (%d columns)", self._path, len(found))

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SqliteSink:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    async def append(self, record: MergedRecord) -> None:
        """Insert one record in its own transaction.

        Raises:
            SinkError: If the insert or commit fails.
        """
        assert self._db is not None, "Sink not opened. Call open() or use async with."
        values = [_render(value) for value in record.as_row()]
        if len(values) != len(self._columns):
            raise SinkError(
                f"record has {len(values)} values, table has {len(self._columns)} columns"
            )
        async with self._lock:
            try:
                await self._db.execute(self._insert_sql, values)
                await self._db.commit()
            except sqlite3.Error as exc:
                with contextlib.suppress(sqlite3.Error):
                    await self._db.rollback()
                raise SinkError(f"insert into {self._path} failed: {exc}") from exc

    def _create_sql(self) -> str:
        defs = ", ".join(
            f'"{c}" {"TEXT" if c in _TEXT_COLUMNS else "REAL"}' for c in self._columns
        )
        return f"CREATE TABLE IF NOT EXISTS {self.table} ({defs});"


def open_sink(path: str | Path, columns: Sequence[str]) -> CsvSink | SqliteSink:
    """Return the sink for *path*: SQLite for database suffixes, else CSV.

    The returned sink is not opened yet.
    """
    if Path(path).suffix.lower() in SQLITE_SUFFIXES:
        return SqliteSink(path, columns)
    return CsvSink(path, columns)
