"""Persistent result cache on DuckDB, keyed by (cell, UTC day, whole metres)."""

import dataclasses
import json
import logging
import threading
from collections.abc import Iterable, Sequence
from datetime import date, datetime
from typing import Any

import duckdb

from hilalgrid.config import Settings, load_settings
from hilalgrid.models import CacheKey, QualitativeCode, VisibilityResult, utc_day

logger = logging.getLogger(__name__)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS results (
        id VARCHAR,
        date VARCHAR,
        elevation INTEGER,
        qcode VARCHAR,
        color VARCHAR,
        details VARCHAR,
        PRIMARY KEY (id, date, elevation)
    )
"""
_INSERT = "INSERT OR IGNORE INTO results (id, date, elevation, qcode, color, details) VALUES "
_ROW_PLACEHOLDER = "(?, ?, ?, ?, ?, ?)"

_DIAGNOSTIC_FIELDS = tuple(
    f for f in dataclasses.fields(VisibilityResult) if f.name not in ("code", "cell_id")
)
_DATETIME_FIELDS = frozenset(
    {"sun_event", "moon_event", "best_time", "new_moon_prev", "new_moon_next"}
)


def encode_details(result: VisibilityResult) -> str:
    """JSON for the diagnostic fields; datetimes as ISO-8601 strings."""
    payload: dict[str, Any] = {}
    for f in _DIAGNOSTIC_FIELDS:
        value = getattr(result, f.name)
        if value is not None and f.name in _DATETIME_FIELDS:
            value = value.isoformat()
        payload[f.name] = value
    return json.dumps(payload)


def decode_row(cell_id: str, qcode: str, details: str | None) -> VisibilityResult:
    payload: dict[str, Any] = json.loads(details) if details else {}
    kwargs: dict[str, Any] = {}
    for f in _DIAGNOSTIC_FIELDS:
        value = payload.get(f.name)
        if value is not None and f.name in _DATETIME_FIELDS:
            value = datetime.fromisoformat(value)
        kwargs[f.name] = value
    return VisibilityResult(code=QualitativeCode(qcode), cell_id=cell_id, **kwargs)


def _row(result: VisibilityResult, when: date | datetime, elevation: float) -> tuple:
    assert result.cell_id is not None
    key = CacheKey.build(result.cell_id, when, elevation)
    return (
        key.cell_id,
        key.day.isoformat(),
        key.elevation,
        result.code.value,
        result.color,
        encode_details(result),
    )


class ResultCache:
    """Insert-or-ignore store of VisibilityResults.

    A pure performance cache: when the database cannot be opened the cache
    runs degraded, every lookup misses and every insert is dropped.
    Operations issued before initialization finishes wait for it, up to
    settings.cache_init_timeout seconds.
    """

    def __init__(
        self,
        path: str | None = None,
        chunk_size: int | None = None,
        init_timeout: float | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or load_settings()
        self.path = path if path is not None else settings.cache_path
        self.chunk_size = chunk_size or settings.cache_chunk_size
        self.init_timeout = (
            init_timeout if init_timeout is not None else settings.cache_init_timeout
        )
        self._conn: duckdb.DuckDBPyConnection | None = None
        self._ready = threading.Event()
        self._init_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._started = False
        self.degraded = False

    def start(self) -> threading.Thread:
        """Initialize in a background thread; callers queue on the ready event."""
        with self._init_lock:
            self._started = True
        thread = threading.Thread(target=self.initialize, name="hilalgrid-cache-init", daemon=True)
        thread.start()
        return thread

    def initialize(self) -> None:
        """Open the database and create the table. Failure degrades the cache."""
        with self._init_lock:
            self._started = True
            if self._ready.is_set():
                return
            try:
                conn = duckdb.connect(self.path)
                conn.execute(_SCHEMA)
                self._conn = conn
                logger.info("result cache ready at %s", self.path)
            except (duckdb.Error, OSError):
                logger.warning(
                    "result cache unavailable at %s; running without cache",
                    self.path,
                    exc_info=True,
                )
                self.degraded = True
            finally:
                self._ready.set()

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def _connection(self) -> duckdb.DuckDBPyConnection | None:
        if not self._started:
            self.initialize()
        if not self._ready.wait(self.init_timeout):
            logger.warning("result cache not ready after %.1fs; treating as miss", self.init_timeout)
            return None
        return None if self.degraded else self._conn

    def lookup_many(
        self, cell_ids: Iterable[str], when: date | datetime, elevation: float
    ) -> dict[str, VisibilityResult]:
        """Cached results for the ids that hit. Misses are simply absent."""
        conn = self._connection()
        ids = list(dict.fromkeys(cell_ids))
        if conn is None or not ids:
            return {}
        day = utc_day(when).isoformat()
        metres = int(round(elevation))
        hits: dict[str, VisibilityResult] = {}
        try:
            with conn.cursor() as cur:
                for i in range(0, len(ids), self.chunk_size):
                    chunk = ids[i : i + self.chunk_size]
                    placeholders = ", ".join("?" for _ in chunk)
                    rows = cur.execute(
                        "SELECT id, qcode, details FROM results "
                        f"WHERE date = ? AND elevation = ? AND id IN ({placeholders})",
                        [day, metres, *chunk],
                    ).fetchall()
                    for cell_id, qcode, details in rows:
                        hits[cell_id] = decode_row(cell_id, qcode, details)
        except duckdb.Error:
            logger.warning("cache lookup failed; treating %d ids as misses", len(ids), exc_info=True)
            return {}
        logger.debug("cache lookup %s@%dm: %d/%d hits", day, metres, len(hits), len(ids))
        return hits

    def insert_many(
        self, results: Sequence[VisibilityResult], when: date | datetime, elevation: float
    ) -> int:
        """Insert results whose key is new; existing keys keep their first value.

        Writes are serialized per cache and sent as one multi-row statement
        per chunk_size rows.

        Returns:
            Number of rows offered to the store (0 when degraded).
        """
        conn = self._connection()
        rows: dict[tuple, tuple] = {}
        for result in results:
            if result.cell_id is not None:
                row = _row(result, when, elevation)
                rows.setdefault(row[:3], row)
        if conn is None or not rows:
            return 0
        pending = list(rows.values())
        try:
            with self._write_lock, conn.cursor() as cur:
                for i in range(0, len(pending), self.chunk_size):
                    chunk = pending[i : i + self.chunk_size]
                    values = ", ".join(_ROW_PLACEHOLDER for _ in chunk)
                    cur.execute(_INSERT + values, [v for row in chunk for v in row])
        except duckdb.Error:
            logger.warning("cache insert of %d rows failed; dropped", len(pending), exc_info=True)
            return 0
        return len(pending)

    def close(self) -> None:
        with self._init_lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            self.degraded = True
