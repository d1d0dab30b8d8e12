"""Ordered byte-key/value store backed by SQLite."""

from __future__ import annotations

import enum
import logging
import sqlite3
import struct
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

from .errors import IndexerError

logger = logging.getLogger(__name__)

DB_VERSION = 1
_DB_FILE = "index.sqlite3"
_BATCH = 256
_VERSION_KEY = b"V"


class IncompatibleDatabase(IndexerError):
    """The database on disk was written with an incompatible layout."""


@dataclass(frozen=True)
class DBRow:
    """A single key/value record."""

    key: bytes
    value: bytes


class DBFlush(enum.Enum):
    """Whether writes are synced to disk immediately."""

    DISABLE = "disable"
    ENABLE = "enable"


class DB:
    """A key-ordered store supporting prefix scans in both directions."""

    def __init__(self, conn: sqlite3.Connection, path: Path, auto_compaction: bool) -> None:
        self._conn = conn
        self._path = path
        self._lock = threading.RLock()
        self.auto_compaction = auto_compaction

    @classmethod
    def open(
        cls,
        path: str | Path,
        light_mode: bool = False,
        initial_sync_compaction: bool = False,
    ) -> "DB":
        """Open (creating if missing) the store in directory ``path``."""
        directory = Path(path)
        logger.debug("opening DB at %s", directory)
        directory.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(directory / _DB_FILE), isolation_level=None, check_same_thread=False
        )
        conn.execute("PRAGMA auto_vacuum=INCREMENTAL")
        conn.execute("PRAGMA journal_mode=WAL").fetchall()
        conn.execute(
            "CREATE TABLE IF NOT EXISTS kv (key BLOB PRIMARY KEY, value BLOB NOT NULL)"
            " WITHOUT ROWID"
        )
        db = cls(conn, directory, initial_sync_compaction)
        try:
            db._verify_compatibility(light_mode)
        except BaseException:
            db.close()
            raise
        return db

    def __enter__(self) -> "DB":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"DB({str(self._path)!r})"

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def full_compaction(self) -> None:
        logger.debug("starting full compaction on %r", self)
        with self._lock:
            self._conn.execute("VACUUM")
        logger.debug("finished full compaction on %r", self)

    def enable_auto_compaction(self) -> None:
        self.auto_compaction = True

    def _fetch(self, sql: str, params: tuple) -> list[tuple[bytes, bytes]]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def iter_scan(self, prefix: bytes) -> Iterator[DBRow]:
        """Yield rows whose key starts with ``prefix``, in ascending key order."""
        return self.iter_scan_from(prefix, prefix)

    def iter_scan_from(self, prefix: bytes, start_at: bytes) -> Iterator[DBRow]:
        """Yield rows from ``start_at`` onwards while keys start with ``prefix``."""
        prefix = bytes(prefix)
        position = bytes(start_at)
        op = ">="
        while True:
            batch = self._fetch(
                f"SELECT key, value FROM kv WHERE key {op} ? ORDER BY key LIMIT ?",
                (position, _BATCH),
            )
            for key, value in batch:
                if not key.startswith(prefix):
                    return
                yield DBRow(key, value)
            if len(batch) < _BATCH:
                return
            position = batch[-1][0]
            op = ">"

    def iter_scan_reverse(self, prefix: bytes, prefix_max: bytes) -> Iterator[DBRow]:
        """Yield rows at or below ``prefix_max`` in descending order while keys start with ``prefix``."""
        prefix = bytes(prefix)
        position = bytes(prefix_max)
        op = "<="
        while True:
            batch = self._fetch(
                f"SELECT key, value FROM kv WHERE key {op} ? ORDER BY key DESC LIMIT ?",
                (position, _BATCH),
            )
            for key, value in batch:
                if not key.startswith(prefix):
                    return
                yield DBRow(key, value)
            if len(batch) < _BATCH:
                return
            position = batch[-1][0]
            op = "<"

    def write(self, rows: Iterable[DBRow], flush: DBFlush) -> None:
        """Write a batch of rows atomically, sorted by key."""
        ordered = sorted(rows, key=lambda row: row.key)
        logger.debug("writing %d rows to %r, flush=%s", len(ordered), self, flush)
        sync = "FULL" if flush is DBFlush.ENABLE else "OFF"
        with self._lock:
            self._conn.execute(f"PRAGMA synchronous={sync}")
            self._conn.execute("BEGIN")
            try:
                self._conn.executemany(
                    "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                    ((bytes(row.key), bytes(row.value)) for row in ordered),
                )
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")
            if self.auto_compaction:
                self._conn.execute("PRAGMA incremental_vacuum").fetchall()

    def flush(self) -> None:
        with self._lock:
            self._conn.execute("PRAGMA wal_checkpoint(FULL)").fetchall()

    def _put(self, key: bytes, value: bytes, sync: str) -> None:
        with self._lock:
            self._conn.execute(f"PRAGMA synchronous={sync}")
            self._conn.execute(
                "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                (bytes(key), bytes(value)),
            )

    def put(self, key: bytes, value: bytes) -> None:
        self._put(key, value, "NORMAL")

    def put_sync(self, key: bytes, value: bytes) -> None:
        self._put(key, value, "FULL")

    def get(self, key: bytes) -> bytes | None:
        rows = self._fetch("SELECT value FROM kv WHERE key = ?", (bytes(key),))
        return rows[0][0] if rows else None

    def multi_get(self, keys: Iterable[bytes]) -> list[bytes | None]:
        return [self.get(key) for key in keys]

    def _verify_compatibility(self, light_mode: bool) -> None:
        expected = struct.pack("<I", DB_VERSION)
        if light_mode:
            # appended rather than encoded so that non-light databases keep their marker
            expected += b"\x01"
        stored = self.get(_VERSION_KEY)
        if stored is None:
            self.put(_VERSION_KEY, expected)
        elif stored != expected:
            raise IncompatibleDatabase("Incompatible database found. Please reindex.")