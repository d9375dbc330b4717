"""SQLite persistence engine (default durable backend).

One row per submission, keyed by submission id. The full DriverState document
is stored as JSON; `status` and `sequence` are duplicated into columns for
ordering and inspection.

The `counters` table holds id and ticket high-water marks. Expunging a driver
never touches it.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from clusterdispatch.errors import ConfigurationError, StorageFailure
from clusterdispatch.models import DriverState
from clusterdispatch.storage.interfaces import PersistenceEngine
from clusterdispatch.utils import format_rfc3339, json_dumps

_SCHEMA_VERSION = 1


class SQLiteDatabase:
    def __init__(self, path: Path, *, timeout_seconds: float = 30, read_only: bool = False):
        self.path = path.resolve()
        self.timeout_seconds = timeout_seconds
        self.read_only = read_only
        if not read_only:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._migrate()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        try:
            if self.read_only:
                conn = sqlite3.connect(
                    f"{self.path.as_uri()}?mode=ro", timeout=self.timeout_seconds, isolation_level=None, uri=True
                )
            else:
                conn = sqlite3.connect(str(self.path), timeout=self.timeout_seconds, isolation_level=None)
        except sqlite3.Error as e:
            raise StorageFailure(f"Cannot open SQLite store {self.path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            # Lock timeouts surface here as OperationalError("database is locked").
            raise StorageFailure(f"SQLite store {self.path} failed: {e}") from e
        finally:
            conn.close()

    def _migrate(self) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                  version INTEGER NOT NULL
                );
                """
            )
            row = conn.execute("SELECT version FROM schema_version LIMIT 1;").fetchone()
            if row is None:
                conn.execute("INSERT INTO schema_version(version) VALUES (?);", (_SCHEMA_VERSION,))
                version = _SCHEMA_VERSION
            else:
                version = int(row["version"])

            if version != _SCHEMA_VERSION:
                raise ConfigurationError(f"Unsupported SQLite schema_version: {version}")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS drivers (
                  submission_id TEXT PRIMARY KEY,
                  status TEXT NOT NULL,
                  sequence INTEGER NOT NULL,
                  updated_at TEXT NOT NULL,
                  doc_json TEXT NOT NULL
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_drivers_sequence ON drivers(sequence);")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS counters (
                  name TEXT PRIMARY KEY,
                  value INTEGER NOT NULL
                );
                """
            )


class SQLitePersistenceEngine(PersistenceEngine):
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    @classmethod
    def open(cls, path: Path, *, timeout_seconds: float = 30, read_only: bool = False) -> "SQLitePersistenceEngine":
        """Open (and migrate) a store. A read-only store is never created or migrated."""
        return cls(SQLiteDatabase(path, timeout_seconds=timeout_seconds, read_only=read_only))

    def persist(self, state: DriverState) -> None:
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO drivers(submission_id, status, sequence, updated_at, doc_json)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(submission_id) DO UPDATE SET
                  status = excluded.status,
                  sequence = excluded.sequence,
                  updated_at = excluded.updated_at,
                  doc_json = excluded.doc_json;
                """,
                (
                    state.submission_id,
                    state.status,
                    state.sequence,
                    format_rfc3339(state.updated_at),
                    json_dumps(state.to_document()),
                ),
            )

    def read(self, submission_id: str) -> DriverState | None:
        with self._db.connect() as conn:
            row = conn.execute("SELECT doc_json FROM drivers WHERE submission_id = ?;", (submission_id,)).fetchone()
        if row is None:
            return None
        return DriverState.from_document(json.loads(row["doc_json"]))

    def read_all(self) -> list[DriverState]:
        with self._db.connect() as conn:
            rows = conn.execute("SELECT doc_json FROM drivers ORDER BY sequence ASC, submission_id ASC;").fetchall()
        return [DriverState.from_document(json.loads(r["doc_json"])) for r in rows]

    def expunge(self, submission_id: str) -> None:
        with self._db.connect() as conn:
            conn.execute("DELETE FROM drivers WHERE submission_id = ?;", (submission_id,))

    def read_counters(self) -> dict[str, int]:
        with self._db.connect() as conn:
            rows = conn.execute("SELECT name, value FROM counters;").fetchall()
        return {r["name"]: int(r["value"]) for r in rows}

    def persist_counters(self, counters: dict[str, int]) -> None:
        with self._db.connect() as conn:
            conn.executemany(
                """
                INSERT INTO counters(name, value) VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET value = MAX(value, excluded.value);
                """,
                sorted(counters.items()),
            )
