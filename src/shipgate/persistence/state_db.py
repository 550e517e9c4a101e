"""
shipgate — SQLite state database

Purpose
- Own the connection lifecycle and schema migrations of the run database.

Normative behavior
- Every connection runs in WAL mode with a busy timeout; connections are
  short-lived and opened per operation.
- Migrations are applied in version order inside one immediate transaction
  each and recorded in ``schema_versions`` with a checksum of their SQL. A
  recorded checksum that differs from the code is an error, as is a database
  newer than the code.
- ``SQLITE_BUSY`` is retried a bounded number of times with doubling backoff.
"""

from __future__ import annotations

import hashlib
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from shipgate.constants import STATE_DB_SCHEMA_VERSION
from shipgate.domain.models import format_timestamp, utc_now

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25

_SCHEMA_VERSIONS_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_RUNS_SCHEMA: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS pipeline_runs (
        run_id TEXT PRIMARY KEY,
        pipeline_name TEXT NOT NULL,
        outcome TEXT NOT NULL CHECK (outcome IN ('pass', 'fail')),
        cancelled INTEGER NOT NULL CHECK (cancelled IN (0, 1)),
        commit_sha TEXT NOT NULL,
        branch TEXT NOT NULL,
        started_at TEXT NOT NULL,
        finished_at TEXT NOT NULL,
        record_sha256 TEXT NOT NULL CHECK (length(record_sha256) = 64),
        record_json TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_pipeline_runs_started
    ON pipeline_runs(started_at DESC, run_id DESC)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_pipeline_runs_pipeline
    ON pipeline_runs(pipeline_name, started_at DESC)
    """,
)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]

    @property
    def checksum(self) -> str:
        digest = hashlib.sha256(f"{self.version}:{self.name}\n".encode())
        for statement in self.statements:
            lines = (line.rstrip() for line in statement.strip().splitlines())
            digest.update("\n".join(lines).encode("utf-8"))
            digest.update(b"\n--\n")
        return digest.hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(version=1, name="pipeline_runs", statements=_RUNS_SCHEMA),
)

_BUSY_MESSAGES: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)
_CORRUPTION_MESSAGES: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "file is not a database",
)


class StateDBError(RuntimeError):
    """Base class for run database errors."""


class StateDBBusyError(StateDBError):
    """Bounded busy retries were exhausted."""


class StateDBMigrationError(StateDBError):
    """The schema cannot be brought to the version this code expects."""


class StateDBCorruptionError(StateDBError):
    """SQLite reported a damaged database file."""


class StateDB:
    """Short-lived SQLite connections plus an idempotent migration runner."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        if busy_timeout_ms < 0 or busy_retry_limit < 0 or busy_retry_backoff_ms < 0:
            raise ValueError("busy settings must be >= 0")
        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        try:
            self.execute(conn, f"PRAGMA busy_timeout={self._busy_timeout_ms}", operation="open database")
            mode = self.execute(conn, "PRAGMA journal_mode=WAL", operation="open database").fetchone()
            if mode is None or str(mode[0]).lower() != "wal":
                raise StateDBError(f"could not enable WAL journal mode for {self._path}")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        self.execute(conn, "BEGIN IMMEDIATE", operation="begin transaction")
        try:
            yield conn
        except Exception:
            self.execute(conn, "ROLLBACK", operation="rollback transaction")
            raise
        self.execute(conn, "COMMIT", operation="commit transaction")

    def migrate(self) -> int:
        """Apply pending migrations and return the resulting schema version."""
        known = {migration.version for migration in _MIGRATIONS}
        for version in range(1, STATE_DB_SCHEMA_VERSION + 1):
            if version not in known:
                raise StateDBMigrationError(f"missing migration for schema version {version}")

        with self.connection() as conn:
            self.execute(conn, _SCHEMA_VERSIONS_SQL, operation="create schema_versions")
            applied = self._applied(conn)
            current = max(applied, default=0)
            if current > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    f"database schema is newer than this release "
                    f"(db={current}, code={STATE_DB_SCHEMA_VERSION})"
                )
            for migration in _MIGRATIONS:
                if migration.version > STATE_DB_SCHEMA_VERSION:
                    continue
                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise StateDBMigrationError(
                            f"checksum mismatch for migration {migration.version}: "
                            f"db={record.checksum} code={migration.checksum}"
                        )
                    continue
                with self.transaction(conn):
                    for statement in migration.statements:
                        self.execute(
                            conn, statement, operation=f"apply migration {migration.version}"
                        )
                    self.execute(
                        conn,
                        "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                        "VALUES (?, ?, ?, ?)",
                        (
                            migration.version,
                            migration.name,
                            migration.checksum,
                            format_timestamp(utc_now()),
                        ),
                        operation=f"record migration {migration.version}",
                    )
            return self.schema_version(conn)

    def schema_version(self, conn: sqlite3.Connection) -> int:
        row = self.execute(
            conn,
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions",
            operation="read schema version",
        ).fetchone()
        return int(row["version"]) if row is not None else 0

    def schema_history(self) -> tuple[MigrationRecord, ...]:
        with self.connection() as conn:
            return tuple(self._applied(conn).values())

    def execute(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams = (),
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if _is_busy(exc) and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                raise self._translate(exc, operation=operation) from exc
        raise StateDBBusyError(f"{operation} exhausted busy retries")

    def integrity_check(self) -> tuple[str, ...]:
        """Problems reported by ``PRAGMA integrity_check``; empty when healthy."""
        with self.connection() as conn:
            rows = self.execute(conn, "PRAGMA integrity_check", operation="integrity check")
            messages = tuple(str(row[0]) for row in rows.fetchall())
        return () if messages == ("ok",) else messages

    def _applied(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        rows = self.execute(
            conn,
            "SELECT version, name, checksum, applied_at FROM schema_versions ORDER BY version",
            operation="load schema_versions",
        ).fetchall()
        return {
            int(row["version"]): MigrationRecord(
                version=int(row["version"]),
                name=str(row["name"]),
                checksum=str(row["checksum"]),
                applied_at=str(row["applied_at"]),
            )
            for row in rows
        }

    def _translate(self, exc: sqlite3.Error, *, operation: str) -> StateDBError:
        message = str(exc).lower()
        if any(fragment in message for fragment in _CORRUPTION_MESSAGES):
            return StateDBCorruptionError(f"{operation} failed for {self._path}: {exc}")
        if _is_busy(exc):
            return StateDBBusyError(
                f"{operation} stayed busy for {self._path} after "
                f"{self._busy_retry_limit + 1} attempt(s): {exc}"
            )
        return StateDBError(f"{operation} failed for {self._path}: {exc}")


def _is_busy(exc: sqlite3.Error) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    if code in (sqlite3.SQLITE_BUSY, sqlite3.SQLITE_LOCKED):
        return True
    message = str(exc).lower()
    return any(fragment in message for fragment in _BUSY_MESSAGES)


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "MigrationRecord",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
]
