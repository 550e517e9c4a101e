"""Storage of sealed ``PipelineRun`` records.

A run is stored once as canonical JSON (verdicts plus the artifact manifest,
never artifact contents). Saving the same run id again replaces the record.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final, Protocol, runtime_checkable

from shipgate.domain.errors import RunNotFoundError
from shipgate.domain.models import PipelineRun, format_timestamp
from shipgate.persistence.state_db import StateDB, StateDBError
from shipgate.utils.hashing import canonical_json, sha256_text

MAX_PAGE_SIZE: Final[int] = 1_000


@runtime_checkable
class RunStore(Protocol):
    def save(self, run: PipelineRun) -> None: ...

    def get(self, run_id: str) -> PipelineRun: ...

    def list_recent(self, limit: int = 20) -> tuple[PipelineRun, ...]: ...


class InMemoryRunStore:
    """Process-local store used by tests and the ``local`` profile."""

    def __init__(self) -> None:
        self._runs: dict[str, PipelineRun] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._runs)

    def save(self, run: PipelineRun) -> None:
        with self._lock:
            self._runs[run.run_id] = run

    def get(self, run_id: str) -> PipelineRun:
        with self._lock:
            run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def list_recent(self, limit: int = 20) -> tuple[PipelineRun, ...]:
        _validate_limit(limit)
        with self._lock:
            runs = list(self._runs.values())
        runs.sort(key=lambda item: (item.started_at, item.run_id), reverse=True)
        return tuple(runs[:limit])


class SQLiteRunStore:
    """``RunStore`` on top of the migrated ``pipeline_runs`` table."""

    def __init__(self, db: StateDB | str | Path) -> None:
        self._db = db if isinstance(db, StateDB) else StateDB(db)
        self._db.migrate()

    @property
    def db(self) -> StateDB:
        return self._db

    def save(self, run: PipelineRun) -> None:
        record_json = canonical_json(run.to_dict())
        with self._db.connection() as conn, self._db.transaction(conn):
            self._db.execute(
                conn,
                """
                INSERT INTO pipeline_runs (
                    run_id, pipeline_name, outcome, cancelled, commit_sha, branch,
                    started_at, finished_at, record_sha256, record_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    pipeline_name=excluded.pipeline_name,
                    outcome=excluded.outcome,
                    cancelled=excluded.cancelled,
                    commit_sha=excluded.commit_sha,
                    branch=excluded.branch,
                    started_at=excluded.started_at,
                    finished_at=excluded.finished_at,
                    record_sha256=excluded.record_sha256,
                    record_json=excluded.record_json
                """,
                (
                    run.run_id,
                    run.pipeline_name,
                    run.outcome.value,
                    1 if run.cancelled else 0,
                    run.trigger.commit_sha,
                    run.trigger.branch,
                    format_timestamp(run.started_at),
                    format_timestamp(run.finished_at),
                    sha256_text(record_json),
                    record_json,
                ),
                operation=f"save run {run.run_id}",
            )

    def get(self, run_id: str) -> PipelineRun:
        with self._db.connection() as conn:
            row = self._db.execute(
                conn,
                "SELECT record_json, record_sha256 FROM pipeline_runs WHERE run_id = ?",
                (run_id,),
                operation=f"load run {run_id}",
            ).fetchone()
        if row is None:
            raise RunNotFoundError(run_id)
        return _decode_record(run_id, str(row["record_json"]), str(row["record_sha256"]))

    def list_recent(self, limit: int = 20) -> tuple[PipelineRun, ...]:
        _validate_limit(limit)
        with self._db.connection() as conn:
            rows = self._db.execute(
                conn,
                "SELECT run_id, record_json, record_sha256 FROM pipeline_runs "
                "ORDER BY started_at DESC, run_id DESC LIMIT ?",
                (limit,),
                operation="list runs",
            ).fetchall()
        return tuple(
            _decode_record(str(row["run_id"]), str(row["record_json"]), str(row["record_sha256"]))
            for row in rows
        )


def run_store_from_config(config: Mapping[str, Any]) -> RunStore:
    """Build the store named by ``persistence.backend``."""
    section = config.get("persistence") or {}
    backend = section.get("backend", "sqlite")
    if backend == "memory":
        return InMemoryRunStore()
    if backend == "sqlite":
        return SQLiteRunStore(Path(section["state_db"]))
    raise ValueError(f"unknown persistence backend {backend!r}")


def _decode_record(run_id: str, record_json: str, expected_sha256: str) -> PipelineRun:
    if sha256_text(record_json) != expected_sha256:
        raise StateDBError(f"stored record for run {run_id} failed its checksum")
    try:
        return PipelineRun.from_dict(json.loads(record_json))
    except (json.JSONDecodeError, ValueError, KeyError) as exc:
        raise StateDBError(f"stored record for run {run_id} is unreadable: {exc}") from exc


def _validate_limit(limit: int) -> None:
    if isinstance(limit, bool) or not isinstance(limit, int) or not 0 < limit <= MAX_PAGE_SIZE:
        raise ValueError(f"limit must be in [1, {MAX_PAGE_SIZE}]")


__all__ = [
    "MAX_PAGE_SIZE",
    "InMemoryRunStore",
    "RunStore",
    "SQLiteRunStore",
    "run_store_from_config",
]
