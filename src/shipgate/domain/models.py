"""
shipgate — domain records

Purpose
- Immutable records exchanged between adapters, the gate evaluator, the
  executor and the aggregator: ``Finding``, ``StageResult``, ``Verdict``,
  ``TriggerMetadata``, ``ArtifactDescriptor`` and the sealed ``PipelineRun``.

Normative behavior
- Records validate and normalize their fields in ``__post_init__`` and are
  frozen afterwards.
- Findings are kept in a deterministic order (most severe first) so that two
  runs over identical tool output serialize identically.
- ``to_dict``/``from_dict`` define the canonical JSON layout used by the run
  store and the CLI.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Final, NoReturn

from shipgate.constants import RUN_RECORD_SCHEMA_VERSION

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_MAX_RAW_OUTPUT_CHARS: Final[int] = 65_536


class Severity(StrEnum):
    """Normalized finding severity, ordered from ``info`` to ``critical``."""

    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, minimum: Severity) -> bool:
        return self.rank >= minimum.rank

    @classmethod
    def parse(cls, value: object) -> Severity:
        if isinstance(value, Severity):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        allowed = ", ".join(item.value for item in SEVERITY_ORDER)
        raise ValueError(f"invalid severity {value!r}; expected one of: {allowed}")


SEVERITY_ORDER: Final[tuple[Severity, ...]] = (
    Severity.INFO,
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
)
_SEVERITY_RANK: Final[Mapping[Severity, int]] = {
    severity: index for index, severity in enumerate(SEVERITY_ORDER)
}


class ExitStatus(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    ERROR = "error"


class VerdictOutcome(StrEnum):
    PASS = "pass"
    FAIL = "fail"
    SKIPPED = "skipped"


class StageState(StrEnum):
    """Per-stage lifecycle: ``pending -> running -> terminal``."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self not in {StageState.PENDING, StageState.RUNNING}


class RunOutcome(StrEnum):
    PASS = "pass"
    FAIL = "fail"


@dataclass(frozen=True, slots=True)
class Finding:
    """One reported issue normalized from a tool-specific schema."""

    severity: Severity
    category: str
    message: str
    location: str | None = None
    rule_id: str | None = None
    details: Mapping[str, JSONValue] = field(default_factory=dict, hash=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "severity", Severity.parse(self.severity))
        object.__setattr__(self, "category", _as_str(self.category, "Finding.category"))
        object.__setattr__(self, "message", _as_str(self.message, "Finding.message"))
        object.__setattr__(self, "location", _as_optional_str(self.location, "Finding.location"))
        object.__setattr__(self, "rule_id", _as_optional_str(self.rule_id, "Finding.rule_id"))
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))

    def sort_key(self) -> tuple[int, str, str, str, str]:
        """Most severe first, then lexical on the remaining fields."""

        return (
            -self.severity.rank,
            self.category,
            self.location or "",
            self.rule_id or "",
            self.message,
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "severity": self.severity.value,
            "category": self.category,
            "message": self.message,
            "location": self.location,
            "rule_id": self.rule_id,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Finding:
        details = payload.get("details") or {}
        if not isinstance(details, Mapping):
            _fail("Finding.details", "expected object")
        return cls(
            severity=Severity.parse(payload.get("severity")),
            category=_as_str(payload.get("category"), "Finding.category"),
            message=_as_str(payload.get("message"), "Finding.message"),
            location=_as_optional_str(payload.get("location"), "Finding.location"),
            rule_id=_as_optional_str(payload.get("rule_id"), "Finding.rule_id"),
            details=details,
        )


def normalize_findings(findings: Iterable[Finding]) -> tuple[Finding, ...]:
    """Return findings in deterministic order."""

    parsed: list[Finding] = []
    for index, item in enumerate(findings):
        if not isinstance(item, Finding):
            _fail(f"findings[{index}]", f"expected Finding, got {type(item).__name__}")
        parsed.append(item)
    parsed.sort(key=lambda item: item.sort_key())
    return tuple(parsed)


@dataclass(frozen=True, slots=True)
class StageResult:
    """Normalized output of one adapter execution. Immutable once produced."""

    stage_name: str
    exit_status: ExitStatus
    findings: tuple[Finding, ...] = ()
    raw_output: str = ""
    duration_ms: int = 0
    metrics: Mapping[str, float] = field(default_factory=dict, hash=False, compare=False)
    attempts: int = 1

    def __post_init__(self) -> None:
        object.__setattr__(self, "stage_name", _as_str(self.stage_name, "StageResult.stage_name"))
        object.__setattr__(self, "exit_status", ExitStatus(self.exit_status))
        object.__setattr__(self, "findings", normalize_findings(self.findings))
        raw = self.raw_output if isinstance(self.raw_output, str) else str(self.raw_output)
        object.__setattr__(self, "raw_output", _truncate(raw, _MAX_RAW_OUTPUT_CHARS))
        object.__setattr__(
            self, "duration_ms", _as_int(self.duration_ms, "StageResult.duration_ms", minimum=0)
        )
        object.__setattr__(self, "attempts", _as_int(self.attempts, "StageResult.attempts", minimum=1))
        metrics: dict[str, float] = {}
        for key in sorted(self.metrics):
            metrics[key] = _as_finite_float(self.metrics[key], f"StageResult.metrics.{key}")
        object.__setattr__(self, "metrics", MappingProxyType(metrics))

    @property
    def succeeded(self) -> bool:
        return self.exit_status is ExitStatus.SUCCESS

    def with_execution(self, *, attempts: int, duration_ms: int) -> StageResult:
        return replace(self, attempts=attempts, duration_ms=max(self.duration_ms, duration_ms))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "stage_name": self.stage_name,
            "exit_status": self.exit_status.value,
            "findings": [item.to_dict() for item in self.findings],
            "raw_output": self.raw_output,
            "duration_ms": self.duration_ms,
            "metrics": dict(self.metrics),
            "attempts": self.attempts,
        }


_DEFAULT_STATE_FOR_OUTCOME: Final[Mapping[VerdictOutcome, StageState]] = {
    VerdictOutcome.PASS: StageState.SUCCEEDED,
    VerdictOutcome.FAIL: StageState.FAILED,
    VerdictOutcome.SKIPPED: StageState.SKIPPED,
}


@dataclass(frozen=True, slots=True)
class Verdict:
    """Pass/Fail/Skipped outcome of one stage, with the findings behind it."""

    stage_name: str
    outcome: VerdictOutcome
    reason: str
    failing_findings: tuple[Finding, ...] = ()
    findings: tuple[Finding, ...] = ()
    state: StageState | None = None
    blocking: bool = True
    exit_status: ExitStatus | None = None
    attempts: int = 0
    retries: int = 0
    duration_ms: int = 0
    metrics: Mapping[str, float] = field(default_factory=dict, hash=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "stage_name", _as_str(self.stage_name, "Verdict.stage_name"))
        outcome = VerdictOutcome(self.outcome)
        object.__setattr__(self, "outcome", outcome)
        object.__setattr__(self, "reason", _as_str(self.reason, "Verdict.reason"))
        failing = normalize_findings(self.failing_findings)
        if outcome is not VerdictOutcome.FAIL and failing:
            _fail("Verdict.failing_findings", f"must be empty for outcome {outcome.value!r}")
        object.__setattr__(self, "failing_findings", failing)
        object.__setattr__(self, "findings", normalize_findings(self.findings))

        state = _DEFAULT_STATE_FOR_OUTCOME[outcome] if self.state is None else StageState(self.state)
        if not state.is_terminal:
            _fail("Verdict.state", f"must be terminal, got {state.value!r}")
        if (outcome is VerdictOutcome.SKIPPED) != (state is StageState.SKIPPED):
            _fail("Verdict.state", f"state {state.value!r} does not match outcome {outcome.value!r}")
        object.__setattr__(self, "state", state)

        if self.exit_status is not None:
            object.__setattr__(self, "exit_status", ExitStatus(self.exit_status))
        object.__setattr__(self, "blocking", bool(self.blocking))
        object.__setattr__(self, "attempts", _as_int(self.attempts, "Verdict.attempts", minimum=0))
        object.__setattr__(self, "retries", _as_int(self.retries, "Verdict.retries", minimum=0))
        object.__setattr__(
            self, "duration_ms", _as_int(self.duration_ms, "Verdict.duration_ms", minimum=0)
        )
        object.__setattr__(self, "metrics", MappingProxyType(dict(self.metrics)))

    @classmethod
    def skipped(cls, stage_name: str, reason: str, *, blocking: bool = True) -> Verdict:
        return cls(
            stage_name=stage_name,
            outcome=VerdictOutcome.SKIPPED,
            reason=reason,
            blocking=blocking,
        )

    @property
    def passed(self) -> bool:
        return self.outcome is VerdictOutcome.PASS

    @property
    def failed(self) -> bool:
        return self.outcome is VerdictOutcome.FAIL

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "stage_name": self.stage_name,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "state": self.state.value if self.state is not None else None,
            "blocking": self.blocking,
            "exit_status": self.exit_status.value if self.exit_status is not None else None,
            "attempts": self.attempts,
            "retries": self.retries,
            "duration_ms": self.duration_ms,
            "metrics": dict(self.metrics),
            "failing_findings": [item.to_dict() for item in self.failing_findings],
            "findings": [item.to_dict() for item in self.findings],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Verdict:
        exit_status = payload.get("exit_status")
        return cls(
            stage_name=_as_str(payload.get("stage_name"), "Verdict.stage_name"),
            outcome=VerdictOutcome(payload.get("outcome")),
            reason=_as_str(payload.get("reason"), "Verdict.reason"),
            state=StageState(payload["state"]) if payload.get("state") else None,
            blocking=bool(payload.get("blocking", True)),
            exit_status=ExitStatus(exit_status) if exit_status else None,
            attempts=int(payload.get("attempts", 0)),
            retries=int(payload.get("retries", 0)),
            duration_ms=int(payload.get("duration_ms", 0)),
            metrics=dict(payload.get("metrics") or {}),
            failing_findings=tuple(
                Finding.from_dict(item) for item in payload.get("failing_findings") or ()
            ),
            findings=tuple(Finding.from_dict(item) for item in payload.get("findings") or ()),
        )


@dataclass(frozen=True, slots=True)
class TriggerMetadata:
    """What started a run: commit, branch and an optional precomputed version."""

    commit_sha: str
    branch: str
    version: str | None = None
    labels: Mapping[str, str] = field(default_factory=dict, hash=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "commit_sha", _as_str(self.commit_sha, "TriggerMetadata.commit_sha"))
        object.__setattr__(self, "branch", _as_str(self.branch, "TriggerMetadata.branch"))
        object.__setattr__(self, "version", _as_optional_str(self.version, "TriggerMetadata.version"))
        labels: dict[str, str] = {}
        for key in sorted(self.labels):
            labels[_as_str(key, "TriggerMetadata.labels")] = str(self.labels[key])
        object.__setattr__(self, "labels", MappingProxyType(labels))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "commit_sha": self.commit_sha,
            "branch": self.branch,
            "version": self.version,
            "labels": dict(self.labels),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> TriggerMetadata:
        return cls(
            commit_sha=payload.get("commit_sha"),  # type: ignore[arg-type]
            branch=payload.get("branch"),  # type: ignore[arg-type]
            version=payload.get("version"),
            labels=payload.get("labels") or {},
        )


@dataclass(frozen=True, slots=True)
class ArtifactDescriptor:
    """Pointer to one artifact of a run; never holds the artifact content."""

    stage_name: str
    artifact_type: str
    media_type: str
    size_bytes: int
    sha256: str
    uri: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "stage_name": self.stage_name,
            "artifact_type": self.artifact_type,
            "media_type": self.media_type,
            "size_bytes": self.size_bytes,
            "sha256": self.sha256,
            "uri": self.uri,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ArtifactDescriptor:
        return cls(
            stage_name=_as_str(payload.get("stage_name"), "ArtifactDescriptor.stage_name"),
            artifact_type=_as_str(payload.get("artifact_type"), "ArtifactDescriptor.artifact_type"),
            media_type=_as_str(payload.get("media_type"), "ArtifactDescriptor.media_type"),
            size_bytes=_as_int(payload.get("size_bytes"), "ArtifactDescriptor.size_bytes", minimum=0),
            sha256=_as_str(payload.get("sha256"), "ArtifactDescriptor.sha256"),
            uri=_as_optional_str(payload.get("uri"), "ArtifactDescriptor.uri"),
        )


@dataclass(frozen=True, slots=True)
class PipelineRun:
    """Sealed record of one pipeline run; the only externally published entity."""

    run_id: str
    pipeline_name: str
    trigger: TriggerMetadata
    verdicts: tuple[Verdict, ...]
    outcome: RunOutcome
    started_at: datetime
    finished_at: datetime
    cancelled: bool = False
    artifacts: tuple[ArtifactDescriptor, ...] = ()
    aborted: bool = False
    cancel_reason: str | None = None
    schema_version: int = RUN_RECORD_SCHEMA_VERSION

    def __post_init__(self) -> None:
        object.__setattr__(self, "run_id", _as_str(self.run_id, "PipelineRun.run_id"))
        object.__setattr__(
            self, "pipeline_name", _as_str(self.pipeline_name, "PipelineRun.pipeline_name")
        )
        object.__setattr__(self, "outcome", RunOutcome(self.outcome))
        object.__setattr__(self, "verdicts", tuple(self.verdicts))
        object.__setattr__(self, "artifacts", tuple(self.artifacts))
        seen: set[str] = set()
        for verdict in self.verdicts:
            if verdict.stage_name in seen:
                _fail("PipelineRun.verdicts", f"duplicate verdict for stage {verdict.stage_name!r}")
            seen.add(verdict.stage_name)
        if self.finished_at < self.started_at:
            _fail("PipelineRun.finished_at", "must not be earlier than started_at")

    @property
    def passed(self) -> bool:
        return self.outcome is RunOutcome.PASS

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def verdict(self, stage_name: str) -> Verdict:
        for item in self.verdicts:
            if item.stage_name == stage_name:
                return item
        raise KeyError(f"no verdict for stage {stage_name!r}")

    def failing_verdicts(self) -> tuple[Verdict, ...]:
        return tuple(item for item in self.verdicts if item.outcome is VerdictOutcome.FAIL)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "schema_version": self.schema_version,
            "run_id": self.run_id,
            "pipeline_name": self.pipeline_name,
            "trigger": self.trigger.to_dict(),
            "outcome": self.outcome.value,
            "cancelled": self.cancelled,
            "aborted": self.aborted,
            "cancel_reason": self.cancel_reason,
            "started_at": format_timestamp(self.started_at),
            "finished_at": format_timestamp(self.finished_at),
            "duration_ms": self.duration_ms,
            "verdicts": [item.to_dict() for item in self.verdicts],
            "artifacts": [item.to_dict() for item in self.artifacts],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> PipelineRun:
        trigger = payload.get("trigger")
        if not isinstance(trigger, Mapping):
            _fail("PipelineRun.trigger", "expected object")
        return cls(
            run_id=_as_str(payload.get("run_id"), "PipelineRun.run_id"),
            pipeline_name=_as_str(payload.get("pipeline_name"), "PipelineRun.pipeline_name"),
            trigger=TriggerMetadata.from_dict(trigger),
            verdicts=tuple(Verdict.from_dict(item) for item in payload.get("verdicts") or ()),
            outcome=RunOutcome(payload.get("outcome")),
            started_at=parse_timestamp(payload.get("started_at"), "PipelineRun.started_at"),
            finished_at=parse_timestamp(payload.get("finished_at"), "PipelineRun.finished_at"),
            cancelled=bool(payload.get("cancelled", False)),
            artifacts=tuple(
                ArtifactDescriptor.from_dict(item) for item in payload.get("artifacts") or ()
            ),
            aborted=bool(payload.get("aborted", False)),
            cancel_reason=_as_optional_str(payload.get("cancel_reason"), "PipelineRun.cancel_reason"),
            schema_version=int(payload.get("schema_version", RUN_RECORD_SCHEMA_VERSION)),
        )


def utc_now() -> datetime:
    return datetime.now(UTC)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None or value.utcoffset() is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_timestamp(value: object, path: str) -> datetime:
    if not isinstance(value, str):
        _fail(path, f"expected ISO-8601 string, got {type(value).__name__}")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValueError(f"{path}: invalid timestamp {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return f"{text[:max_chars]}\n...[truncated {omitted} chars]"


def _as_str(value: object, path: str) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    parsed = value.strip()
    if not parsed:
        _fail(path, "must not be empty")
    return parsed


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        _fail(path, f"expected string or null, got {type(value).__name__}")
    parsed = value.strip()
    return parsed or None


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_finite_float(value: object, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    return parsed


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


__all__ = [
    "SEVERITY_ORDER",
    "ArtifactDescriptor",
    "ExitStatus",
    "Finding",
    "JSONScalar",
    "JSONValue",
    "PipelineRun",
    "RunOutcome",
    "Severity",
    "StageResult",
    "StageState",
    "TriggerMetadata",
    "Verdict",
    "VerdictOutcome",
    "format_timestamp",
    "normalize_findings",
    "parse_timestamp",
    "utc_now",
]
