"""Domain record validation and canonical serialization."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from shipgate.domain.models import (
    ArtifactDescriptor,
    ExitStatus,
    Finding,
    PipelineRun,
    RunOutcome,
    Severity,
    StageResult,
    StageState,
    TriggerMetadata,
    Verdict,
    VerdictOutcome,
    format_timestamp,
    parse_timestamp,
)
from tests.fakes import TRIGGER, finding, timestamps


@pytest.mark.unit
def test_severity_parse_and_ordering() -> None:
    assert Severity.parse(" High ") is Severity.HIGH
    assert Severity.CRITICAL.at_least(Severity.HIGH)
    assert not Severity.LOW.at_least(Severity.MEDIUM)
    with pytest.raises(ValueError, match="invalid severity"):
        Severity.parse("blocker")


@pytest.mark.unit
def test_stage_result_sorts_findings_most_severe_first() -> None:
    result = StageResult(
        stage_name="lint",
        exit_status=ExitStatus.FAILURE,
        findings=(
            finding(Severity.LOW, message="b"),
            finding(Severity.CRITICAL, message="a"),
            finding(Severity.MEDIUM, message="c"),
        ),
    )

    assert [item.severity for item in result.findings] == [
        Severity.CRITICAL,
        Severity.MEDIUM,
        Severity.LOW,
    ]
    assert not result.succeeded


@pytest.mark.unit
def test_stage_result_truncates_raw_output() -> None:
    result = StageResult(stage_name="build", exit_status="success", raw_output="x" * 70_000)

    assert result.exit_status is ExitStatus.SUCCESS
    assert "[truncated" in result.raw_output
    assert len(result.raw_output) < 70_000


@pytest.mark.unit
def test_stage_result_rejects_non_finite_metric() -> None:
    with pytest.raises(ValueError, match="must be finite"):
        StageResult(
            stage_name="test",
            exit_status=ExitStatus.SUCCESS,
            metrics={"coverage_percent": float("nan")},
        )


@pytest.mark.unit
def test_verdict_state_defaults_follow_outcome() -> None:
    assert Verdict("a", VerdictOutcome.PASS, "ok").state is StageState.SUCCEEDED
    assert Verdict("a", VerdictOutcome.FAIL, "bad").state is StageState.FAILED
    timed_out = Verdict("a", VerdictOutcome.FAIL, "Timeout", state=StageState.TIMED_OUT)
    assert timed_out.state is StageState.TIMED_OUT


@pytest.mark.unit
def test_verdict_rejects_inconsistent_fields() -> None:
    with pytest.raises(ValueError, match="must be empty"):
        Verdict("a", VerdictOutcome.PASS, "ok", failing_findings=(finding(),))
    with pytest.raises(ValueError, match="does not match outcome"):
        Verdict("a", VerdictOutcome.PASS, "ok", state=StageState.SKIPPED)
    with pytest.raises(ValueError, match="must be terminal"):
        Verdict("a", VerdictOutcome.FAIL, "bad", state=StageState.RUNNING)


@pytest.mark.unit
def test_skipped_verdict_keeps_criticality() -> None:
    verdict = Verdict.skipped("sast", "Cancelled", blocking=False)

    assert verdict.outcome is VerdictOutcome.SKIPPED
    assert verdict.state is StageState.SKIPPED
    assert verdict.blocking is False
    assert verdict.attempts == 0


@pytest.mark.unit
def test_pipeline_run_round_trips_through_dict() -> None:
    started, finished = timestamps(2.25)
    run = PipelineRun(
        run_id="run-01HZX3K6Y9M0000000000000",
        pipeline_name="release",
        trigger=TriggerMetadata("abc123", "main", version="1.2.3", labels={"pr": "42"}),
        verdicts=(
            Verdict(
                "test",
                VerdictOutcome.FAIL,
                "2 findings at or above high",
                failing_findings=(finding(), finding(message="other")),
                findings=(finding(), finding(message="other")),
                exit_status=ExitStatus.FAILURE,
                attempts=2,
                retries=1,
                metrics={"coverage_percent": 71.5},
            ),
            Verdict.skipped("sast", "dependency 'test' did not pass"),
        ),
        outcome=RunOutcome.FAIL,
        started_at=started,
        finished_at=finished,
        artifacts=(
            ArtifactDescriptor("build", "version", "text/plain", 5, "0" * 64, "artifact://x"),
        ),
        aborted=True,
        cancel_reason="run aborted after artifact conflict",
    )

    restored = PipelineRun.from_dict(run.to_dict())

    assert restored == run
    assert restored.duration_ms == 2250
    assert restored.to_dict() == run.to_dict()


@pytest.mark.unit
def test_pipeline_run_rejects_duplicate_verdicts_and_reversed_timestamps() -> None:
    started, finished = timestamps()
    verdict = Verdict("a", VerdictOutcome.PASS, "ok")
    with pytest.raises(ValueError, match="duplicate verdict"):
        PipelineRun("run-x", "p", TRIGGER, (verdict, verdict), RunOutcome.PASS, started, finished)
    with pytest.raises(ValueError, match="earlier than started_at"):
        PipelineRun("run-x", "p", TRIGGER, (), RunOutcome.PASS, finished, started)


@pytest.mark.unit
def test_timestamps_are_utc_with_z_suffix() -> None:
    value = datetime(2026, 1, 2, 3, 4, 5, 6, tzinfo=UTC)

    text = format_timestamp(value)

    assert text == "2026-01-02T03:04:05.000006Z"
    assert parse_timestamp(text, "ts") == value
    with pytest.raises(ValueError, match="invalid timestamp"):
        parse_timestamp("yesterday", "ts")


@pytest.mark.unit
def test_finding_details_are_read_only() -> None:
    item = Finding(Severity.LOW, "lint", "unused import", details={"code": "F401"})

    with pytest.raises(TypeError):
        item.details["code"] = "E501"  # type: ignore[index]
