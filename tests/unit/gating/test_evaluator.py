"""Gate evaluation: policy variants, error handling and purity."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from shipgate.domain.models import (
    ExitStatus,
    Finding,
    Severity,
    StageResult,
    StageState,
    VerdictOutcome,
)
from shipgate.gating.evaluator import GateEvaluator
from shipgate.gating.policies import (
    AdvisoryPolicy,
    CountThresholdPolicy,
    GatePolicy,
    MetricThresholdPolicy,
    PassThroughPolicy,
    SeverityThresholdPolicy,
)
from tests.fakes import finding

EVALUATOR = GateEvaluator()


def _result(
    *findings: Finding,
    exit_status: ExitStatus = ExitStatus.SUCCESS,
    metrics: dict[str, float] | None = None,
    raw_output: str = "",
) -> StageResult:
    return StageResult(
        stage_name="scan",
        exit_status=exit_status,
        findings=findings,
        metrics=metrics or {},
        raw_output=raw_output,
        attempts=2,
        duration_ms=40,
    )


@pytest.mark.unit
def test_severity_threshold_fails_on_findings_at_or_above_minimum() -> None:
    result = _result(finding(Severity.LOW), finding(Severity.HIGH), finding(Severity.CRITICAL))

    verdict = EVALUATOR.evaluate(result, SeverityThresholdPolicy(minimum=Severity.HIGH))

    assert verdict.outcome is VerdictOutcome.FAIL
    assert verdict.reason == "2 findings at or above high"
    assert [item.severity for item in verdict.failing_findings] == [
        Severity.CRITICAL,
        Severity.HIGH,
    ]
    assert len(verdict.findings) == 3
    assert verdict.attempts == 2
    assert verdict.retries == 1


@pytest.mark.unit
@pytest.mark.parametrize(
    "policy",
    [
        SeverityThresholdPolicy(minimum=Severity.INFO),
        CountThresholdPolicy(minimum=Severity.INFO, max_count=0),
    ],
)
def test_empty_findings_always_pass_severity_policies(policy: GatePolicy) -> None:
    # Tool exit status is not authoritative under severity policies.
    verdict = EVALUATOR.evaluate(_result(exit_status=ExitStatus.FAILURE), policy)

    assert verdict.outcome is VerdictOutcome.PASS
    assert verdict.failing_findings == ()


@pytest.mark.unit
def test_count_threshold_compares_against_limit() -> None:
    policy = CountThresholdPolicy(minimum=Severity.MEDIUM, max_count=2)
    two = _result(finding(Severity.MEDIUM), finding(Severity.HIGH), finding(Severity.LOW))
    three = _result(finding(Severity.MEDIUM), finding(Severity.HIGH), finding(Severity.CRITICAL))

    passed = EVALUATOR.evaluate(two, policy)
    failed = EVALUATOR.evaluate(three, policy)

    assert passed.outcome is VerdictOutcome.PASS
    assert passed.reason == "2 findings at or above medium within limit of 2"
    assert failed.outcome is VerdictOutcome.FAIL
    assert failed.reason == "3 findings at or above medium exceeds limit of 2"
    assert len(failed.failing_findings) == 3


@pytest.mark.unit
def test_pass_through_uses_tool_exit_status() -> None:
    ok = EVALUATOR.evaluate(_result(finding(Severity.CRITICAL)), PassThroughPolicy())
    bad = EVALUATOR.evaluate(
        _result(finding(Severity.LOW), exit_status=ExitStatus.FAILURE), PassThroughPolicy()
    )

    assert ok.outcome is VerdictOutcome.PASS
    assert bad.outcome is VerdictOutcome.FAIL
    assert bad.reason == "tool reported failure with 1 finding"
    assert bad.exit_status is ExitStatus.FAILURE


@pytest.mark.unit
def test_advisory_never_fails_on_findings() -> None:
    verdict = EVALUATOR.evaluate(
        _result(finding(Severity.CRITICAL), exit_status=ExitStatus.FAILURE),
        AdvisoryPolicy(),
    )

    assert verdict.outcome is VerdictOutcome.PASS
    assert verdict.reason == "advisory: 1 finding recorded"
    assert len(verdict.findings) == 1


@pytest.mark.unit
def test_metric_threshold() -> None:
    policy = MetricThresholdPolicy(metric="coverage_percent", minimum=80)

    low = EVALUATOR.evaluate(_result(metrics={"coverage_percent": 72.5}), policy)
    high = EVALUATOR.evaluate(_result(metrics={"coverage_percent": 80.0}), policy)
    missing = EVALUATOR.evaluate(_result(), policy)

    assert low.outcome is VerdictOutcome.FAIL
    assert low.reason == "coverage_percent 72.5 is below 80"
    assert high.outcome is VerdictOutcome.PASS
    assert missing.outcome is VerdictOutcome.FAIL
    assert "was not reported" in missing.reason


@pytest.mark.unit
@pytest.mark.parametrize(
    "policy",
    [AdvisoryPolicy(), PassThroughPolicy(), SeverityThresholdPolicy(minimum=Severity.CRITICAL)],
)
def test_timeout_and_error_fail_under_every_policy(policy: GatePolicy) -> None:
    timed_out = EVALUATOR.evaluate(
        _result(exit_status=ExitStatus.TIMEOUT, raw_output="stage exceeded its 5s budget"), policy
    )
    errored = EVALUATOR.evaluate(
        _result(exit_status=ExitStatus.ERROR, raw_output="sonarqube: HTTP 401"), policy
    )

    assert timed_out.outcome is VerdictOutcome.FAIL
    assert timed_out.state is StageState.TIMED_OUT
    assert timed_out.reason == "Timeout: stage exceeded its 5s budget"
    assert errored.outcome is VerdictOutcome.FAIL
    assert errored.state is StageState.FAILED
    assert errored.reason == "ToolError: sonarqube: HTTP 401"


@pytest.mark.unit
def test_unknown_policy_type_is_rejected() -> None:
    class CustomPolicy(GatePolicy):
        kind = "custom"

    with pytest.raises(TypeError, match="unsupported gate policy"):
        EVALUATOR.evaluate(_result(), CustomPolicy())


_findings = st.lists(
    st.builds(
        Finding,
        severity=st.sampled_from(list(Severity)),
        category=st.sampled_from(["sast", "secret", "test-failure"]),
        message=st.text(alphabet="abcdefgh ", min_size=1, max_size=12).filter(str.strip),
        location=st.none() | st.just("src/app.py:10"),
    ),
    max_size=8,
)
_policies = st.one_of(
    st.just(PassThroughPolicy()),
    st.just(AdvisoryPolicy()),
    st.builds(SeverityThresholdPolicy, minimum=st.sampled_from(list(Severity))),
    st.builds(
        CountThresholdPolicy,
        minimum=st.sampled_from(list(Severity)),
        max_count=st.integers(min_value=0, max_value=5),
    ),
    st.builds(
        MetricThresholdPolicy,
        metric=st.just("coverage_percent"),
        minimum=st.floats(min_value=0, max_value=100),
    ),
)


@pytest.mark.unit
@settings(max_examples=100, deadline=None)
@given(
    findings=_findings,
    exit_status=st.sampled_from(list(ExitStatus)),
    coverage=st.none() | st.floats(min_value=0, max_value=100),
    policy=_policies,
)
def test_evaluation_is_idempotent(
    findings: list[Finding],
    exit_status: ExitStatus,
    coverage: float | None,
    policy: GatePolicy,
) -> None:
    result = StageResult(
        stage_name="scan",
        exit_status=exit_status,
        findings=tuple(findings),
        metrics={} if coverage is None else {"coverage_percent": coverage},
    )

    first = EVALUATOR.evaluate(result, policy)
    second = GateEvaluator().evaluate(result, policy)

    assert first == second
    assert first.to_dict() == second.to_dict()
    assert set(first.failing_findings) <= set(result.findings)
    if not findings and isinstance(policy, (SeverityThresholdPolicy, CountThresholdPolicy)):
        if exit_status in (ExitStatus.SUCCESS, ExitStatus.FAILURE):
            assert first.outcome is VerdictOutcome.PASS
