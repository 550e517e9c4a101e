"""Pure mapping from ``(StageResult, GatePolicy)`` to a ``Verdict``.

Timeout and tool errors fail the stage under every policy, advisory included:
an advisory policy relaxes judgement of findings, it does not hide a stage that
never produced any.
"""

from __future__ import annotations

from shipgate.constants import REASON_TIMEOUT, REASON_TOOL_ERROR
from shipgate.domain.models import (
    ExitStatus,
    Finding,
    StageResult,
    StageState,
    Verdict,
    VerdictOutcome,
)
from shipgate.gating.policies import (
    AdvisoryPolicy,
    CountThresholdPolicy,
    GatePolicy,
    MetricThresholdPolicy,
    PassThroughPolicy,
    SeverityThresholdPolicy,
)


class GateEvaluator:
    """Stateless; the same inputs always produce the same verdict."""

    def evaluate(self, result: StageResult, policy: GatePolicy) -> Verdict:
        if result.exit_status is ExitStatus.TIMEOUT:
            return self._verdict(
                result,
                VerdictOutcome.FAIL,
                f"{REASON_TIMEOUT}: {_excerpt(result.raw_output) or 'stage time budget exceeded'}",
                state=StageState.TIMED_OUT,
            )
        if result.exit_status is ExitStatus.ERROR:
            return self._verdict(
                result,
                VerdictOutcome.FAIL,
                f"{REASON_TOOL_ERROR}: {_excerpt(result.raw_output) or 'tool failed'}",
            )

        match policy:
            case AdvisoryPolicy():
                return self._verdict(
                    result,
                    VerdictOutcome.PASS,
                    f"advisory: {_count_phrase(len(result.findings))} recorded",
                )
            case SeverityThresholdPolicy(minimum=minimum):
                failing = tuple(item for item in result.findings if item.severity.at_least(minimum))
                if failing:
                    return self._verdict(
                        result,
                        VerdictOutcome.FAIL,
                        f"{_count_phrase(len(failing))} at or above {minimum.value}",
                        failing=failing,
                    )
                return self._verdict(
                    result, VerdictOutcome.PASS, f"no findings at or above {minimum.value}"
                )
            case CountThresholdPolicy(minimum=minimum, max_count=max_count):
                counted = tuple(item for item in result.findings if item.severity.at_least(minimum))
                if len(counted) > max_count:
                    return self._verdict(
                        result,
                        VerdictOutcome.FAIL,
                        f"{_count_phrase(len(counted))} at or above {minimum.value} "
                        f"exceeds limit of {max_count}",
                        failing=counted,
                    )
                return self._verdict(
                    result,
                    VerdictOutcome.PASS,
                    f"{_count_phrase(len(counted))} at or above {minimum.value} "
                    f"within limit of {max_count}",
                )
            case MetricThresholdPolicy(metric=metric, minimum=minimum):
                value = result.metrics.get(metric)
                if value is None:
                    return self._verdict(
                        result, VerdictOutcome.FAIL, f"metric {metric!r} was not reported"
                    )
                if value < minimum:
                    return self._verdict(
                        result,
                        VerdictOutcome.FAIL,
                        f"{metric} {value:g} is below {minimum:g}",
                    )
                return self._verdict(
                    result, VerdictOutcome.PASS, f"{metric} {value:g} meets {minimum:g}"
                )
            case PassThroughPolicy():
                return self._pass_through(result)
            case _:
                raise TypeError(f"unsupported gate policy: {type(policy).__name__}")

    def _pass_through(self, result: StageResult) -> Verdict:
        if result.exit_status is ExitStatus.SUCCESS:
            return self._verdict(result, VerdictOutcome.PASS, "tool exited successfully")
        return self._verdict(
            result,
            VerdictOutcome.FAIL,
            f"tool reported failure with {_count_phrase(len(result.findings))}",
            failing=result.findings,
        )

    @staticmethod
    def _verdict(
        result: StageResult,
        outcome: VerdictOutcome,
        reason: str,
        *,
        failing: tuple[Finding, ...] = (),
        state: StageState | None = None,
    ) -> Verdict:
        return Verdict(
            stage_name=result.stage_name,
            outcome=outcome,
            reason=reason,
            failing_findings=failing if outcome is VerdictOutcome.FAIL else (),
            findings=result.findings,
            state=state,
            exit_status=result.exit_status,
            attempts=result.attempts,
            retries=max(result.attempts - 1, 0),
            duration_ms=result.duration_ms,
            metrics=result.metrics,
        )


def _count_phrase(count: int) -> str:
    return f"{count} finding" if count == 1 else f"{count} findings"


def _excerpt(text: str, limit: int = 300) -> str:
    line = " ".join(text.split())
    if len(line) <= limit:
        return line
    return f"{line[: limit - 3]}..."


__all__ = ["GateEvaluator"]
