"""Fold per-stage verdicts into the sealed ``PipelineRun`` record."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from shipgate.domain.models import (
    SEVERITY_ORDER,
    ArtifactDescriptor,
    PipelineRun,
    RunOutcome,
    Severity,
    TriggerMetadata,
    Verdict,
    VerdictOutcome,
)
from shipgate.planning.stage_graph import StageGraph


@dataclass(frozen=True, slots=True)
class RunMetadata:
    """Run-level facts the aggregator does not derive from verdicts."""

    run_id: str
    trigger: TriggerMetadata
    started_at: datetime
    finished_at: datetime
    cancelled: bool = False
    artifacts: tuple[ArtifactDescriptor, ...] = ()
    aborted: bool = False
    cancel_reason: str | None = None


class ResultAggregator:
    """Accumulates verdicts for one graph and produces the run outcome.

    The outcome is ``fail`` iff a blocking stage failed or the run was
    cancelled. Skipped stages never fail a run by themselves: they are always
    the consequence of some earlier failure or of cancellation.
    """

    def __init__(self, graph: StageGraph) -> None:
        self._graph = graph
        self._verdicts: dict[str, Verdict] = {}

    @property
    def verdicts(self) -> tuple[Verdict, ...]:
        return self._ordered(self._verdicts.values())

    def record(self, verdict: Verdict) -> None:
        if verdict.stage_name not in self._graph:
            raise KeyError(f"verdict for unknown stage {verdict.stage_name!r}")
        if verdict.stage_name in self._verdicts:
            raise ValueError(f"stage {verdict.stage_name!r} already has a verdict")
        self._verdicts[verdict.stage_name] = verdict

    def aggregate(
        self,
        metadata: RunMetadata,
        verdicts: Iterable[Verdict] | None = None,
    ) -> PipelineRun:
        if verdicts is not None:
            for verdict in verdicts:
                if verdict.stage_name not in self._verdicts:
                    self.record(verdict)
                elif self._verdicts[verdict.stage_name] != verdict:
                    raise ValueError(
                        f"conflicting verdicts for stage {verdict.stage_name!r}"
                    )
        ordered = self.verdicts
        return PipelineRun(
            run_id=metadata.run_id,
            pipeline_name=self._graph.name,
            trigger=metadata.trigger,
            verdicts=ordered,
            outcome=run_outcome(ordered, cancelled=metadata.cancelled or metadata.aborted),
            started_at=metadata.started_at,
            finished_at=metadata.finished_at,
            cancelled=metadata.cancelled,
            artifacts=metadata.artifacts,
            aborted=metadata.aborted,
            cancel_reason=metadata.cancel_reason,
        )

    def failing_verdicts(self) -> tuple[Verdict, ...]:
        return tuple(item for item in self.verdicts if item.outcome is VerdictOutcome.FAIL)

    def summary(self, source: PipelineRun | Iterable[Verdict] | None = None) -> dict[Severity, int]:
        return summary(self.verdicts if source is None else source)

    def _ordered(self, verdicts: Iterable[Verdict]) -> tuple[Verdict, ...]:
        return tuple(
            sorted(verdicts, key=lambda item: self._graph.definition_index(item.stage_name))
        )


def run_outcome(verdicts: Iterable[Verdict], *, cancelled: bool = False) -> RunOutcome:
    if cancelled:
        return RunOutcome.FAIL
    for verdict in verdicts:
        if verdict.outcome is VerdictOutcome.FAIL and verdict.blocking:
            return RunOutcome.FAIL
    return RunOutcome.PASS


def summary(source: PipelineRun | Iterable[Verdict]) -> dict[Severity, int]:
    """Finding counts per severity, every level present even when zero."""
    verdicts = source.verdicts if isinstance(source, PipelineRun) else source
    counts = {severity: 0 for severity in SEVERITY_ORDER}
    for verdict in verdicts:
        for finding in verdict.findings:
            counts[finding.severity] += 1
    return counts


__all__ = ["ResultAggregator", "RunMetadata", "run_outcome", "summary"]
