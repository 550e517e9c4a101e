"""
shipgate — pipeline executor

Purpose
- Drive one run of a validated ``StageGraph``: schedule stages as their
  dependencies resolve, invoke adapters under a bounded concurrency limit,
  turn every outcome into a ``Verdict``.

Normative behavior
- A stage is scheduled once every dependency has a verdict. If a dependency is
  skipped, or is blocking and failed, the stage is skipped without invoking its
  adapter. An advisory dependency never skips its consumers.
- The stage time budget covers every attempt and every backoff wait.
- Transient ``ToolError`` is retried up to ``retry_count`` times with
  exponential backoff capped at ``backoff_max_seconds``.
- Any other adapter exception fails that stage only; ``ArtifactConflictError``
  also aborts the run.
- On cancellation in-flight stages fail with reason ``Cancelled`` and stages
  that never started are skipped with reason ``Cancelled``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Final

import httpx

from shipgate.adapters.base import AdapterContext, CommandExecutor, LocalSubprocessExecutor
from shipgate.adapters.secrets import EnvSecretProvider, SecretProvider
from shipgate.constants import (
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_MAX_SECONDS,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_RETRY_COUNT,
    DEFAULT_STAGE_TIMEOUT_SECONDS,
    REASON_ARTIFACT_CONFLICT,
    REASON_CANCELLED,
)
from shipgate.domain.errors import ArtifactConflictError, ToolError
from shipgate.domain.models import (
    ExitStatus,
    StageResult,
    StageState,
    TriggerMetadata,
    Verdict,
    VerdictOutcome,
)
from shipgate.execution.artifacts import ArtifactStore
from shipgate.gating.evaluator import GateEvaluator
from shipgate.observability.events import EventBus, PipelineEventType
from shipgate.observability.logging import correlation_scope
from shipgate.planning.stage_graph import StageDefinition, StageGraph
from shipgate.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    SleepFn,
    run_with_timeout,
    sleep_with_cancellation,
)

logger = logging.getLogger(__name__)

VerdictCallback = Callable[[Verdict], Awaitable[None] | None]
Clock = Callable[[], float]

_ABORT_REASON: Final[str] = "run aborted after artifact conflict"


@dataclass(frozen=True, slots=True)
class ExecutorSettings:
    """Typed executor knobs; ``from_config`` reads the ``executor`` section."""

    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    default_timeout_seconds: float = DEFAULT_STAGE_TIMEOUT_SECONDS
    default_retry_count: int = DEFAULT_RETRY_COUNT
    backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    backoff_max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS

    def __post_init__(self) -> None:
        if isinstance(self.max_concurrency, bool) or self.max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        if self.default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be > 0")
        if self.default_retry_count < 0:
            raise ValueError("default_retry_count must be >= 0")
        if self.backoff_base_seconds < 0:
            raise ValueError("backoff_base_seconds must be >= 0")
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> ExecutorSettings:
        section = config.get("executor") or {}
        if not isinstance(section, Mapping):
            raise ValueError("executor config section must be a table")
        return cls(
            max_concurrency=int(section.get("max_concurrency", DEFAULT_MAX_CONCURRENCY)),
            default_timeout_seconds=float(
                section.get("default_timeout_seconds", DEFAULT_STAGE_TIMEOUT_SECONDS)
            ),
            default_retry_count=int(section.get("default_retry_count", DEFAULT_RETRY_COUNT)),
            backoff_base_seconds=float(
                section.get("backoff_base_seconds", DEFAULT_BACKOFF_BASE_SECONDS)
            ),
            backoff_max_seconds=float(
                section.get("backoff_max_seconds", DEFAULT_BACKOFF_MAX_SECONDS)
            ),
        )

    def backoff_delay(self, retry_index: int) -> float:
        """Delay before retry number ``retry_index + 1``."""
        return min(self.backoff_base_seconds * (2**retry_index), self.backoff_max_seconds)


@dataclass(slots=True)
class ExecutionReport:
    """What one ``execute`` call produced."""

    verdicts: tuple[Verdict, ...]
    artifacts: ArtifactStore
    cancelled: bool = False
    aborted: bool = False
    cancel_reason: str | None = None
    peak_concurrency: int = 0

    def verdict(self, stage_name: str) -> Verdict:
        for item in self.verdicts:
            if item.stage_name == stage_name:
                return item
        raise KeyError(f"no verdict for stage {stage_name!r}")


@dataclass(slots=True)
class _StageProgress:
    attempts: int = 0
    retries: int = 0
    started: bool = False
    started_at: float = 0.0


@dataclass(slots=True)
class _RunState:
    run_id: str
    trigger: TriggerMetadata
    store: ArtifactStore
    semaphore: BoundedSemaphore
    token: CancellationToken
    verdicts: dict[str, Verdict] = field(default_factory=dict)
    completion_order: list[Verdict] = field(default_factory=list)
    aborted: bool = False


class PipelineExecutor:
    """Runs a ``StageGraph`` to completion and returns one verdict per stage."""

    def __init__(
        self,
        settings: ExecutorSettings | None = None,
        *,
        command_executor: CommandExecutor | None = None,
        secrets: SecretProvider | None = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Clock = time.monotonic,
        event_bus: EventBus | None = None,
        evaluator: GateEvaluator | None = None,
        workspace: str | Path | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or ExecutorSettings()
        self._command_executor = command_executor or LocalSubprocessExecutor()
        self._secrets = secrets or EnvSecretProvider()
        self._sleep = sleep
        self._clock = clock
        self._event_bus = event_bus or EventBus()
        self._evaluator = evaluator or GateEvaluator()
        self._workspace = Path(workspace) if workspace is not None else Path.cwd()
        self._http_transport = http_transport

    @property
    def settings(self) -> ExecutorSettings:
        return self._settings

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    async def execute(
        self,
        graph: StageGraph,
        *,
        run_id: str,
        trigger: TriggerMetadata,
        cancel_token: CancellationToken | None = None,
        on_verdict: VerdictCallback | None = None,
    ) -> ExecutionReport:
        state = _RunState(
            run_id=run_id,
            trigger=trigger,
            store=ArtifactStore(run_id),
            semaphore=BoundedSemaphore(self._settings.max_concurrency),
            token=cancel_token or CancellationToken(),
        )
        running: dict[asyncio.Task[Verdict], str] = {}

        with correlation_scope(run_id=run_id, pipeline=graph.name):
            logger.info("pipeline run started: %s stages", len(graph))
            await self._event_bus.emit_async(
                PipelineEventType.RUN_STARTED,
                run_id=run_id,
                payload={"pipeline": graph.name, "trigger": trigger.to_dict()},
            )
            try:
                while True:
                    if not state.token.is_cancelled:
                        await self._schedule_ready(graph, state, running, on_verdict)
                    if not running:
                        break
                    done, _ = await asyncio.wait(tuple(running), return_when=asyncio.FIRST_COMPLETED)
                    for task in sorted(done, key=lambda item: graph.definition_index(running[item])):
                        running.pop(task)
                        await self._resolve(state, task.result(), on_verdict)
            finally:
                for task in running:
                    task.cancel()
                if running:
                    await asyncio.gather(*running, return_exceptions=True)

            for stage_name in graph.stage_names:
                if stage_name not in state.verdicts:
                    definition = graph.stage(stage_name)
                    await self._resolve(
                        state,
                        Verdict.skipped(stage_name, REASON_CANCELLED, blocking=definition.blocking),
                        on_verdict,
                    )

            aborted = state.aborted
            cancelled = state.token.is_cancelled and not aborted
            failed = sum(1 for item in state.completion_order if item.outcome is VerdictOutcome.FAIL)
            logger.info(
                "pipeline run finished: %s verdicts, %s failed%s",
                len(state.completion_order),
                failed,
                " (aborted)" if aborted else " (cancelled)" if cancelled else "",
            )
            await self._event_bus.emit_async(
                PipelineEventType.RUN_COMPLETED,
                run_id=run_id,
                payload={"cancelled": cancelled, "aborted": aborted, "failed": failed},
            )

        return ExecutionReport(
            verdicts=tuple(state.completion_order),
            artifacts=state.store,
            cancelled=cancelled,
            aborted=aborted,
            cancel_reason=state.token.reason if state.token.is_cancelled else None,
            peak_concurrency=state.semaphore.peak,
        )

    async def _schedule_ready(
        self,
        graph: StageGraph,
        state: _RunState,
        running: dict[asyncio.Task[Verdict], str],
        on_verdict: VerdictCallback | None,
    ) -> None:
        # Skipping a stage can make its consumers ready, so repeat until stable.
        progressed = True
        while progressed:
            progressed = False
            for stage_name in graph.ready_stages(set(state.verdicts), started=running.values()):
                definition = graph.stage(stage_name)
                blocker = _blocking_dependency(definition, state.verdicts)
                if blocker is not None:
                    verdict = Verdict.skipped(
                        stage_name,
                        f"dependency {blocker!r} did not pass",
                        blocking=definition.blocking,
                    )
                    await self._resolve(state, verdict, on_verdict)
                    progressed = True
                    continue
                task = asyncio.create_task(
                    self._run_stage(definition, state), name=f"shipgate-stage-{stage_name}"
                )
                running[task] = stage_name

    async def _resolve(
        self,
        state: _RunState,
        verdict: Verdict,
        on_verdict: VerdictCallback | None,
    ) -> None:
        state.verdicts[verdict.stage_name] = verdict
        state.completion_order.append(verdict)
        event_type = (
            PipelineEventType.STAGE_SKIPPED
            if verdict.outcome is VerdictOutcome.SKIPPED
            else PipelineEventType.STAGE_COMPLETED
        )
        await self._event_bus.emit_async(
            event_type,
            run_id=state.run_id,
            stage=verdict.stage_name,
            payload={
                "outcome": verdict.outcome.value,
                "state": verdict.state.value if verdict.state is not None else None,
                "reason": verdict.reason,
                "attempts": verdict.attempts,
                "retries": verdict.retries,
                "duration_ms": verdict.duration_ms,
            },
        )
        if on_verdict is not None:
            try:
                outcome = on_verdict(verdict)
                if outcome is not None:
                    await outcome
            except Exception:
                logger.exception("verdict callback failed for stage %s", verdict.stage_name)

    async def _run_stage(self, definition: StageDefinition, state: _RunState) -> Verdict:
        progress = _StageProgress()
        with correlation_scope(stage=definition.name):
            try:
                async with state.semaphore.permit(state.token):
                    progress.started = True
                    progress.started_at = self._clock()
                    logger.info("stage started (adapter=%s)", definition.adapter_id)
                    await self._event_bus.emit_async(
                        PipelineEventType.STAGE_STARTED,
                        run_id=state.run_id,
                        stage=definition.name,
                        payload={"adapter": definition.adapter_id},
                    )
                    result = await run_with_timeout(
                        self._attempt_loop(definition, state, progress),
                        definition.timeout_seconds,
                        state.token,
                    )
            except TimeoutError:
                logger.warning("stage timed out after %gs", definition.timeout_seconds)
                result = StageResult(
                    stage_name=definition.name,
                    exit_status=ExitStatus.TIMEOUT,
                    raw_output=f"stage exceeded its {definition.timeout_seconds:g}s budget",
                    attempts=max(progress.attempts, 1),
                )
            except asyncio.CancelledError:
                if not state.token.is_cancelled:
                    raise
                return self._cancelled_verdict(definition, state, progress)
            except ArtifactConflictError as exc:
                logger.error("artifact conflict: %s", exc)
                state.aborted = True
                state.token.cancel(_ABORT_REASON)
                return Verdict(
                    stage_name=definition.name,
                    outcome=VerdictOutcome.FAIL,
                    reason=f"{REASON_ARTIFACT_CONFLICT}: {exc}",
                    blocking=definition.blocking,
                    exit_status=ExitStatus.ERROR,
                    attempts=max(progress.attempts, 1),
                    retries=progress.retries,
                    duration_ms=self._elapsed_ms(progress),
                )

            verdict = self._evaluator.evaluate(result, definition.policy)
            verdict = replace(
                verdict,
                blocking=definition.blocking,
                attempts=max(progress.attempts, 1),
                retries=progress.retries,
                duration_ms=max(verdict.duration_ms, self._elapsed_ms(progress)),
            )
            log = logger.info if verdict.outcome is VerdictOutcome.PASS else logger.warning
            log("stage %s: %s", verdict.outcome.value, verdict.reason)
            return verdict

    async def _attempt_loop(
        self,
        definition: StageDefinition,
        state: _RunState,
        progress: _StageProgress,
    ) -> StageResult:
        max_attempts = definition.max_attempts
        for attempt in range(1, max_attempts + 1):
            progress.attempts = attempt
            view = state.store.view(definition.name, definition.dependencies)
            context = AdapterContext(
                run_id=state.run_id,
                stage_name=definition.name,
                trigger=state.trigger,
                artifacts=view,
                params=definition.params,
                workspace=self._workspace,
                dependencies=definition.dependencies,
                secrets=self._secrets,
                command_executor=self._command_executor,
                cancel_token=state.token,
                http_transport=self._http_transport,
                sleep=self._sleep,
                logger=logging.getLogger(f"shipgate.adapters.{definition.adapter_id}"),
                attempt=attempt,
            )
            attempt_started = self._clock()
            try:
                with correlation_scope(attempt=attempt):
                    result = await definition.adapter.execute(context)
                if not isinstance(result, StageResult):
                    raise ToolError(
                        f"adapter returned {type(result).__name__}, expected StageResult",
                        tool=definition.adapter_id,
                    )
            except ArtifactConflictError:
                view.discard()
                raise
            except ToolError as exc:
                view.discard()
                error = exc
            except TimeoutError as exc:
                view.discard()
                logger.warning("stage attempt %s timed out: %s", attempt, exc)
                return StageResult(
                    stage_name=definition.name,
                    exit_status=ExitStatus.TIMEOUT,
                    raw_output=str(exc),
                    attempts=attempt,
                )
            except Exception as exc:  # noqa: BLE001
                view.discard()
                error = ToolError(f"{type(exc).__name__}: {exc}", transient=False)
            except BaseException:
                view.discard()
                raise
            else:
                view.commit()
                elapsed_ms = int((self._clock() - attempt_started) * 1000)
                return result.with_execution(attempts=attempt, duration_ms=elapsed_ms)

            if not error.transient or attempt >= max_attempts:
                logger.warning("stage attempt %s failed: %s", attempt, error)
                return StageResult(
                    stage_name=definition.name,
                    exit_status=ExitStatus.ERROR,
                    raw_output=str(error),
                    attempts=attempt,
                )

            delay = self._settings.backoff_delay(attempt - 1)
            progress.retries += 1
            logger.warning(
                "transient failure on attempt %s/%s, retrying in %.2fs: %s",
                attempt,
                max_attempts,
                delay,
                error,
            )
            await self._event_bus.emit_async(
                PipelineEventType.STAGE_RETRY,
                run_id=state.run_id,
                stage=definition.name,
                payload={"attempt": attempt, "delay_seconds": delay, "error": str(error)},
            )
            await sleep_with_cancellation(delay, sleep=self._sleep, cancel_token=state.token)

        raise AssertionError("unreachable: attempt loop exhausted")

    def _cancelled_verdict(
        self,
        definition: StageDefinition,
        state: _RunState,
        progress: _StageProgress,
    ) -> Verdict:
        if not progress.started:
            return Verdict.skipped(definition.name, REASON_CANCELLED, blocking=definition.blocking)
        logger.warning("stage cancelled while running")
        return Verdict(
            stage_name=definition.name,
            outcome=VerdictOutcome.FAIL,
            reason=f"{REASON_CANCELLED}: {state.token.reason or 'run cancelled'}",
            state=StageState.FAILED,
            blocking=definition.blocking,
            attempts=max(progress.attempts, 1),
            retries=progress.retries,
            duration_ms=self._elapsed_ms(progress),
        )

    def _elapsed_ms(self, progress: _StageProgress) -> int:
        if not progress.started:
            return 0
        return max(int((self._clock() - progress.started_at) * 1000), 0)


def _blocking_dependency(definition: StageDefinition, verdicts: Mapping[str, Verdict]) -> str | None:
    """First dependency whose verdict prevents ``definition`` from running."""
    for dependency in definition.dependencies:
        verdict = verdicts[dependency]
        if verdict.outcome is VerdictOutcome.SKIPPED:
            return dependency
        if verdict.outcome is VerdictOutcome.FAIL and verdict.blocking:
            return dependency
    return None


__all__ = [
    "ExecutionReport",
    "ExecutorSettings",
    "PipelineExecutor",
    "VerdictCallback",
]
