"""
shipgate — pipeline service

Purpose
- The external entry point: submit a pipeline for a trigger, await or cancel
  the run, look up finished runs.

Normative behavior
- ``submit_run`` validates the definition synchronously; only
  ``DefinitionError`` can make it fail. The run itself proceeds as a task on
  the running event loop.
- A finished run is saved to the run store before ``wait()`` resolves.
- Cancelling a handle cancels the run's token; the sealed run records
  ``cancelled=True`` and outcome ``fail``.
- A run aborted by an artifact conflict records ``aborted=True`` instead;
  ``cancel_reason`` tells the two apart.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import httpx

from shipgate.adapters.base import CommandExecutor
from shipgate.adapters.secrets import SecretProvider
from shipgate.domain.ids import generate_run_id
from shipgate.domain.models import PipelineRun, TriggerMetadata, utc_now
from shipgate.execution.aggregator import ResultAggregator, RunMetadata
from shipgate.execution.executor import ExecutorSettings, PipelineExecutor, VerdictCallback
from shipgate.observability.events import EventBus
from shipgate.persistence.run_store import InMemoryRunStore, RunStore
from shipgate.planning.stage_graph import PipelineDefinition, StageGraph
from shipgate.utils.concurrency import CancellationToken, SleepFn

logger = logging.getLogger(__name__)

_USER_CANCEL_REASON = "cancelled by request"


class PipelineRunHandle:
    """Caller's grip on one submitted run."""

    def __init__(
        self,
        run_id: str,
        task: asyncio.Task[PipelineRun],
        token: CancellationToken,
    ) -> None:
        self._run_id = run_id
        self._task = task
        self._token = token

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def done(self) -> bool:
        return self._task.done()

    @property
    def cancel_requested(self) -> bool:
        return self._token.is_cancelled

    def cancel(self, reason: str = _USER_CANCEL_REASON) -> None:
        self._token.cancel(reason)

    async def wait(self) -> PipelineRun:
        # Shielded so a cancelled waiter does not tear down the run itself.
        return await asyncio.shield(self._task)

    def __repr__(self) -> str:
        state = "done" if self.done else "running"
        return f"PipelineRunHandle(run_id={self._run_id!r}, {state})"


class PipelineService:
    """Submits runs to a ``PipelineExecutor`` and persists the sealed results."""

    def __init__(
        self,
        settings: ExecutorSettings | None = None,
        *,
        run_store: RunStore | None = None,
        secrets: SecretProvider | None = None,
        command_executor: CommandExecutor | None = None,
        sleep: SleepFn = asyncio.sleep,
        event_bus: EventBus | None = None,
        workspace: str | Path | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._run_store = run_store if run_store is not None else InMemoryRunStore()
        self._event_bus = event_bus or EventBus()
        self._now = now
        self._executor = PipelineExecutor(
            settings,
            command_executor=command_executor,
            secrets=secrets,
            sleep=sleep,
            event_bus=self._event_bus,
            workspace=workspace,
            http_transport=http_transport,
        )
        self._active: dict[str, PipelineRunHandle] = {}

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def run_store(self) -> RunStore:
        return self._run_store

    @property
    def settings(self) -> ExecutorSettings:
        return self._executor.settings

    def submit_run(
        self,
        definition: PipelineDefinition | StageGraph,
        trigger: TriggerMetadata,
        *,
        run_id: str | None = None,
        on_verdict: VerdictCallback | None = None,
    ) -> PipelineRunHandle:
        graph = definition.build() if isinstance(definition, PipelineDefinition) else definition
        if not isinstance(graph, StageGraph):
            raise TypeError(f"expected PipelineDefinition or StageGraph, got {type(graph).__name__}")
        loop = asyncio.get_running_loop()

        resolved_run_id = run_id or generate_run_id()
        if resolved_run_id in self._active:
            raise ValueError(f"run {resolved_run_id!r} is already active")
        token = CancellationToken()
        task = loop.create_task(
            self._drive(graph, resolved_run_id, trigger, token, on_verdict),
            name=f"shipgate-run-{resolved_run_id}",
        )
        handle = PipelineRunHandle(resolved_run_id, task, token)
        self._active[resolved_run_id] = handle
        task.add_done_callback(lambda _: self._active.pop(resolved_run_id, None))
        logger.info(
            "submitted run %s for pipeline %s at %s",
            resolved_run_id,
            graph.name,
            trigger.commit_sha,
        )
        return handle

    async def run(
        self,
        definition: PipelineDefinition | StageGraph,
        trigger: TriggerMetadata,
        *,
        on_verdict: VerdictCallback | None = None,
    ) -> PipelineRun:
        """Submit and wait in one call."""
        return await self.submit_run(definition, trigger, on_verdict=on_verdict).wait()

    def active_runs(self) -> tuple[PipelineRunHandle, ...]:
        return tuple(self._active.values())

    def get_run(self, run_id: str) -> PipelineRun:
        return self._run_store.get(run_id)

    def list_runs(self, limit: int = 20) -> tuple[PipelineRun, ...]:
        return self._run_store.list_recent(limit)

    async def _drive(
        self,
        graph: StageGraph,
        run_id: str,
        trigger: TriggerMetadata,
        token: CancellationToken,
        on_verdict: VerdictCallback | None,
    ) -> PipelineRun:
        started_at = self._now()
        try:
            report = await self._executor.execute(
                graph,
                run_id=run_id,
                trigger=trigger,
                cancel_token=token,
                on_verdict=on_verdict,
            )
        except Exception:
            logger.exception("run %s crashed", run_id)
            raise
        finished_at = max(self._now(), started_at)

        run = ResultAggregator(graph).aggregate(
            RunMetadata(
                run_id=run_id,
                trigger=trigger,
                started_at=started_at,
                finished_at=finished_at,
                cancelled=report.cancelled,
                artifacts=report.artifacts.manifest(),
                aborted=report.aborted,
                cancel_reason=report.cancel_reason,
            ),
            report.verdicts,
        )
        await asyncio.to_thread(self._run_store.save, run)
        logger.info("run %s sealed: %s", run_id, run.outcome.value)
        return run


__all__ = ["PipelineRunHandle", "PipelineService"]
