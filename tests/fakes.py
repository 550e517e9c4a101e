"""Shared deterministic fakes for executor, service and CLI tests."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import httpx

from shipgate.adapters.base import AdapterContext, CommandExecutor, CommandResult, CommandSpec
from shipgate.adapters.secrets import SecretProvider, StaticSecretProvider
from shipgate.domain.models import ExitStatus, Finding, Severity, StageResult, TriggerMetadata
from shipgate.execution.artifacts import ArtifactStore

Step = ExitStatus | BaseException

TRIGGER = TriggerMetadata(commit_sha="0123456789abcdef0123", branch="main")


@dataclass(slots=True)
class FakeAdapter:
    """Adapter scripted per attempt; the last step repeats once the script runs out."""

    adapter_id: str = "fake"
    steps: Sequence[Step] = (ExitStatus.SUCCESS,)
    findings: tuple[Finding, ...] = ()
    metrics: Mapping[str, float] = field(default_factory=dict)
    publish: Mapping[str, object] = field(default_factory=dict)
    delay: float = 0.0
    gate: asyncio.Event | None = None
    calls: list[AdapterContext] = field(default_factory=list)

    @property
    def invocations(self) -> int:
        return len(self.calls)

    async def execute(self, context: AdapterContext) -> StageResult:
        self.calls.append(context)
        for artifact_type, value in self.publish.items():
            context.artifacts.publish(artifact_type, value)  # type: ignore[arg-type]
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        step = self.steps[min(len(self.calls), len(self.steps)) - 1]
        if isinstance(step, BaseException):
            raise step
        return StageResult(
            stage_name=context.stage_name,
            exit_status=step,
            findings=self.findings,
            raw_output=f"{context.stage_name} attempt {context.attempt}",
            metrics=self.metrics,
        )


@dataclass(slots=True)
class RecordingSleep:
    """Stands in for ``asyncio.sleep``; records delays and yields once."""

    delays: list[float] = field(default_factory=list)

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@dataclass(slots=True)
class FakeCommandExecutor:
    """Returns canned ``CommandResult``s in order and records every spec."""

    results: list[CommandResult] = field(default_factory=list)
    specs: list[CommandSpec] = field(default_factory=list)
    on_run: object = None

    async def run(self, spec: CommandSpec) -> CommandResult:
        self.specs.append(spec)
        if callable(self.on_run):
            self.on_run(spec)
        if not self.results:
            return command_result(spec.argv)
        return self.results.pop(0)


def command_result(
    argv: Sequence[str] = ("tool",),
    *,
    exit_code: int | None = 0,
    stdout: str = "",
    stderr: str = "",
    timed_out: bool = False,
    error: str | None = None,
) -> CommandResult:
    return CommandResult(
        argv=tuple(argv),
        exit_code=None if timed_out else exit_code,
        stdout=stdout,
        stderr=stderr,
        duration_ms=5,
        timed_out=timed_out,
        error=error,
    )


def finding(
    severity: Severity | str = Severity.HIGH,
    *,
    category: str = "test",
    message: str = "something is wrong",
    location: str | None = None,
    rule_id: str | None = None,
) -> Finding:
    return Finding(
        severity=Severity.parse(severity),
        category=category,
        message=message,
        location=location,
        rule_id=rule_id,
    )


def adapter_context(
    params: Mapping[str, Any] | None = None,
    *,
    stage: str = "stage",
    workspace: Path | None = None,
    executor: CommandExecutor | None = None,
    secrets: SecretProvider | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    store: ArtifactStore | None = None,
    dependencies: Sequence[str] = (),
    sleep: RecordingSleep | None = None,
    trigger: TriggerMetadata = TRIGGER,
) -> AdapterContext:
    """Context for calling one adapter directly, outside the executor."""
    store = store if store is not None else ArtifactStore("run-test")
    return AdapterContext(
        run_id="run-test",
        stage_name=stage,
        trigger=trigger,
        artifacts=store.view(stage, dependencies),
        params=dict(params or {}),
        workspace=workspace or Path.cwd(),
        dependencies=tuple(dependencies),
        secrets=secrets or StaticSecretProvider({}),
        command_executor=executor if executor is not None else FakeCommandExecutor(),
        http_transport=transport,
        sleep=sleep or RecordingSleep(),
    )


def timestamps(seconds: float = 1.5) -> tuple[datetime, datetime]:
    started = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)
    return started, started + timedelta(seconds=seconds)


__all__ = [
    "TRIGGER",
    "FakeAdapter",
    "FakeCommandExecutor",
    "RecordingSleep",
    "Step",
    "adapter_context",
    "command_result",
    "finding",
    "timestamps",
]
