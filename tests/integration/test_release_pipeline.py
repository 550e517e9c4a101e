"""Release gate on Build -> {Test, Lint} -> SAST with real adapters and mocked tools."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path

import httpx
import pytest

from shipgate.adapters.base import CommandResult, CommandSpec
from shipgate.adapters.secrets import StaticSecretProvider
from shipgate.config.loader import load_config
from shipgate.domain.models import RunOutcome, Severity, StageState, VerdictOutcome
from shipgate.execution.executor import ExecutorSettings
from shipgate.execution.service import PipelineService
from shipgate.persistence.run_store import InMemoryRunStore
from shipgate.planning.loader import load_pipeline_file, parse_pipeline
from tests.fakes import TRIGGER, RecordingSleep, command_result

REPO_ROOT = Path(__file__).resolve().parents[2]

_SONAR_TOKEN = "squ_fedcba9876543210fedcba9876543210fedcba98"

_FAILING_JUNIT = """<testsuite name="pytest">
  <testcase classname="tests.test_checkout" name="test_total"><failure message="assert 10 == 12"/></testcase>
  <testcase classname="tests.test_checkout" name="test_tax"><failure message="assert 0.2 == 0.19"/></testcase>
  <testcase classname="tests.test_checkout" name="test_empty"/>
</testsuite>
"""
_PASSING_JUNIT = '<testsuite name="pytest"><testcase classname="tests.test_checkout" name="test_total"/></testsuite>'

_PIPELINE = {
    "name": "release",
    "stages": [
        {"name": "build", "adapter": "command", "params": {"command": ["make", "build"]}},
        {
            "name": "test",
            "adapter": "junit",
            "depends_on": ["build"],
            "policy": {"kind": "severity-threshold", "minimum": "high"},
        },
        {
            "name": "lint",
            "adapter": "ruff",
            "depends_on": ["build"],
            "policy": {"kind": "severity-threshold", "minimum": "high"},
        },
        {
            "name": "sast",
            "adapter": "sonarqube",
            "depends_on": ["test", "lint"],
            "policy": {"kind": "severity-threshold", "minimum": "high"},
            "params": {
                "server_url": "https://sonar.example",
                "token": "env:SONAR_TOKEN",
                "poll_interval_seconds": 1,
            },
        },
    ],
}


@dataclass(slots=True)
class ScriptedTools:
    """Command executor answering by tool name, independent of scheduling order."""

    exit_codes: dict[str, int] = field(default_factory=dict)
    stdout: dict[str, str] = field(default_factory=dict)
    invoked: list[str] = field(default_factory=list)

    async def run(self, spec: CommandSpec) -> CommandResult:
        tool = spec.argv[0]
        self.invoked.append(tool)
        return command_result(
            spec.argv, exit_code=self.exit_codes.get(tool, 0), stdout=self.stdout.get(tool, "")
        )


def _sonar(issues: list[dict[str, object]], requests: list[str]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request.url.path)
        if request.url.path == "/api/ce/task":
            return httpx.Response(200, json={"task": {"status": "SUCCESS", "analysisId": "an-9"}})
        if request.url.path == "/api/issues/search":
            return httpx.Response(200, json={"paging": {"total": len(issues)}, "issues": issues})
        return httpx.Response(404, text="not found")

    return httpx.MockTransport(handler)


def _workspace(tmp_path: Path, junit: str) -> Path:
    (tmp_path / "reports").mkdir()
    (tmp_path / "reports" / "junit.xml").write_text(junit, encoding="utf-8")
    (tmp_path / ".scannerwork").mkdir()
    (tmp_path / ".scannerwork" / "report-task.txt").write_text(
        "projectKey=checkout\nceTaskId=task-1\n", encoding="utf-8"
    )
    return tmp_path


def _service(workspace: Path, tools: ScriptedTools, transport: httpx.MockTransport) -> PipelineService:
    return PipelineService(
        ExecutorSettings(max_concurrency=2),
        run_store=InMemoryRunStore(),
        secrets=StaticSecretProvider({"env:SONAR_TOKEN": _SONAR_TOKEN}),
        command_executor=tools,
        sleep=RecordingSleep(),
        workspace=workspace,
        http_transport=transport,
    )


@pytest.mark.integration
async def test_failing_tests_skip_sast_and_reject_the_commit(tmp_path: Path) -> None:
    requests: list[str] = []
    tools = ScriptedTools(exit_codes={"pytest": 1}, stdout={"ruff": "[]"})
    service = _service(_workspace(tmp_path, _FAILING_JUNIT), tools, _sonar([], requests))

    run = await service.run(parse_pipeline(_PIPELINE), TRIGGER)

    assert run.outcome is RunOutcome.FAIL
    assert [item.stage_name for item in run.verdicts] == ["build", "test", "lint", "sast"]
    test = run.verdict("test")
    assert test.outcome is VerdictOutcome.FAIL
    assert [item.severity for item in test.failing_findings] == [Severity.HIGH, Severity.HIGH]
    assert run.verdict("lint").outcome is VerdictOutcome.PASS
    sast = run.verdict("sast")
    assert sast.outcome is VerdictOutcome.SKIPPED
    assert sast.state is StageState.SKIPPED
    assert sast.reason == "dependency 'test' did not pass"
    assert "sonar-scanner" not in tools.invoked
    assert requests == []
    assert service.get_run(run.run_id) == run


@pytest.mark.integration
async def test_critical_sast_finding_rejects_the_commit(tmp_path: Path) -> None:
    requests: list[str] = []
    issues = [
        {
            "key": "AX-1",
            "rule": "python:S2068",
            "severity": "BLOCKER",
            "component": "checkout:src/settings.py",
            "line": 7,
            "message": "Remove this hard-coded password.",
        }
    ]
    tools = ScriptedTools(stdout={"ruff": "[]"})
    service = _service(_workspace(tmp_path, _PASSING_JUNIT), tools, _sonar(issues, requests))

    run = await service.run(parse_pipeline(_PIPELINE), TRIGGER)

    assert [item.stage_name for item in run.verdicts] == ["build", "test", "lint", "sast"]
    assert [item.outcome for item in run.verdicts] == [
        VerdictOutcome.PASS,
        VerdictOutcome.PASS,
        VerdictOutcome.PASS,
        VerdictOutcome.FAIL,
    ]
    (critical,) = run.verdict("sast").failing_findings
    assert critical.severity is Severity.CRITICAL
    assert critical.location == "src/settings.py:7"
    assert run.outcome is RunOutcome.FAIL
    assert requests == ["/api/ce/task", "/api/issues/search"]
    assert {item.artifact_type for item in run.artifacts} >= {"build-output", "inspection-report"}
    assert _SONAR_TOKEN not in json.dumps(run.to_dict())


@pytest.mark.integration
def test_shipped_release_pipeline_and_config_load_together() -> None:
    config = load_config(REPO_ROOT / "shipgate.toml", profile="ci", environ={})

    graph = load_pipeline_file(REPO_ROOT / "pipelines" / "release.yaml", config=config).build()

    assert graph.topological_order() == ("build", "test", "lint", "sast")
    assert graph.dependencies("sast") == ("test", "lint")
    assert graph.stage("test").retry_count == 1
    assert graph.stage("lint").criticality.value == "advisory"
    assert graph.stage("sast").policy.to_dict() == {"kind": "severity-threshold", "minimum": "high"}
