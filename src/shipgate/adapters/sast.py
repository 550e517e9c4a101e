"""SonarQube SAST stage.

Flow: optionally run ``sonar-scanner``; read the scanner's ``report-task.txt``
for the compute-engine task id; poll ``/api/ce/task`` until the analysis is
processed; page through ``/api/issues/search`` for open issues. With
``check_quality_gate`` the project's quality-gate status is reported as an
extra finding when it is ``ERROR``.

The token (``token: env:SONAR_TOKEN``) is sent as the basic-auth user name,
which is how SonarQube accepts user tokens.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Final

from shipgate.adapters.base import (
    AdapterContext,
    CommandAdapter,
    bool_param,
    float_param,
    int_param,
    optional_str_param,
    read_text_file,
    register_builtin_adapter,
    str_param,
)
from shipgate.adapters.http import ServiceClient, poll_until
from shipgate.constants import ARTIFACT_INSPECTION_REPORT
from shipgate.domain.errors import ToolError
from shipgate.domain.models import ExitStatus, Finding, Severity, StageResult

SONAR_SEVERITY_MAP: Final[Mapping[str, Severity]] = {
    "BLOCKER": Severity.CRITICAL,
    "CRITICAL": Severity.HIGH,
    "MAJOR": Severity.MEDIUM,
    "MINOR": Severity.LOW,
    "INFO": Severity.INFO,
}
CATEGORY_SAST: Final[str] = "sast"
CATEGORY_QUALITY_GATE: Final[str] = "quality-gate"
DEFAULT_REPORT_TASK_PATH: Final[str] = ".scannerwork/report-task.txt"

_TERMINAL_TASK_STATES: Final[frozenset[str]] = frozenset({"SUCCESS", "FAILED", "CANCELED"})
_TOOL: Final[str] = "sonarqube"


def parse_report_task(text: str) -> dict[str, str]:
    """Parse the ``key=value`` lines of ``report-task.txt``."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip()
    if not values.get("ceTaskId"):
        raise ToolError("report-task.txt has no ceTaskId", transient=False, tool=_TOOL)
    return values


def issue_to_finding(issue: Mapping[str, Any], *, project_key: str) -> Finding:
    raw_severity = str(issue.get("severity") or "INFO").upper()
    severity = SONAR_SEVERITY_MAP.get(raw_severity, Severity.INFO)
    component = str(issue.get("component") or "")
    prefix = f"{project_key}:"
    path = component[len(prefix) :] if component.startswith(prefix) else component
    line = issue.get("line")
    location = f"{path}:{line}" if path and line is not None else (path or None)
    return Finding(
        severity=severity,
        category=CATEGORY_SAST,
        message=str(issue.get("message") or "SonarQube issue"),
        location=location,
        rule_id=str(issue.get("rule")) if issue.get("rule") else None,
        details={
            "key": issue.get("key"),
            "type": issue.get("type"),
            "sonar_severity": raw_severity,
        },
    )


@register_builtin_adapter("sonarqube")
class SonarQubeAdapter(CommandAdapter):
    adapter_id = "sonarqube"
    tool_name = _TOOL
    default_command = ("sonar-scanner",)

    def build_env(self, context: AdapterContext) -> dict[str, str]:
        env = super().build_env(context)
        token = context.secret_param("token", tool=self.tool_name)
        if token is not None:
            env.setdefault("SONAR_TOKEN", token)
        return env

    async def execute(self, context: AdapterContext) -> StageResult:
        params = context.params
        server_url = str_param(params, "server_url", tool=self.tool_name)
        token = context.secret_param("token", tool=self.tool_name)
        raw_parts: list[str] = []
        duration_ms = 0

        if bool_param(params, "run_scanner", default=True, tool=self.tool_name):
            spec = self.build_spec(context)
            result = await self.run_command(context, spec)
            if not result.is_success(spec):
                raise ToolError(
                    f"sonar-scanner exited with code {result.exit_code}",
                    transient=False,
                    tool=self.tool_name,
                )
            raw_parts.append(context.redact(result.combined_output))
            duration_ms = result.duration_ms

        report_path = context.resolve_path(
            str_param(params, "report_task_path", default=DEFAULT_REPORT_TASK_PATH, tool=self.tool_name)
        )
        task_info = parse_report_task(
            read_text_file(report_path, tool=self.tool_name, description="report-task.txt")
        )
        project_key = optional_str_param(params, "project_key", tool=self.tool_name) or task_info.get(
            "projectKey"
        )
        if not project_key:
            raise ToolError("project_key is unknown", transient=False, tool=self.tool_name)

        async with ServiceClient.from_context(
            context,
            base_url=server_url,
            tool=self.tool_name,
            auth=(token or "", ""),
            timeout_seconds=float_param(params, "http_timeout_seconds", default=30.0, tool=self.tool_name),
        ) as client:
            task = await self._wait_for_task(context, client, task_info["ceTaskId"])
            issues = await self._fetch_issues(context, client, project_key)
            findings = [issue_to_finding(issue, project_key=project_key) for issue in issues]
            gate_status: str | None = None
            if bool_param(params, "check_quality_gate", default=False, tool=self.tool_name):
                gate_status = await self._quality_gate_status(client, task.get("analysisId"))
                if gate_status == "ERROR":
                    findings.append(
                        Finding(
                            severity=Severity.HIGH,
                            category=CATEGORY_QUALITY_GATE,
                            message=f"quality gate failed for {project_key}",
                            rule_id="quality-gate",
                        )
                    )

        context.artifacts.publish(
            ARTIFACT_INSPECTION_REPORT,
            {
                "tool": self.tool_name,
                "project_key": project_key,
                "ce_task_id": task_info["ceTaskId"],
                "analysis_id": task.get("analysisId"),
                "dashboard_url": task_info.get("dashboardUrl"),
                "issue_count": len(issues),
                "quality_gate": gate_status,
            },
        )
        raw_parts.append(f"{len(issues)} open issue(s) for {project_key}")
        return StageResult(
            stage_name=context.stage_name,
            exit_status=ExitStatus.FAILURE if findings else ExitStatus.SUCCESS,
            findings=tuple(findings),
            raw_output="\n".join(raw_parts),
            duration_ms=duration_ms,
            metrics={"issue_count": float(len(issues))},
        )

    async def _wait_for_task(
        self, context: AdapterContext, client: ServiceClient, task_id: str
    ) -> Mapping[str, Any]:
        async def fetch() -> Mapping[str, Any]:
            payload = await client.get_json("/api/ce/task", params={"id": task_id})
            task = payload.get("task") if isinstance(payload, Mapping) else None
            if not isinstance(task, Mapping):
                raise ToolError("/api/ce/task response has no task", tool=self.tool_name)
            return task

        task = await poll_until(
            fetch,
            lambda value: str(value.get("status")) in _TERMINAL_TASK_STATES,
            tool=self.tool_name,
            description=f"SonarQube task {task_id}",
            interval_seconds=float_param(
                context.params, "poll_interval_seconds", default=5.0, minimum=0.0, tool=self.tool_name
            ),
            max_polls=int_param(context.params, "max_polls", default=120, minimum=1, tool=self.tool_name),
            sleep=context.sleep,
            cancel_token=context.cancel_token,
        )
        status = str(task.get("status"))
        if status != "SUCCESS":
            detail = task.get("errorMessage") or status.lower()
            raise ToolError(
                f"SonarQube analysis {task_id} {status}: {detail}", transient=False, tool=self.tool_name
            )
        return task

    async def _fetch_issues(
        self, context: AdapterContext, client: ServiceClient, project_key: str
    ) -> list[Mapping[str, Any]]:
        page_size = int_param(context.params, "page_size", default=500, minimum=1, tool=self.tool_name)
        max_pages = int_param(context.params, "max_pages", default=20, minimum=1, tool=self.tool_name)
        issues: list[Mapping[str, Any]] = []
        for page in range(1, max_pages + 1):
            context.check_cancelled()
            payload = await client.get_json(
                "/api/issues/search",
                params={
                    "componentKeys": project_key,
                    "resolved": "false",
                    "ps": page_size,
                    "p": page,
                },
            )
            if not isinstance(payload, Mapping):
                raise ToolError("/api/issues/search returned a non-object", tool=self.tool_name)
            batch = payload.get("issues") or []
            issues.extend(item for item in batch if isinstance(item, Mapping))
            paging = payload.get("paging") or {}
            total = int(paging.get("total", payload.get("total", len(issues))))
            if not batch or len(issues) >= total:
                break
        else:
            context.logger.warning(
                "issue listing truncated after %d pages for %s", max_pages, project_key
            )
        return issues

    async def _quality_gate_status(self, client: ServiceClient, analysis_id: object) -> str | None:
        if not analysis_id:
            return None
        payload = await client.get_json(
            "/api/qualitygates/project_status", params={"analysisId": str(analysis_id)}
        )
        project_status = payload.get("projectStatus") if isinstance(payload, Mapping) else None
        if not isinstance(project_status, Mapping):
            return None
        return str(project_status.get("status") or "") or None


__all__ = [
    "CATEGORY_SAST",
    "SONAR_SEVERITY_MAP",
    "SonarQubeAdapter",
    "issue_to_finding",
    "parse_report_task",
]
