"""Linter stage (ruff JSON output).

Ruff exits 1 when it reports violations and 2 on its own failures; only the
latter is a tool error. Severity comes from the longest matching rule-code
prefix in the severity map, which ``severity_map`` in the stage params extends
or overrides.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

from shipgate.adapters.base import (
    AdapterContext,
    CommandAdapter,
    CommandResult,
    CommandSpec,
    register_builtin_adapter,
)
from shipgate.domain.errors import ToolError
from shipgate.domain.models import ExitStatus, Finding, Severity, StageResult

CATEGORY_LINT: Final[str] = "lint"

DEFAULT_SEVERITY_MAP: Final[Mapping[str, Severity]] = {
    "S": Severity.HIGH,
    "E9": Severity.HIGH,
    "F": Severity.MEDIUM,
    "B": Severity.MEDIUM,
    "PL": Severity.LOW,
    "E": Severity.LOW,
    "W": Severity.LOW,
    "C90": Severity.LOW,
    "I": Severity.INFO,
    "D": Severity.INFO,
}
_FALLBACK_SEVERITY: Final[Severity] = Severity.LOW
_VIOLATIONS_EXIT_CODE: Final[int] = 1


def severity_for_code(code: str | None, severity_map: Mapping[str, Severity]) -> Severity:
    if not code:
        # Ruff reports syntax errors without a rule code.
        return Severity.HIGH
    best: tuple[int, Severity] | None = None
    for prefix, severity in severity_map.items():
        if code.startswith(prefix) and (best is None or len(prefix) > best[0]):
            best = (len(prefix), severity)
    return best[1] if best is not None else _FALLBACK_SEVERITY


def parse_ruff_json(
    text: str,
    *,
    severity_map: Mapping[str, Severity] = DEFAULT_SEVERITY_MAP,
    workspace: Path | None = None,
) -> tuple[Finding, ...]:
    try:
        payload = json.loads(text) if text.strip() else []
    except json.JSONDecodeError as exc:
        raise ToolError(f"ruff output is not valid JSON: {exc.msg}", tool="ruff") from exc
    if not isinstance(payload, list):
        raise ToolError("ruff output must be a JSON array", tool="ruff")

    findings: list[Finding] = []
    for entry in payload:
        if not isinstance(entry, Mapping):
            raise ToolError("ruff output entries must be objects", tool="ruff")
        code = entry.get("code") or None
        findings.append(
            Finding(
                severity=severity_for_code(code, severity_map),
                category=CATEGORY_LINT,
                message=str(entry.get("message") or "ruff violation"),
                location=_location(entry, workspace),
                rule_id=code or "syntax-error",
                details=_details(entry),
            )
        )
    return tuple(findings)


@register_builtin_adapter("ruff")
class RuffLintAdapter(CommandAdapter):
    adapter_id = "ruff"
    tool_name = "ruff"
    default_command = ("ruff", "check", "--output-format", "json", ".")
    default_allowed_exit_codes = (0,)

    def normalize(
        self,
        context: AdapterContext,
        spec: CommandSpec,
        result: CommandResult,
    ) -> StageResult:
        if result.exit_code not in (0, _VIOLATIONS_EXIT_CODE):
            raise ToolError(
                f"ruff exited with code {result.exit_code}: {result.stderr.strip()[:200]}",
                transient=False,
                tool=self.tool_name,
            )
        findings = parse_ruff_json(
            result.stdout,
            severity_map=self._severity_map(context.params),
            workspace=context.workspace,
        )
        status = ExitStatus.SUCCESS if result.exit_code == 0 else ExitStatus.FAILURE
        return StageResult(
            stage_name=context.stage_name,
            exit_status=status,
            findings=findings,
            raw_output=context.redact(result.stderr),
            duration_ms=result.duration_ms,
            metrics={"violation_count": float(len(findings))},
        )

    def _severity_map(self, params: Mapping[str, Any]) -> dict[str, Severity]:
        merged = dict(DEFAULT_SEVERITY_MAP)
        overrides = params.get("severity_map") or {}
        if not isinstance(overrides, Mapping):
            raise ToolError("parameter 'severity_map' must be a mapping", tool=self.tool_name)
        for prefix, raw_severity in overrides.items():
            try:
                merged[str(prefix)] = Severity.parse(raw_severity)
            except ValueError as exc:
                raise ToolError(f"severity_map[{prefix!r}]: {exc}", tool=self.tool_name) from exc
        return merged


def _location(entry: Mapping[str, Any], workspace: Path | None) -> str | None:
    filename = entry.get("filename")
    if not isinstance(filename, str) or not filename:
        return None
    path = Path(filename)
    if workspace is not None and path.is_absolute():
        try:
            path = path.relative_to(workspace)
        except ValueError:
            pass
    location = path.as_posix()
    position = entry.get("location")
    if isinstance(position, Mapping) and position.get("row") is not None:
        location = f"{location}:{position.get('row')}"
        if position.get("column") is not None:
            location = f"{location}:{position.get('column')}"
    return location


def _details(entry: Mapping[str, Any]) -> dict[str, Any]:
    details: dict[str, Any] = {}
    url = entry.get("url")
    if isinstance(url, str) and url:
        details["url"] = url
    details["fixable"] = entry.get("fix") is not None
    return details


__all__ = [
    "CATEGORY_LINT",
    "DEFAULT_SEVERITY_MAP",
    "RuffLintAdapter",
    "parse_ruff_json",
    "severity_for_code",
]
