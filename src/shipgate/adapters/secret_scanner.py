"""Secret-scanner stage (gitleaks JSON report).

gitleaks exits 1 when it finds leaks; any other non-zero exit is a tool
error. Findings carry the rule, file and line only: the ``Secret`` and
``Match`` fields of the report are never copied.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any, Final

from shipgate.adapters.base import (
    AdapterContext,
    CommandAdapter,
    CommandResult,
    CommandSpec,
    read_text_file,
    register_builtin_adapter,
    str_param,
)
from shipgate.domain.errors import ToolError
from shipgate.domain.models import ExitStatus, Finding, Severity, StageResult

CATEGORY_SECRET: Final[str] = "secret"
DEFAULT_REPORT_PATH: Final[str] = "reports/gitleaks.json"

_TOOL: Final[str] = "gitleaks"
_LEAKS_EXIT_CODE: Final[int] = 1


def parse_gitleaks_report(text: str, *, severity: Severity = Severity.HIGH) -> tuple[Finding, ...]:
    try:
        payload = json.loads(text) if text.strip() else []
    except json.JSONDecodeError as exc:
        raise ToolError(f"gitleaks report is not valid JSON: {exc.msg}", tool=_TOOL) from exc
    if payload is None:
        payload = []
    if not isinstance(payload, list):
        raise ToolError("gitleaks report must be a JSON array", tool=_TOOL)

    findings: list[Finding] = []
    for entry in payload:
        if not isinstance(entry, Mapping):
            raise ToolError("gitleaks report entries must be objects", tool=_TOOL)
        rule = str(entry.get("RuleID") or "unknown-rule")
        path = entry.get("File") or None
        line = entry.get("StartLine")
        location = f"{path}:{line}" if path and line is not None else path
        findings.append(
            Finding(
                severity=severity,
                category=CATEGORY_SECRET,
                message=str(entry.get("Description") or f"secret matched rule {rule}"),
                location=location,
                rule_id=rule,
                details=_safe_details(entry),
            )
        )
    return tuple(findings)


@register_builtin_adapter("gitleaks")
class GitleaksAdapter(CommandAdapter):
    adapter_id = "gitleaks"
    tool_name = _TOOL
    default_command = (
        "gitleaks",
        "detect",
        "--no-banner",
        "--redact",
        "--report-format",
        "json",
        "--report-path",
        DEFAULT_REPORT_PATH,
    )
    default_allowed_exit_codes = (0,)

    def normalize(
        self,
        context: AdapterContext,
        spec: CommandSpec,
        result: CommandResult,
    ) -> StageResult:
        if result.exit_code not in (0, _LEAKS_EXIT_CODE):
            raise ToolError(
                f"gitleaks exited with code {result.exit_code}",
                transient=False,
                tool=self.tool_name,
            )
        params = context.params
        try:
            severity = Severity.parse(
                str_param(params, "severity", default="high", tool=self.tool_name)
            )
        except ValueError as exc:
            raise ToolError(str(exc), transient=False, tool=self.tool_name) from exc
        report_path = context.resolve_path(
            str_param(params, "report_path", default=DEFAULT_REPORT_PATH, tool=self.tool_name)
        )
        findings = parse_gitleaks_report(
            read_text_file(report_path, tool=self.tool_name, description="gitleaks report"),
            severity=severity,
        )
        return StageResult(
            stage_name=context.stage_name,
            exit_status=ExitStatus.SUCCESS if result.exit_code == 0 else ExitStatus.FAILURE,
            findings=findings,
            # stdout can echo matches; only stderr diagnostics are kept.
            raw_output=context.redact(result.stderr),
            duration_ms=result.duration_ms,
            metrics={"leak_count": float(len(findings))},
        )


def _safe_details(entry: Mapping[str, Any]) -> dict[str, Any]:
    details: dict[str, Any] = {}
    for source_key, target_key in (("Fingerprint", "fingerprint"), ("Commit", "commit")):
        value = entry.get(source_key)
        if isinstance(value, str) and value:
            details[target_key] = value
    return details


__all__ = ["CATEGORY_SECRET", "GitleaksAdapter", "parse_gitleaks_report"]
