"""Build step: runs an arbitrary build command and reports compiler diagnostics.

Lines shaped like ``path:line:col: message`` (gcc, clang, javac, tsc, mypy,
dotnet with ``-clp:NoSummary``) become ``build-error`` findings. A failing
command with no recognizable diagnostic still yields one finding naming the
exit code, so the verdict always has something to point at.
"""

from __future__ import annotations

import re
from typing import Final

from shipgate.adapters.base import (
    AdapterContext,
    CommandAdapter,
    CommandResult,
    CommandSpec,
    register_builtin_adapter,
)
from shipgate.constants import ARTIFACT_BUILD_OUTPUT
from shipgate.domain.models import Finding, Severity, StageResult

CATEGORY_BUILD_ERROR: Final[str] = "build-error"
CATEGORY_BUILD_WARNING: Final[str] = "build-warning"

_DIAGNOSTIC_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<path>[^:\s][^:]*?\.[A-Za-z0-9_]+):(?P<line>\d+):(?:(?P<column>\d+):)?\s*"
    r"(?:(?P<level>fatal error|error|warning)\s*(?:\[?(?P<code>[A-Za-z]+\d+)\]?)?\s*:\s*)?"
    r"(?P<message>.+)$"
)


def parse_diagnostics(output: str) -> tuple[Finding, ...]:
    """Extract compiler diagnostics from combined command output."""
    findings: dict[tuple[str, str, str], Finding] = {}
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        match = _DIAGNOSTIC_RE.match(line)
        if match is None:
            continue
        level = (match.group("level") or "error").lower()
        column = match.group("column")
        location = f"{match.group('path').replace(chr(92), '/')}:{match.group('line')}"
        if column:
            location = f"{location}:{column}"
        is_warning = level == "warning"
        finding = Finding(
            severity=Severity.LOW if is_warning else Severity.HIGH,
            category=CATEGORY_BUILD_WARNING if is_warning else CATEGORY_BUILD_ERROR,
            message=match.group("message").strip(),
            location=location,
            rule_id=match.group("code"),
        )
        findings[(finding.category, location, finding.message)] = finding
    return tuple(findings.values())


@register_builtin_adapter("command")
class BuildCommandAdapter(CommandAdapter):
    """Generic build command; publishes a ``build-output`` summary artifact."""

    adapter_id = "command"
    tool_name = "build"

    def normalize(
        self,
        context: AdapterContext,
        spec: CommandSpec,
        result: CommandResult,
    ) -> StageResult:
        output = context.redact(result.combined_output)
        findings = list(parse_diagnostics(output))
        succeeded = result.is_success(spec)
        if not succeeded and not any(item.category == CATEGORY_BUILD_ERROR for item in findings):
            first_line = next((line.strip() for line in output.splitlines() if line.strip()), "")
            findings.append(
                Finding(
                    severity=Severity.HIGH,
                    category=CATEGORY_BUILD_ERROR,
                    message=first_line or f"{spec.argv[0]} exited with code {result.exit_code}",
                    details={"exit_code": result.exit_code},
                )
            )

        context.artifacts.publish(
            ARTIFACT_BUILD_OUTPUT,
            {
                "command": spec.display(),
                "exit_code": result.exit_code,
                "duration_ms": result.duration_ms,
                "error_count": sum(1 for item in findings if item.category == CATEGORY_BUILD_ERROR),
                "warning_count": sum(
                    1 for item in findings if item.category == CATEGORY_BUILD_WARNING
                ),
            },
        )
        return self.stage_result(context, spec, result, findings=findings)


__all__ = ["BuildCommandAdapter", "CATEGORY_BUILD_ERROR", "parse_diagnostics"]
