"""SBOM stage (CycloneDX).

Runs the configured generator (``cyclonedx-py environment`` by default), reads
the document it writes to ``output_path`` and publishes it as the ``sbom``
artifact. Components without a version are reported as low findings; a
document that is not CycloneDX JSON is a tool error.
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
from shipgate.constants import ARTIFACT_SBOM
from shipgate.domain.errors import ToolError
from shipgate.domain.models import ExitStatus, Finding, Severity, StageResult

CATEGORY_SBOM: Final[str] = "sbom"
DEFAULT_OUTPUT_PATH: Final[str] = "reports/sbom.json"
MEDIA_TYPE_CYCLONEDX: Final[str] = "application/vnd.cyclonedx+json"

_TOOL: Final[str] = "cyclonedx"


def parse_cyclonedx(text: str) -> dict[str, Any]:
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ToolError(f"SBOM is not valid JSON: {exc.msg}", transient=False, tool=_TOOL) from exc
    if not isinstance(document, dict) or document.get("bomFormat") != "CycloneDX":
        raise ToolError("SBOM is not a CycloneDX document", transient=False, tool=_TOOL)
    components = document.get("components", [])
    if not isinstance(components, list):
        raise ToolError("SBOM 'components' must be a list", transient=False, tool=_TOOL)
    return document


def unversioned_components(document: Mapping[str, Any]) -> tuple[Finding, ...]:
    findings: list[Finding] = []
    for component in document.get("components", []):
        if not isinstance(component, Mapping):
            continue
        if component.get("version"):
            continue
        name = str(component.get("name") or component.get("bom-ref") or "<unnamed>")
        findings.append(
            Finding(
                severity=Severity.LOW,
                category=CATEGORY_SBOM,
                message=f"component {name} has no version",
                rule_id="unversioned-component",
                details={"purl": component.get("purl")},
            )
        )
    return tuple(findings)


@register_builtin_adapter("cyclonedx")
class CycloneDxSbomAdapter(CommandAdapter):
    adapter_id = "cyclonedx"
    tool_name = _TOOL
    default_command = (
        "cyclonedx-py",
        "environment",
        "--output-format",
        "JSON",
        "--output-file",
        DEFAULT_OUTPUT_PATH,
    )

    def normalize(
        self,
        context: AdapterContext,
        spec: CommandSpec,
        result: CommandResult,
    ) -> StageResult:
        if not result.is_success(spec):
            raise ToolError(
                f"SBOM generator exited with code {result.exit_code}",
                transient=False,
                tool=self.tool_name,
            )
        output_path = context.resolve_path(
            str_param(context.params, "output_path", default=DEFAULT_OUTPUT_PATH, tool=self.tool_name)
        )
        text = read_text_file(output_path, tool=self.tool_name, description="SBOM")
        document = parse_cyclonedx(text)
        context.artifacts.publish(ARTIFACT_SBOM, text, media_type=MEDIA_TYPE_CYCLONEDX)

        findings = unversioned_components(document)
        return self.stage_result(
            context,
            spec,
            result,
            findings=findings,
            metrics={"component_count": float(len(document.get("components", [])))},
            exit_status=ExitStatus.SUCCESS,
        )


__all__ = [
    "CATEGORY_SBOM",
    "CycloneDxSbomAdapter",
    "MEDIA_TYPE_CYCLONEDX",
    "parse_cyclonedx",
    "unversioned_components",
]
