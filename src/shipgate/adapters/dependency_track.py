"""Dependency-Track stage: upload the SBOM and collect known vulnerabilities.

The ``sbom`` artifact must come from a declared dependency. The project
version is taken from ``project_version``, else from a dependency's
``version`` artifact, else from the trigger.
"""

from __future__ import annotations

import base64
from collections.abc import Mapping
from typing import Any, Final

from shipgate.adapters.base import (
    AdapterContext,
    bool_param,
    float_param,
    int_param,
    optional_str_param,
    register_builtin_adapter,
    str_param,
)
from shipgate.adapters.http import ServiceClient, poll_until
from shipgate.constants import ARTIFACT_INSPECTION_REPORT, ARTIFACT_SBOM, ARTIFACT_VERSION
from shipgate.domain.errors import ArtifactNotFoundError, ToolError
from shipgate.domain.models import ExitStatus, Finding, Severity, StageResult
from shipgate.utils.hashing import canonical_json

CATEGORY_VULNERABILITY: Final[str] = "vulnerability"

DTRACK_SEVERITY_MAP: Final[Mapping[str, Severity]] = {
    "CRITICAL": Severity.CRITICAL,
    "HIGH": Severity.HIGH,
    "MEDIUM": Severity.MEDIUM,
    "LOW": Severity.LOW,
    "INFO": Severity.INFO,
    "UNASSIGNED": Severity.INFO,
}

_TOOL: Final[str] = "dependency-track"


def finding_from_record(record: Mapping[str, Any]) -> Finding | None:
    """Map one ``/api/v1/finding`` record; suppressed findings map to ``None``."""
    analysis = record.get("analysis")
    if isinstance(analysis, Mapping) and analysis.get("isSuppressed"):
        return None
    component = record.get("component")
    vulnerability = record.get("vulnerability")
    if not isinstance(component, Mapping) or not isinstance(vulnerability, Mapping):
        raise ToolError("finding record lacks component or vulnerability", tool=_TOOL)

    name = str(component.get("name") or "<unknown>")
    version = component.get("version")
    location = f"{name}@{version}" if version else name
    vuln_id = str(vulnerability.get("vulnId") or "unknown")
    title = vulnerability.get("title") or vulnerability.get("description") or vuln_id
    severity = DTRACK_SEVERITY_MAP.get(str(vulnerability.get("severity") or "").upper(), Severity.INFO)
    return Finding(
        severity=severity,
        category=CATEGORY_VULNERABILITY,
        message=f"{vuln_id} in {location}: {str(title).strip()[:300]}",
        location=component.get("purl") or location,
        rule_id=vuln_id,
        details={
            "source": vulnerability.get("source"),
            "cvss_v3": vulnerability.get("cvssV3BaseScore"),
        },
    )


def encode_bom(value: object) -> str:
    if isinstance(value, str):
        raw = value.encode("utf-8")
    elif isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        raw = canonical_json(value).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


@register_builtin_adapter("dependency-track")
class DependencyTrackAdapter:
    adapter_id = "dependency-track"
    tool_name = _TOOL

    async def execute(self, context: AdapterContext) -> StageResult:
        params = context.params
        api_key = context.secret_param("api_key", tool=self.tool_name)
        project_name = str_param(params, "project_name", tool=self.tool_name)
        project_version = self._project_version(context)
        try:
            bom = context.artifacts.find(ARTIFACT_SBOM)
        except ArtifactNotFoundError as exc:
            raise ToolError(
                "no dependency published an sbom artifact", transient=False, tool=self.tool_name
            ) from exc

        async with ServiceClient.from_context(
            context,
            base_url=str_param(params, "server_url", tool=self.tool_name),
            tool=self.tool_name,
            headers={"X-Api-Key": api_key or ""},
            timeout_seconds=float_param(params, "http_timeout_seconds", default=30.0, tool=self.tool_name),
        ) as client:
            upload = await client.put_json(
                "/api/v1/bom",
                {
                    "projectName": project_name,
                    "projectVersion": project_version,
                    "autoCreate": bool_param(params, "auto_create", default=True, tool=self.tool_name),
                    "bom": encode_bom(bom),
                },
            )
            token = upload.get("token") if isinstance(upload, Mapping) else None
            if not token:
                raise ToolError("BOM upload returned no processing token", tool=self.tool_name)
            context.logger.info("uploaded SBOM for %s %s", project_name, project_version)

            await poll_until(
                lambda: client.get_json(f"/api/v1/bom/token/{token}"),
                lambda state: isinstance(state, Mapping) and not state.get("processing", True),
                tool=self.tool_name,
                description=f"BOM processing {token}",
                interval_seconds=float_param(
                    params, "poll_interval_seconds", default=5.0, minimum=0.0, tool=self.tool_name
                ),
                max_polls=int_param(params, "max_polls", default=120, minimum=1, tool=self.tool_name),
                sleep=context.sleep,
                cancel_token=context.cancel_token,
            )

            project = await client.get_json(
                "/api/v1/project/lookup", params={"name": project_name, "version": project_version}
            )
            uuid = project.get("uuid") if isinstance(project, Mapping) else None
            if not uuid:
                raise ToolError(
                    f"project {project_name} {project_version} not found", transient=False, tool=self.tool_name
                )
            records = await client.get_json(f"/api/v1/finding/project/{uuid}")

        if not isinstance(records, list):
            raise ToolError("finding listing must be a JSON array", tool=self.tool_name)
        findings = [
            finding
            for finding in (finding_from_record(record) for record in records if isinstance(record, Mapping))
            if finding is not None
        ]
        suppressed = len(records) - len(findings)
        context.artifacts.publish(
            ARTIFACT_INSPECTION_REPORT,
            {
                "tool": self.tool_name,
                "project_uuid": uuid,
                "project_version": project_version,
                "finding_count": len(findings),
                "suppressed_count": suppressed,
            },
        )
        return StageResult(
            stage_name=context.stage_name,
            exit_status=ExitStatus.FAILURE if findings else ExitStatus.SUCCESS,
            findings=tuple(findings),
            raw_output=f"{len(findings)} vulnerability finding(s) for {project_name} {project_version}",
            metrics={"vulnerability_count": float(len(findings))},
        )

    def _project_version(self, context: AdapterContext) -> str:
        explicit = optional_str_param(context.params, "project_version", tool=self.tool_name)
        if explicit is not None:
            return explicit
        if context.artifacts.locate(ARTIFACT_VERSION) is not None:
            return str(context.artifacts.find(ARTIFACT_VERSION)).strip()
        if context.trigger.version:
            return context.trigger.version
        raise ToolError(
            "project version unknown: set project_version or depend on a version stage",
            transient=False,
            tool=self.tool_name,
        )


__all__ = [
    "CATEGORY_VULNERABILITY",
    "DTRACK_SEVERITY_MAP",
    "DependencyTrackAdapter",
    "encode_bom",
    "finding_from_record",
]
