"""Version calculator stage (GitVersion).

When the trigger already carries a version it is published unchanged and no
tool runs. Otherwise ``gitversion /output json`` is executed and its
``SemVer`` (or the field named by ``version_field``) becomes the ``version``
artifact consumed by later stages.
"""

from __future__ import annotations

import json
import re
from typing import Any, Final

from shipgate.adapters.base import (
    AdapterContext,
    CommandAdapter,
    CommandResult,
    CommandSpec,
    register_builtin_adapter,
    str_param,
)
from shipgate.constants import ARTIFACT_VERSION
from shipgate.domain.errors import ToolError
from shipgate.domain.models import ExitStatus, StageResult

ARTIFACT_VERSION_INFO: Final[str] = "version-info"

_SEMVER_RE: Final[re.Pattern[str]] = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)
_INFO_FIELDS: Final[tuple[str, ...]] = (
    "SemVer",
    "FullSemVer",
    "InformationalVersion",
    "MajorMinorPatch",
    "BranchName",
    "Sha",
)


def is_semver(value: str) -> bool:
    return _SEMVER_RE.match(value) is not None


@register_builtin_adapter("gitversion")
class GitVersionAdapter(CommandAdapter):
    adapter_id = "gitversion"
    tool_name = "gitversion"
    default_command = ("gitversion", "/output", "json")

    async def execute(self, context: AdapterContext) -> StageResult:
        precomputed = context.trigger.version
        if precomputed is not None:
            if not is_semver(precomputed):
                raise ToolError(
                    f"trigger version {precomputed!r} is not a semantic version",
                    transient=False,
                    tool=self.tool_name,
                )
            context.artifacts.publish(ARTIFACT_VERSION, precomputed)
            context.artifacts.publish(
                ARTIFACT_VERSION_INFO, {"SemVer": precomputed, "source": "trigger"}
            )
            return StageResult(
                stage_name=context.stage_name,
                exit_status=ExitStatus.SUCCESS,
                raw_output=f"using precomputed version {precomputed}",
                metrics={},
            )
        return await super().execute(context)

    def normalize(
        self,
        context: AdapterContext,
        spec: CommandSpec,
        result: CommandResult,
    ) -> StageResult:
        if not result.is_success(spec):
            raise ToolError(
                f"gitversion exited with code {result.exit_code}: {_first_line(result)}",
                transient=False,
                tool=self.tool_name,
            )

        payload = _parse_payload(result.stdout)
        field_name = str_param(context.params, "version_field", default="SemVer", tool=self.tool_name)
        version = payload.get(field_name)
        if not isinstance(version, str) or not version.strip():
            raise ToolError(
                f"gitversion output has no {field_name!r} field", transient=False, tool=self.tool_name
            )
        version = version.strip()
        if field_name in {"SemVer", "FullSemVer", "MajorMinorPatch"} and not is_semver(version):
            raise ToolError(
                f"{field_name} {version!r} is not a semantic version",
                transient=False,
                tool=self.tool_name,
            )

        context.artifacts.publish(ARTIFACT_VERSION, version)
        info = {key: payload[key] for key in _INFO_FIELDS if key in payload}
        info["source"] = "gitversion"
        context.artifacts.publish(ARTIFACT_VERSION_INFO, info)
        return self.stage_result(context, spec, result)


def _parse_payload(stdout: str) -> dict[str, Any]:
    # GitVersion may log before the JSON document; take the outermost object.
    start = stdout.find("{")
    end = stdout.rfind("}")
    if start < 0 or end < start:
        raise ToolError("gitversion produced no JSON output", transient=False, tool="gitversion")
    try:
        payload = json.loads(stdout[start : end + 1])
    except json.JSONDecodeError as exc:
        raise ToolError(
            f"gitversion output is not valid JSON: {exc.msg}", transient=False, tool="gitversion"
        ) from exc
    if not isinstance(payload, dict):
        raise ToolError("gitversion output must be a JSON object", transient=False, tool="gitversion")
    return payload


def _first_line(result: CommandResult) -> str:
    return next((line.strip() for line in result.combined_output.splitlines() if line.strip()), "")


__all__ = ["ARTIFACT_VERSION_INFO", "GitVersionAdapter", "is_semver"]
