"""DAST stage driving an OWASP ZAP daemon through its JSON API.

``mode: baseline`` spiders the target and reports passive-scan alerts;
``mode: full`` adds an active scan after the spider. Both scans are polled
until ``status`` reaches 100, then alerts are paged from
``/JSON/core/view/alerts/``.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Final

from shipgate.adapters.base import (
    AdapterContext,
    float_param,
    int_param,
    register_builtin_adapter,
    str_param,
)
from shipgate.adapters.http import ServiceClient, poll_until
from shipgate.constants import ARTIFACT_INSPECTION_REPORT
from shipgate.domain.errors import ToolError
from shipgate.domain.models import ExitStatus, Finding, Severity, StageResult

CATEGORY_DAST: Final[str] = "dast"
MODES: Final[frozenset[str]] = frozenset({"baseline", "full"})

ZAP_RISK_MAP: Final[Mapping[str, Severity]] = {
    "3": Severity.HIGH,
    "2": Severity.MEDIUM,
    "1": Severity.LOW,
    "0": Severity.INFO,
}

_TOOL: Final[str] = "zap"


def alert_to_finding(alert: Mapping[str, Any]) -> Finding:
    risk = str(alert.get("riskcode", "0")).strip()
    name = str(alert.get("alert") or alert.get("name") or "ZAP alert")
    param = alert.get("param")
    message = f"{name} (parameter {param})" if param else name
    cwe = str(alert.get("cweid") or "")
    return Finding(
        severity=ZAP_RISK_MAP.get(risk, Severity.INFO),
        category=CATEGORY_DAST,
        message=message,
        location=str(alert.get("url") or "") or None,
        rule_id=str(alert.get("pluginId") or "") or None,
        details={
            "confidence": alert.get("confidence"),
            "cwe": cwe if cwe not in {"", "-1", "0"} else None,
            "method": alert.get("method"),
        },
    )


@register_builtin_adapter("zap")
class ZapScanAdapter:
    adapter_id = "zap"
    tool_name = _TOOL

    async def execute(self, context: AdapterContext) -> StageResult:
        params = context.params
        target = str_param(params, "target_url", tool=self.tool_name)
        mode = str_param(params, "mode", default="baseline", tool=self.tool_name).lower()
        if mode not in MODES:
            raise ToolError(
                f"parameter 'mode' must be one of {sorted(MODES)}", transient=False, tool=self.tool_name
            )
        api_key = context.secret_param("api_key", tool=self.tool_name, required=False)
        headers = {"X-ZAP-API-Key": api_key} if api_key else {}

        async with ServiceClient.from_context(
            context,
            base_url=str_param(params, "server_url", tool=self.tool_name),
            tool=self.tool_name,
            headers=headers,
            timeout_seconds=float_param(params, "http_timeout_seconds", default=30.0, tool=self.tool_name),
        ) as client:
            await self._run_scan(context, client, "spider", target)
            if mode == "full":
                await self._run_scan(context, client, "ascan", target)
            alerts = await self._fetch_alerts(context, client, target)

        findings = tuple(alert_to_finding(alert) for alert in alerts)
        context.artifacts.publish(
            ARTIFACT_INSPECTION_REPORT,
            {"tool": self.tool_name, "target": target, "mode": mode, "alert_count": len(findings)},
        )
        return StageResult(
            stage_name=context.stage_name,
            exit_status=ExitStatus.FAILURE if findings else ExitStatus.SUCCESS,
            findings=findings,
            raw_output=f"{mode} scan of {target}: {len(findings)} alert(s)",
            metrics={"alert_count": float(len(findings))},
        )

    async def _run_scan(
        self, context: AdapterContext, client: ServiceClient, component: str, target: str
    ) -> None:
        started = await client.get_json(
            f"/JSON/{component}/action/scan/", params={"url": target, "recurse": "true"}
        )
        scan_id = started.get("scan") if isinstance(started, Mapping) else None
        if scan_id is None:
            raise ToolError(f"{component} scan did not return a scan id", tool=self.tool_name)
        context.logger.info("started ZAP %s scan %s against %s", component, scan_id, target)

        await poll_until(
            lambda: client.get_json(f"/JSON/{component}/view/status/", params={"scanId": scan_id}),
            lambda status: _progress(status) >= 100,
            tool=self.tool_name,
            description=f"ZAP {component} scan {scan_id}",
            interval_seconds=float_param(
                context.params, "poll_interval_seconds", default=5.0, minimum=0.0, tool=self.tool_name
            ),
            max_polls=int_param(context.params, "max_polls", default=360, minimum=1, tool=self.tool_name),
            sleep=context.sleep,
            cancel_token=context.cancel_token,
        )

    async def _fetch_alerts(
        self, context: AdapterContext, client: ServiceClient, target: str
    ) -> list[Mapping[str, Any]]:
        page_size = int_param(context.params, "page_size", default=500, minimum=1, tool=self.tool_name)
        alerts: list[Mapping[str, Any]] = []
        while True:
            context.check_cancelled()
            payload = await client.get_json(
                "/JSON/core/view/alerts/",
                params={"baseurl": target, "start": len(alerts), "count": page_size},
            )
            batch = payload.get("alerts") if isinstance(payload, Mapping) else None
            if not isinstance(batch, list):
                raise ToolError("alerts response has no 'alerts' list", tool=self.tool_name)
            alerts.extend(item for item in batch if isinstance(item, Mapping))
            if len(batch) < page_size:
                return alerts


def _progress(payload: object) -> int:
    if not isinstance(payload, Mapping):
        raise ToolError("scan status response must be an object", tool=_TOOL)
    try:
        return int(payload.get("status", 0))
    except (TypeError, ValueError) as exc:
        raise ToolError(f"invalid scan status {payload.get('status')!r}", tool=_TOOL) from exc


__all__ = ["CATEGORY_DAST", "ZAP_RISK_MAP", "ZapScanAdapter", "alert_to_finding"]
