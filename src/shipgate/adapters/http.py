"""HTTP plumbing for service-backed adapters (SonarQube, Dependency-Track, ZAP).

``ServiceClient`` wraps ``httpx.AsyncClient`` and classifies every failure
into a ``ToolError``:

- connect/read timeouts, transport errors, HTTP 429 and 5xx are transient;
- any other 4xx and unparseable JSON bodies are not.

Retries are not attempted here; the executor owns the retry budget.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from shipgate.domain.errors import ToolError
from shipgate.utils.concurrency import CancellationToken, SleepFn, sleep_with_cancellation

if TYPE_CHECKING:
    from shipgate.adapters.base import AdapterContext

T = TypeVar("T")

DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
_TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


class ServiceClient:
    """Async HTTP client bound to one tool endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        tool: str,
        headers: Mapping[str, str] | None = None,
        auth: httpx.Auth | tuple[str, str] | None = None,
        timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url or not base_url.strip():
            raise ToolError("base URL is required", transient=False, tool=tool)
        self._tool = tool
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=dict(headers or {}),
            auth=auth,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    @classmethod
    def from_context(
        cls,
        context: AdapterContext,
        *,
        base_url: str,
        tool: str,
        headers: Mapping[str, str] | None = None,
        auth: httpx.Auth | tuple[str, str] | None = None,
        timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ) -> ServiceClient:
        return cls(
            base_url,
            tool=tool,
            headers=headers,
            auth=auth,
            timeout_seconds=timeout_seconds,
            transport=context.http_transport,
        )

    async def __aenter__(self) -> ServiceClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_body: Any = None,
        data: Mapping[str, Any] | None = None,
        expected: Iterable[int] = (200,),
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                json=json_body,
                data=data,
            )
        except httpx.TimeoutException as exc:
            raise ToolError(
                f"{method} {path} timed out: {exc}", transient=True, tool=self._tool
            ) from exc
        except httpx.TransportError as exc:
            raise ToolError(
                f"{method} {path} failed: {exc}", transient=True, tool=self._tool
            ) from exc

        if response.status_code in set(expected):
            return response
        raise self._status_error(method, path, response)

    async def get_json(self, path: str, *, params: Mapping[str, Any] | None = None) -> Any:
        response = await self.request("GET", path, params=params)
        return self._decode(response, "GET", path)

    async def put_json(self, path: str, payload: Any, *, expected: Iterable[int] = (200,)) -> Any:
        response = await self.request("PUT", path, json_body=payload, expected=expected)
        return self._decode(response, "PUT", path)

    async def post_form(self, path: str, data: Mapping[str, Any]) -> Any:
        response = await self.request("POST", path, data=data)
        return self._decode(response, "POST", path)

    def _decode(self, response: httpx.Response, method: str, path: str) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ToolError(
                f"{method} {path} returned invalid JSON", transient=False, tool=self._tool
            ) from exc

    def _status_error(self, method: str, path: str, response: httpx.Response) -> ToolError:
        status = response.status_code
        transient = status >= 500 or status in _TRANSIENT_STATUS_CODES
        if status in {401, 403}:
            detail = "authentication rejected"
        else:
            detail = _excerpt(response.text)
        return ToolError(
            f"{method} {path} returned HTTP {status}: {detail}",
            transient=transient,
            tool=self._tool,
        )


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    done: Callable[[T], bool],
    *,
    tool: str,
    description: str,
    interval_seconds: float,
    max_polls: int,
    sleep: SleepFn,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Call ``fetch`` until ``done(value)`` holds, sleeping between polls.

    Exhausting ``max_polls`` raises a transient ``ToolError``; the remote side is
    still working, so a later attempt may succeed.
    """
    if max_polls <= 0:
        raise ValueError("max_polls must be > 0")
    for poll in range(max_polls):
        value = await fetch()
        if done(value):
            return value
        if poll + 1 < max_polls:
            await sleep_with_cancellation(interval_seconds, sleep=sleep, cancel_token=cancel_token)
    raise ToolError(
        f"{description} did not complete after {max_polls} polls",
        transient=True,
        tool=tool,
    )


def _excerpt(text: str, limit: int = 200) -> str:
    line = " ".join(text.split())
    return line if len(line) <= limit else f"{line[: limit - 3]}..."


__all__ = [
    "DEFAULT_HTTP_TIMEOUT_SECONDS",
    "ServiceClient",
    "poll_until",
]
