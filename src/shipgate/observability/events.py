"""In-process event bus for pipeline lifecycle events.

Subscribers may be plain callables or coroutine functions. A failing
subscriber never interrupts the publisher: the failure is recorded as a
``DispatchError`` and returned from ``publish``. The most recent events are
kept in a bounded buffer for ``replay``.
"""

from __future__ import annotations

import asyncio
import inspect
import math
import threading
from collections import deque
from collections.abc import Callable, Coroutine, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Final, cast

from shipgate.domain.ids import generate_event_id
from shipgate.domain.models import format_timestamp

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_MAX_JSON_DEPTH: Final[int] = 16
_DEFAULT_ERROR_BUFFER: Final[int] = 1024


class PipelineEventType(StrEnum):
    RUN_STARTED = "run.started"
    STAGE_STARTED = "stage.started"
    STAGE_RETRY = "stage.retry"
    STAGE_COMPLETED = "stage.completed"
    STAGE_SKIPPED = "stage.skipped"
    RUN_COMPLETED = "run.completed"


@dataclass(frozen=True, slots=True)
class PipelineEvent:
    event_id: str
    event_type: PipelineEventType
    timestamp: datetime
    run_id: str
    stage: str | None = None
    payload: Mapping[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "event_type", PipelineEventType(self.event_type))
        object.__setattr__(self, "payload", MappingProxyType(_as_json_object(self.payload, "payload")))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": format_timestamp(self.timestamp),
            "run_id": self.run_id,
            "stage": self.stage,
            "payload": dict(self.payload),
        }


Subscriber = Callable[[PipelineEvent], object]


@dataclass(frozen=True, slots=True)
class DispatchError:
    """Subscriber failure captured without interrupting publishers."""

    event_id: str
    target: str
    error_type: str
    message: str


@dataclass(frozen=True, slots=True)
class _Subscription:
    token: int
    event_type: PipelineEventType | None
    callback: Subscriber


class EventBus:
    """Publish/subscribe with sync and async subscribers and bounded replay."""

    def __init__(self, *, buffer_size: int = 512) -> None:
        if isinstance(buffer_size, bool) or not isinstance(buffer_size, int) or buffer_size <= 0:
            raise ValueError("buffer_size must be a positive integer")
        self._buffer = deque[PipelineEvent](maxlen=buffer_size)
        self._subscriptions: dict[int, _Subscription] = {}
        self._pending_tasks: set[asyncio.Task[None]] = set()
        self._dispatch_errors = deque[DispatchError](maxlen=_DEFAULT_ERROR_BUFFER)
        self._next_token = 1
        self._lock = threading.RLock()

    def subscribe(self, event_type: str | PipelineEventType | None, callback: Subscriber) -> int:
        """Subscribe to one event type, or to every event when ``event_type`` is ``None``."""
        if not callable(callback):
            raise ValueError("callback must be callable")
        normalized = None if event_type is None else PipelineEventType(event_type)
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscriptions[token] = _Subscription(token=token, event_type=normalized, callback=callback)
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscriptions.pop(token, None) is not None

    def publish(self, event: PipelineEvent) -> tuple[DispatchError, ...]:
        """Publish from synchronous code; async subscribers are scheduled on the running loop."""
        subscriptions = self._record(event)
        errors: list[DispatchError] = []
        loop = _current_running_loop()
        for subscription in subscriptions:
            try:
                result = subscription.callback(event)
                if inspect.isawaitable(result):
                    self._schedule(cast("Coroutine[Any, Any, None]", result), subscription, event, loop)
            except Exception as exc:  # noqa: BLE001
                errors.append(_dispatch_error(event, subscription.callback, exc))
        self._remember(errors)
        return tuple(errors)

    async def publish_async(self, event: PipelineEvent) -> tuple[DispatchError, ...]:
        """Publish from async code, awaiting async subscribers in subscription order."""
        subscriptions = self._record(event)
        errors: list[DispatchError] = []
        for subscription in subscriptions:
            try:
                result = subscription.callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                errors.append(_dispatch_error(event, subscription.callback, exc))
        self._remember(errors)
        return tuple(errors)

    def emit(
        self,
        event_type: str | PipelineEventType,
        *,
        run_id: str,
        stage: str | None = None,
        payload: Mapping[str, object] | None = None,
    ) -> PipelineEvent:
        event = build_event(event_type, run_id=run_id, stage=stage, payload=payload)
        self.publish(event)
        return event

    async def emit_async(
        self,
        event_type: str | PipelineEventType,
        *,
        run_id: str,
        stage: str | None = None,
        payload: Mapping[str, object] | None = None,
    ) -> PipelineEvent:
        event = build_event(event_type, run_id=run_id, stage=stage, payload=payload)
        await self.publish_async(event)
        return event

    async def drain_async(self) -> None:
        """Await async subscriber tasks scheduled by ``publish``."""
        with self._lock:
            pending = tuple(self._pending_tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def replay(
        self,
        *,
        run_id: str | None = None,
        event_type: str | PipelineEventType | None = None,
        limit: int | None = None,
    ) -> tuple[PipelineEvent, ...]:
        """Buffered events in publish order, optionally filtered."""
        type_filter = None if event_type is None else PipelineEventType(event_type)
        with self._lock:
            events = tuple(self._buffer)
        filtered = [
            event
            for event in events
            if (run_id is None or event.run_id == run_id)
            and (type_filter is None or event.event_type is type_filter)
        ]
        if limit is not None:
            if limit <= 0:
                return ()
            filtered = filtered[-limit:]
        return tuple(filtered)

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._dispatch_errors)

    def _record(self, event: PipelineEvent) -> tuple[_Subscription, ...]:
        if not isinstance(event, PipelineEvent):
            raise ValueError(f"event must be PipelineEvent, got {type(event).__name__}")
        with self._lock:
            self._buffer.append(event)
            return tuple(
                item
                for item in self._subscriptions.values()
                if item.event_type is None or item.event_type is event.event_type
            )

    def _remember(self, errors: list[DispatchError]) -> None:
        if errors:
            with self._lock:
                self._dispatch_errors.extend(errors)

    def _schedule(
        self,
        coroutine: Coroutine[Any, Any, None],
        subscription: _Subscription,
        event: PipelineEvent,
        loop: asyncio.AbstractEventLoop | None,
    ) -> None:
        if loop is None:
            asyncio.run(coroutine)
            return
        task = loop.create_task(coroutine)
        with self._lock:
            self._pending_tasks.add(task)

        def done(finished: asyncio.Task[None]) -> None:
            with self._lock:
                self._pending_tasks.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if isinstance(exc, Exception):
                self._remember([_dispatch_error(event, subscription.callback, exc)])

        task.add_done_callback(done)


def build_event(
    event_type: str | PipelineEventType,
    *,
    run_id: str,
    stage: str | None = None,
    payload: Mapping[str, object] | None = None,
) -> PipelineEvent:
    return PipelineEvent(
        event_id=generate_event_id(),
        event_type=PipelineEventType(event_type),
        timestamp=datetime.now(tz=UTC),
        run_id=run_id,
        stage=stage,
        payload=_as_json_object(payload or {}, "payload"),
    )


def _current_running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _dispatch_error(event: PipelineEvent, callback: object, exc: Exception) -> DispatchError:
    name = getattr(callback, "__name__", None)
    return DispatchError(
        event_id=event.event_id,
        target=name if isinstance(name, str) and name else type(callback).__name__,
        error_type=type(exc).__name__,
        message=str(exc),
    )


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        raise ValueError(f"{path}: expected object")
    return parsed


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        raise ValueError(f"{path}: JSON nesting too deep")
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"{path}: float value must be finite")
        return value
    if isinstance(value, (list, tuple)):
        return [_as_json_value(item, f"{path}[{index}]", depth=depth + 1) for index, item in enumerate(value)]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{path}: object keys must be strings")
            out[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return out
    raise ValueError(f"{path}: value is not JSON-serializable ({type(value).__name__})")


__all__ = [
    "DispatchError",
    "EventBus",
    "PipelineEvent",
    "PipelineEventType",
    "Subscriber",
    "build_event",
]
