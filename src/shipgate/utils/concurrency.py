"""Async primitives shared by the executor and the service adapters."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager, suppress
from typing import TypeVar

SleepFn = Callable[[float], Awaitable[None]]

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError(self._reason or "operation cancelled")


class BoundedSemaphore:
    """``asyncio.Semaphore`` wrapper with usage diagnostics and cancellable acquire."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._in_use = 0
        self._peak = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def peak(self) -> int:
        return self._peak

    @property
    def available(self) -> int:
        return self._limit - self._in_use

    async def acquire(self, cancel_token: CancellationToken | None = None) -> None:
        # Cancellation while waiting here does not acquire a permit.
        if cancel_token is None:
            await self._semaphore.acquire()
        else:
            await _acquire_with_cancellation(self._semaphore, cancel_token)
        self._in_use += 1
        self._peak = max(self._peak, self._in_use)

    def release(self) -> None:
        if self._in_use <= 0:
            raise RuntimeError("release called more times than acquire")
        self._in_use -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def permit(self, cancel_token: CancellationToken | None = None) -> AsyncIterator[None]:
        await self.acquire(cancel_token)
        try:
            yield
        finally:
            self.release()

    def snapshot(self) -> dict[str, int]:
        return {
            "limit": self._limit,
            "in_use": self._in_use,
            "available": self.available,
            "peak": self._peak,
        }


async def run_with_timeout(
    coroutine: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Run ``coroutine`` with timeout and cooperative cancellation support.

    Raises ``TimeoutError`` when the budget elapses first and
    ``asyncio.CancelledError`` when ``cancel_token`` fires first. In both cases
    the wrapped task is cancelled and awaited before this returns.
    """
    if timeout_seconds <= 0:
        _close_unscheduled_coroutine(coroutine)
        raise ValueError("timeout_seconds must be > 0")

    token = cancel_token or CancellationToken()
    if token.is_cancelled:
        _close_unscheduled_coroutine(coroutine)
        raise asyncio.CancelledError("operation cancelled")

    task: asyncio.Task[T] = asyncio.create_task(_await_value(coroutine))
    cancel_wait_task = asyncio.create_task(token.wait())

    try:
        done, _ = await asyncio.wait(
            {task, cancel_wait_task},
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )

        if task in done:
            return await task

        if cancel_wait_task in done and token.is_cancelled:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
            raise asyncio.CancelledError("operation cancelled")

        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")
    except asyncio.CancelledError:
        if not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        raise
    finally:
        cancel_wait_task.cancel()
        with suppress(asyncio.CancelledError):
            await cancel_wait_task


async def sleep_with_cancellation(
    delay_seconds: float,
    *,
    sleep: SleepFn = asyncio.sleep,
    cancel_token: CancellationToken | None = None,
) -> None:
    """Sleep through ``sleep`` but wake with ``CancelledError`` once the token fires."""
    if delay_seconds <= 0:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        return

    if cancel_token is None:
        await sleep(delay_seconds)
        return

    cancel_token.raise_if_cancelled()
    sleep_task: asyncio.Task[None] = asyncio.create_task(_await_sleep(delay_seconds, sleep=sleep))
    cancel_task = asyncio.create_task(cancel_token.wait())
    done, pending = await asyncio.wait(
        {sleep_task, cancel_task},
        return_when=asyncio.FIRST_COMPLETED,
    )
    try:
        if cancel_task in done and cancel_token.is_cancelled:
            sleep_task.cancel()
            await _await_cancelled(sleep_task)
            raise asyncio.CancelledError("sleep cancelled")
        await sleep_task
    finally:
        for task in pending:
            task.cancel()
        await _await_cancelled(cancel_task)


async def _acquire_with_cancellation(
    semaphore: asyncio.Semaphore,
    cancel_token: CancellationToken,
) -> None:
    cancel_token.raise_if_cancelled()
    acquire_task = asyncio.create_task(semaphore.acquire())
    cancel_task = asyncio.create_task(cancel_token.wait())
    try:
        done, _ = await asyncio.wait(
            {acquire_task, cancel_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        await _abandon_acquire(semaphore, acquire_task)
        cancel_task.cancel()
        await _await_cancelled(cancel_task)
        raise
    try:
        if acquire_task in done:
            await acquire_task
            return
        await _abandon_acquire(semaphore, acquire_task)
        raise asyncio.CancelledError("acquire cancelled")
    finally:
        cancel_task.cancel()
        await _await_cancelled(cancel_task)


async def _abandon_acquire(semaphore: asyncio.Semaphore, acquire_task: asyncio.Task[bool]) -> None:
    # A permit granted in the same tick as the cancel is handed back.
    if acquire_task.done() and not acquire_task.cancelled():
        semaphore.release()
        return
    acquire_task.cancel()
    await _await_cancelled(acquire_task)
    if not acquire_task.cancelled():
        semaphore.release()


async def _await_cancelled(task: asyncio.Task[object]) -> None:
    try:
        await task
    except asyncio.CancelledError:
        return


async def _await_sleep(delay_seconds: float, *, sleep: SleepFn) -> None:
    await sleep(delay_seconds)


async def _await_value(awaitable: Awaitable[T]) -> T:
    return await awaitable


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    # Close raw coroutine objects that were never scheduled.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "SleepFn",
    "run_with_timeout",
    "sleep_with_cancellation",
]
