"""Async primitives: timeouts, cancellation tokens and bounded permits."""

from __future__ import annotations

import asyncio

import pytest

from shipgate.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    run_with_timeout,
    sleep_with_cancellation,
)
from tests.fakes import RecordingSleep


@pytest.mark.unit
async def test_run_with_timeout_returns_the_result() -> None:
    async def work() -> str:
        await asyncio.sleep(0)
        return "done"

    assert await run_with_timeout(work(), 1.0) == "done"


@pytest.mark.unit
async def test_run_with_timeout_cancels_the_task_on_timeout() -> None:
    cancelled = asyncio.Event()

    async def hang() -> None:
        try:
            await asyncio.sleep(60)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    with pytest.raises(TimeoutError, match="timed out after 0.01 seconds"):
        await run_with_timeout(hang(), 0.01)
    assert cancelled.is_set()


@pytest.mark.unit
async def test_run_with_timeout_stops_when_the_token_fires() -> None:
    token = CancellationToken()

    async def hang() -> None:
        await asyncio.sleep(60)

    async def cancel_soon() -> None:
        await asyncio.sleep(0)
        token.cancel("stop")

    canceller = asyncio.create_task(cancel_soon())
    with pytest.raises(asyncio.CancelledError):
        await run_with_timeout(hang(), 30.0, token)
    await canceller


@pytest.mark.unit
async def test_run_with_timeout_rejects_bad_input_without_leaking_coroutines() -> None:
    async def work() -> None:
        return None

    with pytest.raises(ValueError, match="timeout_seconds must be > 0"):
        await run_with_timeout(work(), 0)

    token = CancellationToken()
    token.cancel()
    with pytest.raises(asyncio.CancelledError):
        await run_with_timeout(work(), 1.0, token)


@pytest.mark.unit
async def test_cancellation_token_keeps_the_first_reason() -> None:
    token = CancellationToken()
    token.raise_if_cancelled()

    token.cancel("first")
    token.cancel("second")

    assert token.is_cancelled
    assert token.reason == "first"
    with pytest.raises(asyncio.CancelledError):
        token.raise_if_cancelled()


@pytest.mark.unit
async def test_sleep_with_cancellation_uses_the_injected_sleep() -> None:
    sleep = RecordingSleep()

    await sleep_with_cancellation(2.5, sleep=sleep)
    await sleep_with_cancellation(4.0, sleep=sleep, cancel_token=CancellationToken())
    await sleep_with_cancellation(0, sleep=sleep)

    assert sleep.delays == [2.5, 4.0]


@pytest.mark.unit
async def test_sleep_with_cancellation_wakes_on_cancel() -> None:
    token = CancellationToken()
    sleeping = asyncio.create_task(sleep_with_cancellation(60, cancel_token=token))
    await asyncio.sleep(0)

    token.cancel("shutdown")

    with pytest.raises(asyncio.CancelledError):
        await sleeping
    with pytest.raises(asyncio.CancelledError):
        await sleep_with_cancellation(0, cancel_token=token)


@pytest.mark.unit
async def test_bounded_semaphore_tracks_peak_usage() -> None:
    semaphore = BoundedSemaphore(2)
    release = asyncio.Event()

    async def hold() -> None:
        async with semaphore.permit():
            await release.wait()

    tasks = [asyncio.create_task(hold()) for _ in range(3)]
    await asyncio.sleep(0)
    assert semaphore.snapshot() == {"limit": 2, "in_use": 2, "available": 0, "peak": 2}

    release.set()
    await asyncio.gather(*tasks)

    assert semaphore.in_use == 0
    assert semaphore.peak == 2


@pytest.mark.unit
async def test_cancelled_acquire_does_not_take_a_permit() -> None:
    semaphore = BoundedSemaphore(1)
    token = CancellationToken()
    await semaphore.acquire()

    waiter = asyncio.create_task(semaphore.acquire(token))
    await asyncio.sleep(0)
    token.cancel()

    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert semaphore.in_use == 1
    semaphore.release()
    assert semaphore.available == 1
    await semaphore.acquire()
    semaphore.release()


@pytest.mark.unit
def test_semaphore_misuse_is_rejected() -> None:
    with pytest.raises(ValueError, match="limit must be > 0"):
        BoundedSemaphore(0)
    with pytest.raises(RuntimeError, match="more times than acquire"):
        BoundedSemaphore(1).release()
