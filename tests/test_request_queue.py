"""Tests for the in-process request queue."""

import asyncio

import pytest

from curriculum_engine.core.request_queue import RequestQueue


def test_rejects_zero_capacity():
    with pytest.raises(ValueError):
        RequestQueue(0)


@pytest.mark.asyncio
async def test_never_exceeds_max_concurrent():
    queue = RequestQueue(max_concurrent=2)
    running = 0
    peak = 0

    async def task():
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        return "ok"

    results = await asyncio.gather(*(queue.run(task) for _ in range(6)))

    assert results == ["ok"] * 6
    assert peak == 2
    assert queue.active_count == 0
    assert queue.pending_count == 0


@pytest.mark.asyncio
async def test_waiters_run_in_fifo_order():
    queue = RequestQueue(max_concurrent=1)
    order: list[int] = []
    gate = asyncio.Event()

    async def blocker():
        await gate.wait()

    async def record(i):
        order.append(i)

    first = asyncio.create_task(queue.run(blocker))
    await asyncio.sleep(0)
    waiters = [asyncio.create_task(queue.run(lambda i=i: record(i))) for i in range(3)]
    await asyncio.sleep(0)
    assert queue.pending_count == 3

    gate.set()
    await asyncio.gather(first, *waiters)

    assert order == [0, 1, 2]


@pytest.mark.asyncio
async def test_slot_released_when_task_raises():
    queue = RequestQueue(max_concurrent=1)

    async def boom():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await queue.run(boom)

    assert queue.active_count == 0
    assert await queue.run(lambda: asyncio.sleep(0, result="after")) == "after"


@pytest.mark.asyncio
async def test_cancelled_waiter_gives_up_its_place():
    queue = RequestQueue(max_concurrent=1)
    gate = asyncio.Event()

    async def blocker():
        await gate.wait()

    holder = asyncio.create_task(queue.run(blocker))
    await asyncio.sleep(0)
    waiter = asyncio.create_task(queue.run(lambda: asyncio.sleep(0)))
    await asyncio.sleep(0)

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert queue.pending_count == 0

    gate.set()
    await holder
    assert queue.active_count == 0
