"""Tests for courier/outbox/pool.py: bounded concurrency and drain-then-exit shutdown."""

import asyncio

import pytest

from courier.models import DispatchOutcome
from courier.outbox.pool import DispatchPool


class GatedDispatcher:
    """Dispatcher stand-in that blocks every dispatch until released."""

    def __init__(self):
        self.active = 0
        self.peak = 0
        self.seen = []
        self.release = asyncio.Event()

    async def dispatch(self, outbox_id):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await self.release.wait()
        finally:
            self.active -= 1
        self.seen.append(outbox_id)
        return DispatchOutcome.SENT


class CrashingDispatcher:
    async def dispatch(self, outbox_id):
        raise RuntimeError(f"crash on {outbox_id}")


@pytest.mark.asyncio
async def test_max_in_flight_bounds_concurrency():
    dispatcher = GatedDispatcher()
    pool = DispatchPool(dispatcher, max_in_flight=2)

    for outbox_id in range(1, 6):
        pool.submit(outbox_id)
    await asyncio.sleep(0.05)

    assert dispatcher.active == 2
    assert pool.in_flight == 5

    dispatcher.release.set()
    await pool.wait_idle()

    assert dispatcher.peak == 2
    assert sorted(dispatcher.seen) == [1, 2, 3, 4, 5]
    assert pool.in_flight == 0


@pytest.mark.asyncio
async def test_unbounded_pool_runs_everything_at_once():
    dispatcher = GatedDispatcher()
    pool = DispatchPool(dispatcher, max_in_flight=0)

    for outbox_id in range(1, 6):
        pool.submit(outbox_id)
    await asyncio.sleep(0.05)

    assert dispatcher.active == 5
    dispatcher.release.set()
    await pool.wait_idle()


@pytest.mark.asyncio
async def test_submit_returns_task_with_outcome():
    dispatcher = GatedDispatcher()
    dispatcher.release.set()
    pool = DispatchPool(dispatcher)

    task = pool.submit(7)

    assert await task == DispatchOutcome.SENT
    assert task.get_name() == "outbox-dispatch-7"


@pytest.mark.asyncio
async def test_crashing_dispatch_is_contained(caplog):
    pool = DispatchPool(CrashingDispatcher())

    task = pool.submit(3)

    assert await task is None
    assert "Dispatch of outbox message 3 crashed" in caplog.text
    assert pool.accepting


@pytest.mark.asyncio
async def test_shutdown_stops_accepting_and_waits():
    dispatcher = GatedDispatcher()
    pool = DispatchPool(dispatcher)
    pool.submit(1)
    await asyncio.sleep(0)

    shutdown = asyncio.create_task(pool.shutdown(timeout=2))
    await asyncio.sleep(0.01)

    assert not pool.accepting
    assert pool.submit(2) is None
    assert not shutdown.done()

    dispatcher.release.set()
    assert await shutdown is True
    assert dispatcher.seen == [1]


@pytest.mark.asyncio
async def test_shutdown_timeout_never_cancels_dispatches():
    dispatcher = GatedDispatcher()
    pool = DispatchPool(dispatcher)
    task = pool.submit(1)
    await asyncio.sleep(0)

    assert await pool.shutdown(timeout=0.05) is False
    assert not task.done()

    dispatcher.release.set()
    assert await task == DispatchOutcome.SENT


@pytest.mark.asyncio
async def test_shutdown_when_idle():
    pool = DispatchPool(GatedDispatcher())
    assert await pool.shutdown(timeout=1) is True
