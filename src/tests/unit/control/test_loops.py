"""Tests for periodic background loops."""

import asyncio
from unittest.mock import AsyncMock

from devhub.app.logging import get_trace_id
from devhub.control.loops import PeriodicLoop, PoolMaintainer, Reconciler


class CountingLoop(PeriodicLoop):
    def __init__(self, interval: float, fail_on: set[int] | None = None) -> None:
        super().__init__(interval)
        self.fail_on = fail_on or set()
        self.trace_ids: list[str | None] = []

    async def tick(self) -> None:
        self.trace_ids.append(get_trace_id())
        if self.ticks in self.fail_on:
            raise RuntimeError(f"tick {self.ticks} failed")


async def _run_for(loop: PeriodicLoop, seconds: float) -> None:
    task = asyncio.create_task(loop.run())
    await asyncio.sleep(seconds)
    loop.stop()
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


class TestPeriodicLoop:
    async def test_ticks_immediately_and_repeats(self) -> None:
        loop = CountingLoop(interval=0.01)
        await _run_for(loop, 0.05)
        assert loop.ticks >= 2

    async def test_failed_tick_does_not_stop_loop(self) -> None:
        loop = CountingLoop(interval=0.01, fail_on={0})
        await _run_for(loop, 0.05)
        assert loop.ticks >= 2

    async def test_fresh_trace_id_per_tick(self) -> None:
        loop = CountingLoop(interval=0.01)
        await _run_for(loop, 0.05)

        assert all(loop.trace_ids)
        assert len(set(loop.trace_ids)) == len(loop.trace_ids)

    async def test_stop_ends_loop(self) -> None:
        loop = CountingLoop(interval=0.01)
        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.02)

        loop.stop()
        await asyncio.wait_for(task, timeout=1)

        assert task.done()


class TestLoopTicks:
    async def test_pool_maintainer_runs_maintenance(self) -> None:
        pool = AsyncMock()
        await PoolMaintainer(pool, interval=60).tick()
        pool.maintain.assert_awaited_once()

    async def test_reconciler_runs_reconcile(self) -> None:
        orchestrator = AsyncMock()
        await Reconciler(orchestrator, interval=60).tick()
        orchestrator.reconcile.assert_awaited_once()
