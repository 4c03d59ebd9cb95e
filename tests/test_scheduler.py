"""Tests for PollingLoop and Supervisor."""

import asyncio
from unittest.mock import AsyncMock

from scheduler import PollingLoop, Supervisor


async def _wait_for_ticks(loop: PollingLoop, n: int) -> None:
    for _ in range(500):
        if loop.ticks >= n:
            return
        await asyncio.sleep(0.01)


class TestPollingLoop:
    async def test_survives_tick_errors(self) -> None:
        calls = []

        async def tick():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")

        loop = PollingLoop("test", 0.001, tick)
        assert loop.start() is True
        await _wait_for_ticks(loop, 3)
        await loop.stop()

        assert loop.ticks >= 3
        assert loop.failures == 1
        assert loop.running is False
        assert loop.last_tick_at is not None

    async def test_start_and_stop_are_idempotent(self) -> None:
        loop = PollingLoop("test", 60, AsyncMock())
        assert await loop.stop() is False
        assert loop.start() is True
        assert loop.start() is False
        assert await loop.stop() is True
        assert await loop.stop() is False

    async def test_run_once(self) -> None:
        tick = AsyncMock()
        loop = PollingLoop("test", 60, tick)
        await loop.run_once()
        tick.assert_awaited_once()
        assert loop.state()["ticks"] == 1


class TestSupervisor:
    def _supervisor(self) -> Supervisor:
        return Supervisor({
            "indexer": PollingLoop("indexer", 60, AsyncMock()),
            "expiry_sweep": PollingLoop("expiry_sweep", 60, AsyncMock()),
            "settlement": PollingLoop("settlement", 60, AsyncMock()),
        })

    async def test_groups_start_and_stop_independently(self) -> None:
        sup = self._supervisor()
        assert sup.start_indexer() is True
        assert sup.indexer_running is True
        assert sup.automation_running is False

        assert sup.start_automation() is True
        assert await sup.stop_indexer() is True
        states = sup.states()
        assert states["indexer"]["running"] is False
        assert states["expiry_sweep"]["running"] is False
        assert states["settlement"]["running"] is True

        await sup.stop_all()
        assert sup.automation_running is False

    async def test_stop_when_idle(self) -> None:
        sup = self._supervisor()
        assert await sup.stop_automation() is False
