# scheduler.py
"""
Background loops. Each loop is one asyncio task with an explicit handle,
owned by the Supervisor. A failing tick is logged and the loop sleeps its
interval and goes again.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class PollingLoop:
    def __init__(self, name: str, interval_s: float, tick: Callable[[], Awaitable[object]]):
        self.name = name
        self.interval_s = interval_s
        self._tick = tick
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0
        self.failures = 0
        self.last_tick_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        if self.running:
            return False
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info(f"[{self.name}] started (every {self.interval_s:g}s)")
        return True

    async def stop(self) -> bool:
        if not self.running:
            return False
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"[{self.name}] stopped")
        return True

    async def run_once(self) -> None:
        try:
            await self._tick()
        except Exception as e:
            self.failures += 1
            logger.error(f"[{self.name}] tick error {type(e).__name__}: {e}", exc_info=True)
        finally:
            self.ticks += 1
            self.last_tick_at = datetime.now(timezone.utc)

    async def _run(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval_s)

    def state(self) -> Dict[str, object]:
        return {
            "running": self.running,
            "interval_s": self.interval_s,
            "ticks": self.ticks,
            "failures": self.failures,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
        }


class Supervisor:
    """
    Owns the loops in two groups:
      indexer    -> "indexer", "expiry_sweep"
      automation -> "settlement"
    """

    INDEXER_GROUP = ("indexer", "expiry_sweep")
    AUTOMATION_GROUP = ("settlement",)

    def __init__(self, loops: Dict[str, PollingLoop]):
        self.loops = dict(loops)

    def _group(self, names) -> list:
        return [self.loops[n] for n in names if n in self.loops]

    def start_indexer(self) -> bool:
        return any([loop.start() for loop in self._group(self.INDEXER_GROUP)])

    async def stop_indexer(self) -> bool:
        return any([await loop.stop() for loop in self._group(self.INDEXER_GROUP)])

    def start_automation(self) -> bool:
        return any([loop.start() for loop in self._group(self.AUTOMATION_GROUP)])

    async def stop_automation(self) -> bool:
        return any([await loop.stop() for loop in self._group(self.AUTOMATION_GROUP)])

    @property
    def indexer_running(self) -> bool:
        return any(loop.running for loop in self._group(self.INDEXER_GROUP))

    @property
    def automation_running(self) -> bool:
        return any(loop.running for loop in self._group(self.AUTOMATION_GROUP))

    async def stop_all(self) -> None:
        for loop in self.loops.values():
            await loop.stop()

    def states(self) -> Dict[str, Dict[str, object]]:
        return {name: loop.state() for name, loop in self.loops.items()}
