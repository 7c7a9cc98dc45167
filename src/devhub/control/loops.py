"""Periodic background loops.

Each loop ticks immediately on start, then every interval seconds. A
failing tick is logged and the loop continues; cancellation ends it.
Every tick runs under a fresh trace_id.
"""

import asyncio
import logging
from abc import ABC, abstractmethod

from devhub.app.logging import clear_trace_context, set_trace_id
from devhub.control.orchestrator import SessionOrchestrator
from devhub.control.pool import WarmPoolManager
from devhub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)


class PeriodicLoop(ABC):
    """Base class for interval-driven background work."""

    def __init__(self, interval: float) -> None:
        self._interval = interval
        self._running = False
        self._ticks = 0

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @property
    def ticks(self) -> int:
        return self._ticks

    @abstractmethod
    async def tick(self) -> None:
        """Execute one cycle."""
        pass

    async def run(self) -> None:
        self._running = True
        logger.info("[%s] Starting loop", self.name, extra={"event": LogEvent.APP_STARTED})
        try:
            while self._running:
                if not await self._execute_tick():
                    break
                await asyncio.sleep(self._interval)
        finally:
            self._running = False
            logger.info("[%s] Loop stopped", self.name, extra={"event": LogEvent.APP_STOPPED})

    def stop(self) -> None:
        self._running = False

    async def _execute_tick(self) -> bool:
        """Execute tick. Returns False if cancelled."""
        set_trace_id()
        try:
            await self.tick()
            return True
        except asyncio.CancelledError:
            return False
        except Exception as e:
            logger.exception("[%s] Error in tick: %s", self.name, e)
            return True
        finally:
            self._ticks += 1
            clear_trace_context()


class PoolMaintainer(PeriodicLoop):
    """Replenish, evict stale entries and report pool gauges."""

    def __init__(self, pool: WarmPoolManager, interval: float) -> None:
        super().__init__(interval)
        self._pool = pool

    async def tick(self) -> None:
        await self._pool.maintain()


class Reconciler(PeriodicLoop):
    """Align stored sessions with the provider's instance list."""

    def __init__(self, orchestrator: SessionOrchestrator, interval: float) -> None:
        super().__init__(interval)
        self._orchestrator = orchestrator

    async def tick(self) -> None:
        await self._orchestrator.reconcile()
