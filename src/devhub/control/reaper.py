"""Idle reaper: one cancelable watch task per project.

Each tick re-reads the durable session store, so activity recorded by any
path (or before a restart) is honored. When the stored last_used is older
than idle_timeout the expiry callback (SessionOrchestrator.stop_if_idle)
runs with the threshold; when it reports the session gone the watch
ends. A missing session also ends the watch.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from devhub.app.config import SessionConfig, get_settings
from devhub.app.metrics.collector import IDLE_REAPED_TOTAL
from devhub.core.interfaces import SessionStore
from devhub.core.logging_schema import Component, LogEvent

logger = logging.getLogger(__name__)


class IdleReaper:
    def __init__(
        self,
        store: SessionStore,
        on_expire: Callable[[str, float], Awaitable[bool]],
        config: SessionConfig | None = None,
    ) -> None:
        config = config or get_settings().session
        self._store = store
        self._on_expire = on_expire
        self._idle_timeout = config.idle_timeout
        self._interval = config.reaper_interval
        self._tasks: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def is_scheduled(self, project_id: str) -> bool:
        task = self._tasks.get(project_id)
        return task is not None and not task.done()

    def schedule(self, project_id: str) -> bool:
        """Start watching a project. No-op if a watch is already live."""
        if self.is_scheduled(project_id):
            return False
        self._tasks[project_id] = asyncio.create_task(
            self._watch(project_id), name=f"idle-reaper:{project_id}"
        )
        return True

    def cancel(self, project_id: str) -> bool:
        task = self._tasks.pop(project_id, None)
        if task is None:
            return False
        # Expiry runs inside the watch task itself; it just ends afterwards
        if task is not asyncio.current_task():
            task.cancel()
        return True

    async def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _watch(self, project_id: str) -> None:
        try:
            while True:
                await asyncio.sleep(self._interval)
                try:
                    if await self.check(project_id):
                        return
                except Exception:
                    logger.exception("Idle check for %s failed", project_id)
        finally:
            if self._tasks.get(project_id) is asyncio.current_task():
                del self._tasks[project_id]

    async def check(self, project_id: str) -> bool:
        """Run one idle check. Returns True when the watch is finished.

        A stale-looking session is handed to the expiry callback, which
        re-reads it under the project lock and may decline: activity that
        landed in between keeps the watch running.
        """
        session = await self._store.get(project_id)
        if session is None:
            return True

        idle = session.idle_seconds(time.time())
        if idle <= self._idle_timeout:
            return False

        if not await self._on_expire(project_id, self._idle_timeout):
            return False

        logger.info(
            "Project %s idle for %.0fs, stopped",
            project_id,
            idle,
            extra={
                "event": LogEvent.IDLE_REAPED,
                "component": Component.REAPER,
                "project_id": project_id,
                "instance_id": session.instance_id,
            },
        )
        IDLE_REAPED_TOTAL.inc()
        return True
