"""Control plane assembly and lifecycle.

Wires the warm pool, file sync engine and session orchestrator over the
injected adapters, and runs the background loops.

Startup order:
1. Load durable sessions (instance_id -> project_id)
2. Adopt surviving pool instances, leased ones included
3. Start pool maintenance and reconciliation loops
"""

import asyncio
import logging

from devhub.adapters.repository.github import GitHubArchiveClient
from devhub.app.config import Settings, get_settings
from devhub.control.loops import PeriodicLoop, PoolMaintainer, Reconciler
from devhub.control.orchestrator import SessionOrchestrator
from devhub.control.pool import WarmPoolManager
from devhub.control.sync import FileSyncEngine
from devhub.core.interfaces import FileStore, InstanceAgent, MachineProvider, SessionStore
from devhub.core.logging_schema import LogEvent
from devhub.core.naming import ResourceNaming

logger = logging.getLogger(__name__)


class ControlPlane:
    def __init__(
        self,
        provider: MachineProvider,
        agent: InstanceAgent,
        file_store: FileStore,
        session_store: SessionStore,
        repositories: GitHubArchiveClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._settings = settings
        self._session_store = session_store
        self.naming = ResourceNaming(settings.session, settings.pool)

        self.pool: WarmPoolManager | None = None
        if settings.pool.enabled:
            self.pool = WarmPoolManager(
                provider,
                agent,
                naming=self.naming,
                config=settings.pool,
                machine_config=settings.machine,
                agent_config=settings.agent,
            )

        self.sync = FileSyncEngine(
            file_store,
            agent,
            provider,
            config=settings.sync,
            agent_config=settings.agent,
        )
        self.orchestrator = SessionOrchestrator(
            provider,
            agent,
            self.sync,
            session_store,
            pool=self.pool,
            repositories=repositories,
            naming=self.naming,
            config=settings.session,
            machine_config=settings.machine,
            agent_config=settings.agent,
            preview_config=settings.preview,
        )

        self._loops: list[PeriodicLoop] = []
        self._tasks: list[asyncio.Task] = []

    @property
    def loops(self) -> list[PeriodicLoop]:
        return list(self._loops)

    async def start(self) -> None:
        if self.pool is not None:
            sessions = await self._session_store.list_all()
            leased = {s.instance_id: s.project_id for s in sessions}
            await self.pool.initialize(leased=leased)
            self._loops.append(PoolMaintainer(self.pool, self._settings.pool.interval))

        self._loops.append(
            Reconciler(self.orchestrator, self._settings.session.reconcile_interval)
        )
        self._tasks = [
            asyncio.create_task(loop.run(), name=loop.name) for loop in self._loops
        ]
        logger.info(
            "Control plane started (pool=%s, loops=%d)",
            "on" if self.pool is not None else "off",
            len(self._tasks),
            extra={"event": LogEvent.APP_STARTED},
        )

    async def stop(self) -> None:
        for loop in self._loops:
            loop.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._loops = []

        await self.orchestrator.close()
        if self.pool is not None:
            await self.pool.close()
        logger.info("Control plane stopped", extra={"event": LogEvent.APP_STOPPED})
