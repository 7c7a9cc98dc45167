"""Session Orchestrator.

Owns the project -> instance binding.

Acquisition order in get_or_create_vm (serialized per project):
1. in-process cache, re-probed for liveness
2. durable session store, re-probed for liveness
3. adoption of an existing instance by deterministic name
4. warm pool allocation (cold provisioning inside the pool when empty),
   or direct cold provisioning when no pool is configured

Every acquired session is written to both the cache and the durable
store, and gets an idle-reaper watch. Instances reached through steps
3 and 4 receive the project's stored files before the call returns.
Reconciliation adopts started
workspace instances the store does not know about, drops stored
sessions whose instance is gone, and re-arms reaper watches after a
restart.
"""

import logging
import shlex
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from cachetools import TTLCache

from devhub.adapters.repository.github import GitHubArchiveClient, parse_repository_url
from devhub.app.config import (
    AgentConfig,
    MachineConfig,
    PreviewConfig,
    SessionConfig,
    get_settings,
)
from devhub.app.logging import project_context
from devhub.app.metrics.collector import (
    RECONCILE_ADOPTED_TOTAL,
    RECONCILE_STALE_TOTAL,
    SESSIONS_ACTIVE,
    VM_ACQUIRE_DURATION,
)
from devhub.control.locks import KeyedLock
from devhub.control.pool import WarmPoolManager
from devhub.control.reaper import IdleReaper
from devhub.control.readiness import is_instance_live, wait_until_ready
from devhub.control.sync import FileSyncEngine
from devhub.core.domain import (
    ActiveSession,
    CloneResult,
    PreviewResult,
    ProjectInfo,
    ReconcileResult,
    SyncResult,
)
from devhub.core.interfaces import (
    ExecResult,
    InstanceAgent,
    Machine,
    MachineProvider,
    MachineSpec,
    MachineState,
    ProjectFile,
    Session,
    SessionStore,
)
from devhub.core.logging_schema import Component, LogEvent
from devhub.core.naming import ResourceNaming

logger = logging.getLogger(__name__)

# Dev servers that bind to localhost unless told otherwise
_LOCALHOST_SERVERS = ("npm start", "react-scripts start", "vite")


def with_host_binding(command: str) -> str:
    """Make known dev servers listen on all interfaces."""
    if "--host" in command or not any(s in command for s in _LOCALHOST_SERVERS):
        return command
    return f"{command} -- --host 0.0.0.0"


class SessionOrchestrator:
    def __init__(
        self,
        provider: MachineProvider,
        agent: InstanceAgent,
        sync: FileSyncEngine,
        sessions: SessionStore,
        pool: WarmPoolManager | None = None,
        repositories: GitHubArchiveClient | None = None,
        naming: ResourceNaming | None = None,
        config: SessionConfig | None = None,
        machine_config: MachineConfig | None = None,
        agent_config: AgentConfig | None = None,
        preview_config: PreviewConfig | None = None,
    ) -> None:
        settings = get_settings()
        self._provider = provider
        self._agent = agent
        self._sync = sync
        self._sessions = sessions
        self._pool = pool
        self._repositories = repositories or GitHubArchiveClient()
        self._config = config or settings.session
        self._machine_config = machine_config or settings.machine
        agent_config = agent_config or settings.agent
        self._endpoint = agent_config.ingress_url
        self._project_dir = agent_config.project_dir
        self._preview = preview_config or settings.preview
        self._naming = naming or ResourceNaming(self._config, settings.pool)

        self._cache: TTLCache[str, Session] = TTLCache(
            maxsize=self._config.cache_maxsize, ttl=self._config.cache_ttl
        )
        self._locks = KeyedLock()
        self._reaper = IdleReaper(sessions, self.stop_if_idle, self._config)

    @asynccontextmanager
    async def _scope(self, project_id: str) -> AsyncIterator[None]:
        """Per-project lock, with project_id bound for logging."""
        with project_context(project_id):
            async with self._locks.hold(project_id):
                yield

    @property
    def reaper(self) -> IdleReaper:
        return self._reaper

    def cached_session(self, project_id: str) -> Session | None:
        return self._cache.get(project_id)

    async def close(self) -> None:
        await self._reaper.cancel_all()

    # =========================================================================
    # Session bookkeeping
    # =========================================================================

    def _refresh_active(self) -> None:
        active = len(self._cache)
        SESSIONS_ACTIVE.set(active)
        if self._pool is not None:
            self._pool.update_active_users(active)

    def _new_session(
        self, project_id: str, instance_id: str, name: str, endpoint: str | None = None
    ) -> Session:
        now = time.time()
        return Session(
            project_id=project_id,
            instance_id=instance_id,
            instance_name=name,
            endpoint=endpoint or self._endpoint,
            created_at=now,
            last_used=now,
        )

    async def _bind(self, session: Session) -> Session:
        self._cache[session.project_id] = session
        await self._sessions.put(session)
        self._reaper.schedule(session.project_id)
        self._refresh_active()
        return session

    async def _forget(self, project_id: str) -> None:
        self._cache.pop(project_id, None)
        await self._sessions.delete(project_id)
        self._refresh_active()

    async def _is_alive(self, session: Session) -> bool:
        return await is_instance_live(
            self._provider, self._agent, session.instance_id, session.endpoint
        )

    async def _live_session(self, project_id: str) -> Session | None:
        """Currently bound session, without acquiring or probing."""
        session = self._cache.get(project_id)
        if session is not None:
            return session
        return await self._sessions.get(project_id)

    async def _destroy_quietly(self, instance_id: str) -> None:
        try:
            await self._provider.destroy(instance_id)
        except Exception as exc:
            logger.warning("Destroy of %s failed: %s", instance_id, exc)

    # =========================================================================
    # Acquisition
    # =========================================================================

    async def get_or_create_vm(self, project_id: str, force_new: bool = False) -> Session:
        """Return a live session for the project, acquiring an instance if needed.

        A freshly acquired instance (adopted, pool or cold) receives the
        project's stored files before the session is returned.

        Args:
            project_id: Project to bind.
            force_new: Skip the cache and the stored session; still adopts
                an existing instance with the project's name. A previously
                bound instance that gets replaced is destroyed.

        Raises:
            ProvisioningError: No instance could be made ready.
        """
        session, _ = await self._get_or_create(project_id, force_new)
        return session

    async def _get_or_create(
        self, project_id: str, force_new: bool
    ) -> tuple[Session, SyncResult | None]:
        started = time.monotonic()
        async with self._scope(project_id):
            previous = None
            if force_new:
                previous = await self._live_session(project_id)
            else:
                cached = self._cache.get(project_id)
                if cached is not None:
                    if await self._is_alive(cached):
                        session = await self._bind(cached.touched(time.time()))
                        VM_ACQUIRE_DURATION.labels(path="cache").observe(
                            time.monotonic() - started
                        )
                        return session, None
                    logger.warning(
                        "Cached instance %s for %s failed liveness probe",
                        cached.instance_id,
                        project_id,
                    )
                    self._cache.pop(project_id, None)

            session, path = await self._acquire(project_id, force_new)
            await self._bind(session)
            if previous is not None and previous.instance_id != session.instance_id:
                await self._retire(previous)

            synced = None
            if path != "store":
                synced = await self._initial_sync(session)

        elapsed = time.monotonic() - started
        VM_ACQUIRE_DURATION.labels(path=path).observe(elapsed)
        logger.info(
            "Bound %s to %s via %s in %.1fs",
            project_id,
            session.instance_id,
            path,
            elapsed,
            extra={
                "event": LogEvent.VM_ADOPTED if path == "adopted" else LogEvent.VM_REUSED,
                "component": Component.SESSION,
                "project_id": project_id,
                "instance_id": session.instance_id,
                "path": path,
                "duration_ms": round(elapsed * 1000),
            },
        )
        return session, synced

    async def _initial_sync(self, session: Session) -> SyncResult | None:
        """Push stored files to a newly bound instance; failures leave it bound."""
        try:
            return await self._sync.sync_to_vm(
                session.project_id, session.endpoint, session.instance_id
            )
        except Exception as exc:
            logger.warning(
                "Initial sync of %s to %s failed: %s",
                session.project_id,
                session.instance_id,
                exc,
            )
            return None

    async def _retire(self, session: Session) -> None:
        """Destroy an instance that a forced rebind replaced."""
        if self._pool is not None:
            self._pool.discard(session.instance_id)
        await self._destroy_quietly(session.instance_id)
        logger.info(
            "Retired %s for %s after forced rebind",
            session.instance_id,
            session.project_id,
            extra={
                "event": LogEvent.VM_STOPPED,
                "component": Component.SESSION,
                "project_id": session.project_id,
                "instance_id": session.instance_id,
            },
        )

    async def _acquire(self, project_id: str, force_new: bool) -> tuple[Session, str]:
        if not force_new:
            stored = await self._sessions.get(project_id)
            if stored is not None:
                if await self._is_alive(stored):
                    return stored.touched(time.time()), "store"
                await self._drop_dead_session(stored)

        machine = await self._find_named_machine(project_id)
        if machine is not None:
            if machine.state in (MachineState.STOPPED, MachineState.SUSPENDED):
                await self._provider.start(machine.id)
            await wait_until_ready(self._provider, self._agent, machine.id, self._endpoint)
            return self._new_session(project_id, machine.id, machine.name), "adopted"

        if self._pool is not None:
            entry = await self._pool.allocate(project_id)
            return (
                self._new_session(project_id, entry.instance_id, entry.name, entry.endpoint),
                "pool",
            )

        return await self._provision(project_id), "cold"

    async def _drop_dead_session(self, stored: Session) -> None:
        logger.warning(
            "Stored instance %s for %s failed liveness probe",
            stored.instance_id,
            stored.project_id,
        )
        await self._sessions.delete(stored.project_id)
        # Named instances are left for adoption; pool instances are gone for good
        if stored.instance_name != self._naming.machine_name(stored.project_id):
            if self._pool is not None:
                self._pool.discard(stored.instance_id)
            await self._destroy_quietly(stored.instance_id)

    async def _find_named_machine(self, project_id: str) -> Machine | None:
        name = self._naming.machine_name(project_id)
        found = None
        for machine in await self._provider.list_all():
            if machine.name != name or machine.is_gone:
                continue
            if machine.state == MachineState.FAILED:
                # Frees the name for a fresh create
                await self._destroy_quietly(machine.id)
                continue
            found = machine
        return found

    async def _provision(self, project_id: str) -> Session:
        name = self._naming.machine_name(project_id)
        spec = MachineSpec(
            image=self._machine_config.image,
            cpus=self._machine_config.cpus,
            memory_mb=self._machine_config.memory_mb,
            cpu_kind=self._machine_config.cpu_kind,
            env={"PROJECT_ID": project_id},
        )
        machine = await self._provider.create(name, spec)
        try:
            await wait_until_ready(self._provider, self._agent, machine.id, self._endpoint)
        except Exception:
            await self._destroy_quietly(machine.id)
            raise
        return self._new_session(project_id, machine.id, machine.name or name)

    # =========================================================================
    # Teardown
    # =========================================================================

    async def stop_vm(self, project_id: str, recycle: bool = False) -> bool:
        """Tear down the project's instance and forget the session.

        Args:
            project_id: Project to stop.
            recycle: Return a pool-leased instance to the pool (soft clean)
                instead of destroying it.

        Returns:
            False if there was no session (idempotent).
        """
        async with self._scope(project_id):
            session = await self._live_session(project_id)
            if session is None:
                self._cache.pop(project_id, None)
                self._reaper.cancel(project_id)
                return False
            await self._teardown(session, recycle)
        return True

    async def stop_if_idle(self, project_id: str, idle_timeout: float) -> bool:
        """Stop the project's instance only if it is still idle under the lock.

        The idle decision is re-read from the durable store after the
        per-project lock is taken, so an acquisition that refreshed
        last_used while this call waited keeps its instance.

        Returns:
            True if the session is gone (stopped here or already missing).
        """
        async with self._scope(project_id):
            stored = await self._sessions.get(project_id)
            if stored is None:
                self._cache.pop(project_id, None)
                return True
            if stored.idle_seconds(time.time()) <= idle_timeout:
                logger.info(
                    "Project %s was used while the idle stop waited, keeping %s",
                    project_id,
                    stored.instance_id,
                )
                return False
            await self._teardown(stored, recycle=False)
        return True

    async def _teardown(self, session: Session, recycle: bool) -> None:
        """Release or destroy the session's instance. Caller holds the project lock."""
        project_id = session.project_id
        if recycle and self._pool is not None and self._pool.owns(session.instance_id):
            await self._pool.release(session.instance_id, keep_dependency_cache=True)
        else:
            await self._provider.destroy(session.instance_id)
            if self._pool is not None:
                self._pool.discard(session.instance_id)

        await self._forget(project_id)
        self._reaper.cancel(project_id)

        logger.info(
            "Stopped %s (%s)",
            project_id,
            session.instance_id,
            extra={
                "event": LogEvent.VM_STOPPED,
                "component": Component.SESSION,
                "project_id": project_id,
                "instance_id": session.instance_id,
                "recycled": recycle,
            },
        )

    # =========================================================================
    # Repository import
    # =========================================================================

    async def clone_repository(
        self, project_id: str, repo_url: str, token: str | None = None
    ) -> CloneResult:
        """Import a GitHub repository into the persistent store.

        Raises:
            InvalidRepositoryError: URL is not a GitHub repository.
            RepositoryNotFoundError: Not found or private (retry with a token).
        """
        started = time.monotonic()
        ref = parse_repository_url(repo_url)
        archive = await self._repositories.fetch(ref, token)

        saved = await self._sync.save_files(
            project_id, ((f.path, f.content) for f in archive.files)
        )
        await self._sync.store.set_metadata(project_id, {"repositoryUrl": repo_url})

        sync_result = None
        session = await self._live_session(project_id)
        if session is not None:
            sync_result = await self._sync.sync_to_vm(
                project_id, session.endpoint, session.instance_id
            )

        elapsed_ms = round((time.monotonic() - started) * 1000)
        logger.info(
            "Cloned %s/%s@%s into %s: %d saved, %d failed",
            ref.owner,
            ref.repo,
            archive.branch,
            project_id,
            saved.saved_count,
            saved.failed_count,
            extra={
                "event": LogEvent.REPOSITORY_CLONED,
                "component": Component.SESSION,
                "project_id": project_id,
                "duration_ms": elapsed_ms,
            },
        )
        return CloneResult(
            project_id=project_id,
            owner=ref.owner,
            repo=ref.repo,
            branch=archive.branch,
            files_count=len(archive.files),
            saved_count=saved.saved_count,
            failed_count=saved.failed_count,
            elapsed_ms=elapsed_ms,
            sync=sync_result,
        )

    # =========================================================================
    # Preview
    # =========================================================================

    async def _marker_present(self, session: Session) -> bool:
        command = f"test -d {shlex.quote(self._preview.install_marker)}"
        try:
            result = await self._provider.exec(
                session.endpoint, session.instance_id, command, cwd=self._project_dir
            )
        except Exception as exc:
            logger.warning("Marker check on %s failed: %s", session.instance_id, exc)
            return False
        return result.ok

    async def start_preview(self, project_id: str, project_info: ProjectInfo) -> PreviewResult:
        """Sync, repair, install if needed, and start the dev server detached."""
        session, synced = await self._get_or_create(project_id, force_new=False)
        endpoint, instance_id = session.endpoint, session.instance_id

        # A fresh acquisition has already pushed the files
        if synced is None:
            synced = await self._sync.sync_to_vm(project_id, endpoint, instance_id)
        repaired = await self._sync.repair(project_id, endpoint, instance_id)

        installed = False
        if project_info.install_command and not await self._marker_present(session):
            result = await self._provider.exec(
                endpoint,
                instance_id,
                project_info.install_command,
                cwd=self._project_dir,
                timeout=self._preview.install_timeout,
            )
            installed = result.ok
            if not result.ok:
                logger.warning(
                    "Install for %s exited %d: %s",
                    project_id,
                    result.exit_code,
                    result.stderr[-500:],
                )

        start_command = with_host_binding(project_info.start_command)
        await self._provider.exec(
            endpoint,
            instance_id,
            f"nohup sh -c {shlex.quote(start_command)} > {self._preview.log_file} 2>&1 &",
            cwd=self._project_dir,
            timeout=self._preview.start_timeout,
        )

        preview_url = self._preview.url_template.format(
            endpoint=endpoint,
            project_id=project_id,
            instance_id=instance_id,
            port=project_info.port,
        )
        logger.info(
            "Preview for %s started on %s",
            project_id,
            instance_id,
            extra={
                "event": LogEvent.PREVIEW_STARTED,
                "component": Component.SESSION,
                "project_id": project_id,
                "instance_id": instance_id,
                "installed": installed,
            },
        )
        return PreviewResult(
            project_id=project_id,
            instance_id=instance_id,
            preview_url=preview_url,
            port=project_info.port,
            project_type=project_info.type,
            installed=installed,
            synced_count=synced.synced_count,
            repaired_count=repaired.synced_count,
        )

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def reconcile(self) -> ReconcileResult:
        """Align the durable store with what the provider actually runs."""
        machines = await self._provider.list_all()
        sessions = await self._sessions.list_all()
        bound_instances = {s.instance_id for s in sessions}
        machines_by_id = {m.id: m for m in machines}

        adopted = 0
        for machine in machines:
            if (
                not self._naming.is_workspace_name(machine.name)
                or not machine.is_started
                or machine.id in bound_instances
            ):
                continue
            project_id = self._naming.project_id_from_machine(machine)
            if not project_id:
                continue

            async with self._scope(project_id):
                if await self._sessions.get(project_id) is not None:
                    continue
                await self._bind(self._new_session(project_id, machine.id, machine.name))
            adopted += 1
            RECONCILE_ADOPTED_TOTAL.inc()
            logger.info(
                "Adopted orphan instance %s for %s",
                machine.id,
                project_id,
                extra={
                    "event": LogEvent.ORPHAN_ADOPTED,
                    "component": Component.RECONCILE,
                    "project_id": project_id,
                    "instance_id": machine.id,
                },
            )

        stale = 0
        for session in sessions:
            machine = machines_by_id.get(session.instance_id)
            if machine is not None and not machine.is_gone and machine.state != MachineState.FAILED:
                self._reaper.schedule(session.project_id)
                continue

            async with self._scope(session.project_id):
                current = await self._sessions.get(session.project_id)
                if current is None or current.instance_id != session.instance_id:
                    continue
                await self._forget(session.project_id)
                self._reaper.cancel(session.project_id)
                if self._pool is not None:
                    self._pool.discard(session.instance_id)
            stale += 1
            RECONCILE_STALE_TOTAL.inc()
            logger.info(
                "Removed stale session %s (instance %s gone)",
                session.project_id,
                session.instance_id,
                extra={
                    "event": LogEvent.STALE_SESSION_REMOVED,
                    "component": Component.RECONCILE,
                    "project_id": session.project_id,
                },
            )

        self._refresh_active()
        result = ReconcileResult(adopted=adopted, stale_removed=stale, watched=len(self._reaper))
        logger.info(
            "Reconciled: %d adopted, %d stale removed, %d watched",
            result.adopted,
            result.stale_removed,
            result.watched,
            extra={"event": LogEvent.RECONCILE_COMPLETE, "component": Component.RECONCILE},
        )
        return result

    # =========================================================================
    # Files and commands
    # =========================================================================

    async def write_file(self, project_id: str, path: str, content: str) -> ProjectFile:
        """Persist a file and push it to the live instance, if any."""
        stored = await self._sync.store.put_file(project_id, path, content)
        session = await self._live_session(project_id)
        if session is not None and self._sync.is_syncable(path):
            await self._sync.push_file(session.endpoint, session.instance_id, path, content)
        return stored

    async def read_file(self, project_id: str, path: str) -> str | None:
        """Read from the store, falling back to the live instance."""
        stored = await self._sync.store.get_file(project_id, path)
        if stored is not None:
            return stored.content

        session = await self._live_session(project_id)
        if session is None:
            return None
        try:
            return await self._agent.read_file(session.endpoint, session.instance_id, path)
        except Exception as exc:
            logger.warning("Reading %s from %s failed: %s", path, session.instance_id, exc)
            return None

    async def delete_file(self, project_id: str, path: str) -> bool:
        deleted = await self._sync.store.delete_file(project_id, path)
        session = await self._live_session(project_id)
        if session is not None:
            try:
                await self._agent.delete_file(session.endpoint, session.instance_id, path)
            except Exception as exc:
                logger.warning(
                    "Deleting %s on %s failed: %s", path, session.instance_id, exc
                )
        return deleted

    async def list_files(self, project_id: str) -> list[str]:
        return sorted(await self._sync.store.list_paths(project_id))

    async def exec(self, project_id: str, command: str, cwd: str | None = None) -> ExecResult:
        session = await self.get_or_create_vm(project_id)
        return await self._provider.exec(
            session.endpoint, session.instance_id, command, cwd=cwd or self._project_dir
        )

    async def get_active_sessions(self) -> list[ActiveSession]:
        now = time.time()
        return [
            ActiveSession(
                project_id=s.project_id,
                instance_id=s.instance_id,
                endpoint=s.endpoint,
                created_at=s.created_at,
                last_used=s.last_used,
                idle_seconds=round(s.idle_seconds(now), 1),
            )
            for s in sorted(await self._sessions.list_all(), key=lambda s: s.last_used)
        ]


__all__ = ["SessionOrchestrator", "with_host_binding"]
