"""File Sync Engine.

Keeps an instance's project directory consistent with the persistent
file store:

- create_bundle: stored files minus extensions that corrupt as text
- sync_to_vm: bounded-concurrency push with per-file fixed retries
- repair: re-push files present in the store but missing on the instance
- save_files: bulk ingestion in atomic chunks under the store's limit

Partial failure is reported in SyncResult / SaveResult, never raised.
"""

import asyncio
import logging
import posixpath
import shlex
import time
from collections.abc import Iterable

from devhub.app.config import AgentConfig, SyncConfig, get_settings
from devhub.app.metrics.collector import (
    REPAIR_FILES_TOTAL,
    SAVE_FILES_TOTAL,
    SYNC_DURATION,
    SYNC_FILES_TOTAL,
)
from devhub.core.domain import BundleFile, SaveResult, SyncResult
from devhub.core.interfaces import FileStore, InstanceAgent, MachineProvider
from devhub.core.logging_schema import Component, LogEvent

logger = logging.getLogger(__name__)


def _extension(path: str) -> str:
    return posixpath.splitext(path)[1].lower()


class FileSyncEngine:
    def __init__(
        self,
        store: FileStore,
        agent: InstanceAgent,
        provider: MachineProvider,
        config: SyncConfig | None = None,
        agent_config: AgentConfig | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._agent = agent
        self._provider = provider
        self._config = config or settings.sync
        self._project_dir = (agent_config or settings.agent).project_dir
        self._excluded = {ext.lower() for ext in self._config.excluded_extensions}
        self._ignored = {ext.lower() for ext in self._config.ignored_extensions}

    @property
    def store(self) -> FileStore:
        return self._store

    def is_syncable(self, path: str) -> bool:
        return _extension(path) not in self._excluded

    def is_ignored(self, path: str) -> bool:
        return _extension(path) in self._ignored

    # =========================================================================
    # Bundle
    # =========================================================================

    async def create_bundle(self, project_id: str) -> list[BundleFile]:
        files = await self._store.list_files(project_id)
        bundle = [
            BundleFile(path=f.path, content=f.content)
            for f in files
            if self.is_syncable(f.path) and not self.is_ignored(f.path)
        ]
        if len(bundle) != len(files):
            logger.debug(
                "Bundle for %s: %d of %d files (binary excluded)",
                project_id,
                len(bundle),
                len(files),
            )
        return bundle

    # =========================================================================
    # Push
    # =========================================================================

    async def push_file(
        self, endpoint: str, instance_id: str, path: str, content: str
    ) -> bool:
        """Write one file, retrying a fixed number of times with a fixed delay."""
        attempts = max(1, self._config.retries)
        for attempt in range(1, attempts + 1):
            try:
                await self._agent.write_file(endpoint, instance_id, path, content)
                return True
            except Exception as exc:
                if attempt == attempts:
                    logger.warning(
                        "Push of %s to %s failed after %d attempts: %s",
                        path,
                        instance_id,
                        attempts,
                        exc,
                        extra={
                            "event": LogEvent.SYNC_FILE_FAILED,
                            "component": Component.SYNC,
                            "instance_id": instance_id,
                            "path": path,
                        },
                    )
                    return False
                await asyncio.sleep(self._config.retry_delay)
        return False

    async def _push_all(
        self, endpoint: str, instance_id: str, files: list[BundleFile]
    ) -> SyncResult:
        semaphore = asyncio.Semaphore(max(1, self._config.concurrency))

        async def push(file: BundleFile) -> bool:
            async with semaphore:
                return await self.push_file(endpoint, instance_id, file.path, file.content)

        results = await asyncio.gather(*(push(f) for f in files))
        failed_paths = [f.path for f, ok in zip(files, results) if not ok]
        synced = len(files) - len(failed_paths)

        SYNC_FILES_TOTAL.labels(result="synced").inc(synced)
        SYNC_FILES_TOTAL.labels(result="failed").inc(len(failed_paths))
        return SyncResult(
            synced_count=synced,
            failed_count=len(failed_paths),
            failed_paths=failed_paths,
        )

    async def sync_to_vm(self, project_id: str, endpoint: str, instance_id: str) -> SyncResult:
        """Push every syncable stored file to the instance."""
        bundle = await self.create_bundle(project_id)
        if not bundle:
            logger.info("No files to sync for %s", project_id)
            return SyncResult()

        started = time.monotonic()
        result = await self._push_all(endpoint, instance_id, bundle)
        elapsed = time.monotonic() - started
        SYNC_DURATION.observe(elapsed)

        logger.info(
            "Synced %d/%d files for %s to %s in %.0fms",
            result.synced_count,
            result.total,
            project_id,
            instance_id,
            elapsed * 1000,
            extra={
                "event": LogEvent.SYNC_COMPLETE,
                "component": Component.SYNC,
                "project_id": project_id,
                "instance_id": instance_id,
                "failed_count": result.failed_count,
                "duration_ms": round(elapsed * 1000),
            },
        )
        return result

    # =========================================================================
    # Integrity repair
    # =========================================================================

    def _list_command(self) -> str:
        excludes = " ".join(
            f"-not -path {shlex.quote(f'*/{name}/*')}"
            for name in self._config.integrity_excludes
        )
        return f"find . -type f {excludes}".strip()

    async def list_remote_files(self, endpoint: str, instance_id: str) -> set[str] | None:
        """Relative paths of files on the instance, or None if listing failed."""
        try:
            result = await self._provider.exec(
                endpoint, instance_id, self._list_command(), cwd=self._project_dir
            )
        except Exception as exc:
            logger.warning("Listing files on %s failed: %s", instance_id, exc)
            return None
        if not result.ok:
            logger.warning(
                "Listing files on %s exited %d: %s",
                instance_id,
                result.exit_code,
                result.stderr[:200],
            )
            return None

        paths = set()
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            paths.add(line[2:] if line.startswith("./") else line)
        return paths

    async def repair(self, project_id: str, endpoint: str, instance_id: str) -> SyncResult:
        """Re-push stored files the instance does not have.

        Only paths are compared; content drift is not detected.
        """
        remote = await self.list_remote_files(endpoint, instance_id)
        if remote is None:
            return SyncResult()

        bundle = await self.create_bundle(project_id)
        missing = [f for f in bundle if f.path not in remote]
        if not missing:
            return SyncResult()

        logger.info(
            "Repairing %d missing files for %s on %s",
            len(missing),
            project_id,
            instance_id,
        )
        synced = 0
        failed_paths = []
        for file in missing:
            if await self.push_file(endpoint, instance_id, file.path, file.content):
                synced += 1
            else:
                failed_paths.append(file.path)

        REPAIR_FILES_TOTAL.inc(synced)
        logger.info(
            "Repaired %d/%d files for %s",
            synced,
            len(missing),
            project_id,
            extra={
                "event": LogEvent.REPAIR_COMPLETE,
                "component": Component.SYNC,
                "project_id": project_id,
                "instance_id": instance_id,
                "failed_count": len(failed_paths),
            },
        )
        return SyncResult(
            synced_count=synced,
            failed_count=len(failed_paths),
            failed_paths=failed_paths,
        )

    # =========================================================================
    # Bulk ingestion
    # =========================================================================

    async def save_files(
        self, project_id: str, files: Iterable[tuple[str, str]]
    ) -> SaveResult:
        """Persist (path, content) pairs in atomic chunks.

        A chunk that fails is counted as entirely failed; later chunks
        still run.
        """
        accepted: list[tuple[str, str]] = []
        ignored = 0
        for path, content in files:
            if self.is_ignored(path):
                ignored += 1
                continue
            accepted.append((path, content))

        chunk_size = max(1, min(self._config.batch_limit, self._store.BATCH_LIMIT))
        saved = 0
        failed = 0
        for offset in range(0, len(accepted), chunk_size):
            chunk = accepted[offset : offset + chunk_size]
            try:
                await self._store.put_many(project_id, chunk)
                saved += len(chunk)
            except Exception as exc:
                failed += len(chunk)
                logger.warning(
                    "Saving chunk of %d files for %s failed: %s",
                    len(chunk),
                    project_id,
                    exc,
                    extra={
                        "event": LogEvent.SAVE_CHUNK_FAILED,
                        "component": Component.SYNC,
                        "project_id": project_id,
                        "offset": offset,
                    },
                )

        SAVE_FILES_TOTAL.labels(result="saved").inc(saved)
        SAVE_FILES_TOTAL.labels(result="failed").inc(failed)
        SAVE_FILES_TOTAL.labels(result="ignored").inc(ignored)
        logger.info(
            "Saved %d files for %s (%d failed, %d ignored)",
            saved,
            project_id,
            failed,
            ignored,
            extra={"event": LogEvent.SAVE_COMPLETE, "component": Component.SYNC},
        )
        return SaveResult(saved_count=saved, failed_count=failed, ignored_count=ignored)
