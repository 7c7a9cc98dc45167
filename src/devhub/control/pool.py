"""Warm Pool Manager.

Keeps a set of booted, agent-healthy instances that are not bound to any
project, so a session can start without waiting for a cold boot.

Lease protocol:
- allocate() reserves a candidate (sets allocated_to) before the liveness
  probe awaits, so two concurrent allocations never pick the same entry.
- A candidate that fails the probe is evicted and the next one tried, up
  to allocate_max_attempts. After that (or with no candidate at all) the
  caller gets a cold-provisioned instance, already leased. An empty pool
  costs latency, never an error.
- release() is idempotent: unknown ids and double releases are no-ops.

Replenishment counts in-flight provisioning as supply, so overlapping
replenish() calls never overshoot the target.
"""

import asyncio
import contextvars
import logging
import math
import time
from collections.abc import Coroutine
from datetime import datetime
from typing import Any

from devhub.app.config import AgentConfig, MachineConfig, PoolConfig, get_settings
from devhub.app.metrics.collector import (
    POOL_ALLOCATIONS_TOTAL,
    POOL_ENTRIES,
    POOL_EVICTIONS_TOTAL,
    POOL_PROVISIONING,
    POOL_REPLENISH_TOTAL,
    POOL_TARGET_SIZE,
)
from devhub.control.readiness import is_instance_live, wait_until_ready
from devhub.core.domain import PoolEntry, PoolStats, ReplenishResult
from devhub.core.interfaces import InstanceAgent, Machine, MachineProvider, MachineSpec
from devhub.core.logging_schema import Component, LogEvent
from devhub.core.naming import ResourceNaming

logger = logging.getLogger(__name__)


def _created_at(machine: Machine, default: float) -> float:
    if not machine.created_at:
        return default
    try:
        return datetime.fromisoformat(machine.created_at).timestamp()
    except ValueError:
        return default


class WarmPoolManager:
    def __init__(
        self,
        provider: MachineProvider,
        agent: InstanceAgent,
        naming: ResourceNaming | None = None,
        config: PoolConfig | None = None,
        machine_config: MachineConfig | None = None,
        agent_config: AgentConfig | None = None,
    ) -> None:
        settings = get_settings()
        self._provider = provider
        self._agent = agent
        self._config = config or settings.pool
        self._machine_config = machine_config or settings.machine
        agent_config = agent_config or settings.agent
        self._naming = naming or ResourceNaming(settings.session, self._config)
        self._endpoint = agent_config.ingress_url
        self._project_dir = agent_config.project_dir

        # Insertion-ordered: oldest entries are allocated first
        self._entries: dict[str, PoolEntry] = {}
        # Unleased in-flight creates count as supply; leased ones do not
        self._provisioning = 0
        self._provisioning_leased = 0
        self._active_users = 0
        self._releasing: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    @property
    def name(self) -> str:
        return self.__class__.__name__

    # =========================================================================
    # Sizing and introspection
    # =========================================================================

    @property
    def entries(self) -> list[PoolEntry]:
        return list(self._entries.values())

    @property
    def available_count(self) -> int:
        return sum(1 for e in self._entries.values() if e.is_available)

    @property
    def allocated_count(self) -> int:
        return len(self._entries) - self.available_count

    @property
    def provisioning_count(self) -> int:
        return self._provisioning + self._provisioning_leased

    @property
    def target_size(self) -> int:
        """clamp(ceil(active_users * scale_ratio), base_size, max_size)"""
        dynamic = math.ceil(self._active_users * self._config.scale_ratio)
        return max(self._config.base_size, min(self._config.max_size, dynamic))

    def update_active_users(self, count: int) -> None:
        self._active_users = max(0, count)
        POOL_TARGET_SIZE.set(self.target_size)

    def get_entry(self, instance_id: str) -> PoolEntry | None:
        return self._entries.get(instance_id)

    def owns(self, instance_id: str) -> bool:
        return instance_id in self._entries

    def discard(self, instance_id: str) -> bool:
        """Forget an entry without touching its instance."""
        removed = self._entries.pop(instance_id, None) is not None
        if removed:
            self._update_gauges()
        return removed

    def get_stats(self) -> PoolStats:
        now = time.time()
        return PoolStats(
            total=len(self._entries),
            available=self.available_count,
            allocated=self.allocated_count,
            provisioning=self.provisioning_count,
            target=self.target_size,
            active_users=self._active_users,
            entries=[
                {
                    "instance_id": e.instance_id,
                    "name": e.name,
                    "allocated_to": e.allocated_to,
                    "prewarmed": e.prewarmed,
                    "age_seconds": round(now - e.created_at),
                }
                for e in self._entries.values()
            ],
        )

    def _update_gauges(self) -> None:
        POOL_ENTRIES.labels(state="available").set(self.available_count)
        POOL_ENTRIES.labels(state="allocated").set(self.allocated_count)
        POOL_PROVISIONING.set(self.provisioning_count)
        POOL_TARGET_SIZE.set(self.target_size)

    # =========================================================================
    # Background tasks
    # =========================================================================

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        # Background pool work carries no project or trace binding
        task = asyncio.create_task(coro, context=contextvars.Context())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_for_background(self) -> None:
        """Wait for fire-and-forget work (replenish, evictions) to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()

    async def _destroy_quietly(self, instance_id: str) -> None:
        try:
            await self._provider.destroy(instance_id)
        except Exception as exc:
            logger.warning("[%s] Destroy of %s failed: %s", self.name, instance_id, exc)

    # =========================================================================
    # Startup adoption
    # =========================================================================

    async def initialize(self, leased: dict[str, str] | None = None) -> int:
        """Adopt pool instances that survived a control-plane restart.

        Args:
            leased: instance_id -> project_id for instances referenced by
                durable sessions; those are adopted as already leased.

        Returns:
            Number of adopted entries.
        """
        leased = leased or {}
        now = time.time()
        adopted = 0

        for machine in await self._provider.list_all():
            if not self._naming.is_pool_name(machine.name) or machine.is_gone:
                continue
            if machine.id in self._entries:
                continue

            if not machine.is_started:
                if machine.id not in leased:
                    logger.info(
                        "[%s] Destroying non-running pool instance %s (%s)",
                        self.name,
                        machine.id,
                        machine.state,
                    )
                    self._spawn(self._destroy_quietly(machine.id))
                continue

            entry = PoolEntry(
                instance_id=machine.id,
                name=machine.name,
                endpoint=self._endpoint,
                created_at=_created_at(machine, now),
                prewarmed=True,
            )
            if project_id := leased.get(machine.id):
                entry.lease(project_id, now)
            self._entries[machine.id] = entry
            adopted += 1

        self._update_gauges()
        logger.info(
            "[%s] Adopted %d existing pool instances",
            self.name,
            adopted,
            extra={"event": LogEvent.POOL_ADOPTED, "component": Component.POOL},
        )
        return adopted

    # =========================================================================
    # Allocation
    # =========================================================================

    def _pick_candidate(self) -> PoolEntry | None:
        fallback = None
        for entry in self._entries.values():
            if not entry.is_available or entry.instance_id in self._releasing:
                continue
            if entry.prewarmed:
                return entry
            if fallback is None:
                fallback = entry
        return fallback

    async def _probe(self, entry: PoolEntry) -> bool:
        return await is_instance_live(
            self._provider, self._agent, entry.instance_id, entry.endpoint
        )

    def _evict(self, entry: PoolEntry, reason: str) -> None:
        if self._entries.pop(entry.instance_id, None) is None:
            return
        POOL_EVICTIONS_TOTAL.labels(reason=reason).inc()
        logger.warning(
            "[%s] Evicting %s (%s)",
            self.name,
            entry.instance_id,
            reason,
            extra={
                "event": LogEvent.POOL_EVICTED,
                "component": Component.POOL,
                "instance_id": entry.instance_id,
                "reason": reason,
            },
        )
        self._spawn(self._destroy_quietly(entry.instance_id))

    async def allocate(self, project_id: str) -> PoolEntry:
        """Lease a live instance to project_id.

        Raises:
            ProvisioningError: Only from the cold path, when no pooled
                instance was usable and a fresh one could not be booted.
        """
        for attempt in range(1, self._config.allocate_max_attempts + 1):
            entry = self._pick_candidate()
            if entry is None:
                break

            entry.lease(project_id, time.time())
            if await self._probe(entry):
                POOL_ALLOCATIONS_TOTAL.labels(source="warm").inc()
                self._update_gauges()
                logger.info(
                    "[%s] Allocated %s to %s (attempt %d)",
                    self.name,
                    entry.instance_id,
                    project_id,
                    attempt,
                    extra={
                        "event": LogEvent.POOL_ALLOCATED,
                        "component": Component.POOL,
                        "project_id": project_id,
                        "instance_id": entry.instance_id,
                    },
                )
                self._spawn(self.replenish())
                return entry

            self._evict(entry, reason="unhealthy")
        else:
            logger.warning(
                "[%s] No healthy pool instance after %d attempts",
                self.name,
                self._config.allocate_max_attempts,
            )

        logger.info(
            "[%s] Cold provisioning for %s",
            self.name,
            project_id,
            extra={
                "event": LogEvent.POOL_COLD_FALLBACK,
                "component": Component.POOL,
                "project_id": project_id,
            },
        )
        entry = await self.create_warm_vm(allocated_to=project_id)
        POOL_ALLOCATIONS_TOTAL.labels(source="cold").inc()
        return entry

    async def release(self, instance_id: str, keep_dependency_cache: bool = True) -> bool:
        """Return a leased instance to the pool.

        With keep_dependency_cache the project directory is emptied except
        for the dependency cache entries. Cleanup failures are logged; the
        entry is returned to the pool either way.

        Returns:
            True if the entry went from leased to available.
        """
        entry = self._entries.get(instance_id)
        if entry is None:
            logger.warning("[%s] Cannot release %s: not in pool", self.name, instance_id)
            return False
        if entry.is_available or instance_id in self._releasing:
            return False

        previous = entry.allocated_to
        self._releasing.add(instance_id)
        try:
            if keep_dependency_cache:
                await self._soft_clean(entry)
        finally:
            self._releasing.discard(instance_id)

        entry = self._entries.get(instance_id)
        if entry is None:
            return False
        entry.unlease()
        self._update_gauges()
        logger.info(
            "[%s] Released %s from %s",
            self.name,
            instance_id,
            previous,
            extra={
                "event": LogEvent.POOL_RELEASED,
                "component": Component.POOL,
                "instance_id": instance_id,
                "keep_dependency_cache": keep_dependency_cache,
            },
        )
        return True

    def _soft_clean_command(self) -> str:
        keep = " ".join(f"-not -name '{name}'" for name in self._config.keep_on_release)
        return (
            f"find {self._project_dir} -mindepth 1 -maxdepth 1 {keep} -exec rm -rf {{}} +"
        )

    async def _soft_clean(self, entry: PoolEntry) -> None:
        try:
            result = await self._provider.exec(
                entry.endpoint, entry.instance_id, self._soft_clean_command()
            )
            if not result.ok:
                logger.warning(
                    "[%s] Cleanup on %s exited %d", self.name, entry.instance_id, result.exit_code
                )
        except Exception as exc:
            logger.warning("[%s] Cleanup on %s failed: %s", self.name, entry.instance_id, exc)

    # =========================================================================
    # Provisioning
    # =========================================================================

    async def create_warm_vm(self, allocated_to: str | None = None) -> PoolEntry:
        """Boot one pool instance and add it to the pool.

        Raises:
            ProvisioningError: Creation failed or the instance never became
                ready (it is destroyed in that case).
        """
        leased = allocated_to is not None
        if leased:
            self._provisioning_leased += 1
        else:
            self._provisioning += 1
        try:
            return await self._provision(allocated_to)
        finally:
            if leased:
                self._provisioning_leased -= 1
            else:
                self._provisioning -= 1

    async def _provision(self, allocated_to: str | None) -> PoolEntry:
        name = self._naming.pool_machine_name()
        spec = MachineSpec(
            image=self._machine_config.image,
            cpus=self._machine_config.cpus,
            memory_mb=self._machine_config.memory_mb,
            cpu_kind=self._machine_config.cpu_kind,
        )
        machine = await self._provider.create(name, spec)

        try:
            await wait_until_ready(self._provider, self._agent, machine.id, self._endpoint)
        except Exception:
            self._spawn(self._destroy_quietly(machine.id))
            raise

        prewarmed = await self._prewarm(machine.id)

        now = time.time()
        entry = PoolEntry(
            instance_id=machine.id,
            name=machine.name or name,
            endpoint=self._endpoint,
            created_at=now,
            prewarmed=prewarmed,
        )
        if allocated_to is not None:
            entry.lease(allocated_to, now)
        self._entries[machine.id] = entry
        self._update_gauges()
        return entry

    async def _prewarm(self, instance_id: str) -> bool:
        """Best-effort dependency cache population."""
        command = self._config.prewarm_command
        if not command:
            return False
        try:
            result = await self._provider.exec(
                self._endpoint,
                instance_id,
                command,
                timeout=self._config.prewarm_timeout,
            )
        except Exception as exc:
            logger.warning("[%s] Prewarm of %s failed: %s", self.name, instance_id, exc)
            return False
        if not result.ok:
            logger.warning(
                "[%s] Prewarm of %s exited %d: %s",
                self.name,
                instance_id,
                result.exit_code,
                result.stderr[:200],
            )
            return False
        return True

    async def replenish(self) -> ReplenishResult:
        """Create instances until unallocated + in-flight reaches the target.

        Never raises; individual failures are counted.
        """
        deficit = self.target_size - self.available_count - self._provisioning
        if deficit <= 0:
            return ReplenishResult()

        # Reserve before the first await so overlapping calls see the supply
        self._provisioning += deficit
        self._update_gauges()

        async def provision_one() -> PoolEntry:
            try:
                return await self._provision(None)
            finally:
                self._provisioning -= 1

        results = await asyncio.gather(
            *(provision_one() for _ in range(deficit)), return_exceptions=True
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        for exc in failures:
            logger.warning("[%s] Warm instance creation failed: %s", self.name, exc)

        result = ReplenishResult(created=deficit - len(failures), failed=len(failures))
        POOL_REPLENISH_TOTAL.labels(result="created").inc(result.created)
        POOL_REPLENISH_TOTAL.labels(result="failed").inc(result.failed)
        self._update_gauges()
        logger.info(
            "[%s] Replenished: %d created, %d failed (available=%d, target=%d)",
            self.name,
            result.created,
            result.failed,
            self.available_count,
            self.target_size,
            extra={"event": LogEvent.POOL_REPLENISHED, "component": Component.POOL},
        )
        return result

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def evict_stale(self) -> int:
        """Destroy unallocated entries older than max_age."""
        now = time.time()
        stale = [
            e.instance_id
            for e in self._entries.values()
            if e.is_available and now - e.created_at > self._config.max_age
        ]

        evicted = 0
        for instance_id in stale:
            # Re-check: the entry may have been leased since the scan
            entry = self._entries.get(instance_id)
            if entry is None or not entry.is_available or instance_id in self._releasing:
                continue
            del self._entries[instance_id]
            POOL_EVICTIONS_TOTAL.labels(reason="stale").inc()
            evicted += 1
            await self._destroy_quietly(instance_id)

        if evicted:
            self._update_gauges()
            logger.info(
                "[%s] Evicted %d stale entries",
                self.name,
                evicted,
                extra={"event": LogEvent.POOL_EVICTED, "component": Component.POOL},
            )
        return evicted

    def emit_metrics(self) -> PoolStats:
        self._update_gauges()
        stats = self.get_stats()
        logger.info(
            "[%s] Pool: %d available, %d allocated, %d provisioning (target %d)",
            self.name,
            stats.available,
            stats.allocated,
            stats.provisioning,
            stats.target,
            extra={
                "event": LogEvent.POOL_STATS,
                "component": Component.POOL,
                "available": stats.available,
                "allocated": stats.allocated,
            },
        )
        return stats

    async def maintain(self) -> None:
        """One maintenance cycle: replenish, evict stale, report."""
        await self.replenish()
        await self.evict_stale()
        self.emit_metrics()
