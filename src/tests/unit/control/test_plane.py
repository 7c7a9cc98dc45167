"""Tests for ControlPlane wiring and lifecycle."""

import asyncio

from devhub.app.config import (
    AgentConfig,
    MachineConfig,
    PoolConfig,
    SessionConfig,
    Settings,
    SyncConfig,
)
from devhub.control.plane import ControlPlane
from devhub.core.interfaces import Session
from tests.unit.fakes import (
    ENDPOINT,
    FakeAgent,
    FakeMachineProvider,
    InMemoryFileStore,
    InMemorySessionStore,
)


def _settings(pool_config: PoolConfig) -> Settings:
    return Settings(
        machine=MachineConfig(image="registry.test/workspace:latest"),
        agent=AgentConfig(ingress_url=ENDPOINT),
        pool=pool_config,
        session=SessionConfig(reaper_interval=3600.0, reconcile_interval=3600.0),
        sync=SyncConfig(retry_delay=0.0),
    )


def _plane(
    provider: FakeMachineProvider,
    agent: FakeAgent,
    file_store: InMemoryFileStore,
    session_store: InMemorySessionStore,
    settings: Settings,
) -> ControlPlane:
    return ControlPlane(provider, agent, file_store, session_store, settings=settings)


class TestControlPlane:
    async def test_start_adopts_leased_pool_instances(
        self,
        provider: FakeMachineProvider,
        agent: FakeAgent,
        file_store: InMemoryFileStore,
        session_store: InMemorySessionStore,
        pool_config: PoolConfig,
    ) -> None:
        machine = provider.add("ws-pool-1-aaaaaa")
        session_store.sessions["p1"] = Session(
            project_id="p1",
            instance_id=machine.id,
            instance_name=machine.name,
            endpoint=ENDPOINT,
            created_at=1.0,
            last_used=1.0,
        )
        plane = _plane(provider, agent, file_store, session_store, _settings(pool_config))

        await plane.start()
        try:
            assert plane.pool is not None
            assert plane.pool.get_entry(machine.id).allocated_to == "p1"
            assert [loop.name for loop in plane.loops] == ["PoolMaintainer", "Reconciler"]
        finally:
            await plane.stop()

        assert plane.loops == []

    async def test_loops_tick_on_start(
        self,
        provider: FakeMachineProvider,
        agent: FakeAgent,
        file_store: InMemoryFileStore,
        session_store: InMemorySessionStore,
        pool_config: PoolConfig,
    ) -> None:
        plane = _plane(provider, agent, file_store, session_store, _settings(pool_config))

        await plane.start()
        try:
            for _ in range(200):
                if all(loop.ticks >= 1 for loop in plane.loops):
                    break
                await asyncio.sleep(0.01)
            assert all(loop.ticks >= 1 for loop in plane.loops)
            assert plane.pool is not None
            assert plane.pool.available_count == 2
        finally:
            await plane.stop()

    async def test_pool_disabled(
        self,
        provider: FakeMachineProvider,
        agent: FakeAgent,
        file_store: InMemoryFileStore,
        session_store: InMemorySessionStore,
    ) -> None:
        settings = _settings(PoolConfig(enabled=False))
        plane = _plane(provider, agent, file_store, session_store, settings)

        await plane.start()
        try:
            assert plane.pool is None
            assert [loop.name for loop in plane.loops] == ["Reconciler"]
        finally:
            await plane.stop()

        assert provider.created == []
