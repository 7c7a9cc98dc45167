"""Shared fixtures for control plane unit tests."""

import pytest

from devhub.app.config import (
    AgentConfig,
    MachineConfig,
    PoolConfig,
    PreviewConfig,
    SessionConfig,
    SyncConfig,
)
from devhub.core.naming import ResourceNaming
from tests.unit.fakes import (
    ENDPOINT,
    FakeAgent,
    FakeMachineProvider,
    InMemoryFileStore,
    InMemorySessionStore,
)


@pytest.fixture
def agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
def provider(agent: FakeAgent) -> FakeMachineProvider:
    return FakeMachineProvider(agent)


@pytest.fixture
def file_store() -> InMemoryFileStore:
    return InMemoryFileStore()


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def machine_config() -> MachineConfig:
    return MachineConfig(image="registry.test/workspace:latest")


@pytest.fixture
def agent_config() -> AgentConfig:
    return AgentConfig(ingress_url=ENDPOINT)


@pytest.fixture
def pool_config() -> PoolConfig:
    # No prewarm: exec history stays limited to what each test triggers
    return PoolConfig(base_size=2, max_size=5, prewarm_command="", allocate_max_attempts=3)


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(idle_timeout=60.0, reaper_interval=3600.0)


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(retry_delay=0.0)


@pytest.fixture
def preview_config() -> PreviewConfig:
    return PreviewConfig()


@pytest.fixture
def naming(session_config: SessionConfig, pool_config: PoolConfig) -> ResourceNaming:
    return ResourceNaming(session_config, pool_config)
