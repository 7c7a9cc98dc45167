"""Tests for FileSyncEngine."""

import pytest

from devhub.app.config import AgentConfig, SyncConfig
from devhub.control.sync import FileSyncEngine
from devhub.core.errors import BatchLimitExceededError
from devhub.core.interfaces import ExecResult
from tests.unit.fakes import ENDPOINT, FakeAgent, FakeMachineProvider, InMemoryFileStore

INSTANCE = "m-sync"


@pytest.fixture
def engine(
    file_store: InMemoryFileStore,
    agent: FakeAgent,
    provider: FakeMachineProvider,
    sync_config: SyncConfig,
    agent_config: AgentConfig,
) -> FileSyncEngine:
    return FileSyncEngine(
        file_store, agent, provider, config=sync_config, agent_config=agent_config
    )


class TestSyncToVm:
    """sync_to_vm(): bounded-concurrency push."""

    async def test_concurrency_window(
        self, engine: FileSyncEngine, file_store: InMemoryFileStore, agent: FakeAgent
    ) -> None:
        """25 files with a window of 20: never more than 20 writes in flight."""
        file_store.seed("p1", {f"src/file{i}.ts": f"export const n = {i};" for i in range(25)})
        agent.write_delay = 0.01

        result = await engine.sync_to_vm("p1", ENDPOINT, INSTANCE)

        assert result.synced_count == 25
        assert result.failed_count == 0
        assert result.success
        assert agent.max_in_flight <= 20
        assert agent.max_in_flight > 1
        assert len(agent.tree(INSTANCE)) == 25

    async def test_transient_failure_is_retried(
        self, engine: FileSyncEngine, file_store: InMemoryFileStore, agent: FakeAgent
    ) -> None:
        file_store.seed("p1", {"index.js": "console.log(1)"})
        agent.fail_writes["index.js"] = 2

        result = await engine.sync_to_vm("p1", ENDPOINT, INSTANCE)

        assert result.synced_count == 1
        assert agent.tree(INSTANCE)["index.js"] == "console.log(1)"

    async def test_persistent_failure_is_reported(
        self, engine: FileSyncEngine, file_store: InMemoryFileStore, agent: FakeAgent
    ) -> None:
        file_store.seed("p1", {"a.js": "a", "b.js": "b"})
        agent.fail_writes["b.js"] = -1

        result = await engine.sync_to_vm("p1", ENDPOINT, INSTANCE)

        assert result.synced_count == 1
        assert result.failed_count == 1
        assert result.failed_paths == ["b.js"]
        assert not result.success

    async def test_binary_files_excluded(
        self, engine: FileSyncEngine, file_store: InMemoryFileStore, agent: FakeAgent
    ) -> None:
        file_store.seed(
            "p1",
            {"index.html": "<html/>", "logo.PNG": "\x89PNG", "font.woff2": "x", "favicon.ico": "x"},
        )

        result = await engine.sync_to_vm("p1", ENDPOINT, INSTANCE)

        assert result.synced_count == 1
        assert set(agent.tree(INSTANCE)) == {"index.html"}

    async def test_empty_project(self, engine: FileSyncEngine) -> None:
        result = await engine.sync_to_vm("empty", ENDPOINT, INSTANCE)
        assert result.total == 0


class TestPushFile:
    async def test_gives_up_after_retries(
        self, engine: FileSyncEngine, agent: FakeAgent
    ) -> None:
        agent.fail_writes["x.js"] = 3
        assert await engine.push_file(ENDPOINT, INSTANCE, "x.js", "x") is False
        # The next call succeeds: exactly three attempts were consumed
        assert agent.fail_writes["x.js"] == 0


class TestRepair:
    """repair(): re-push files missing on the instance."""

    async def test_pushes_only_missing(
        self, engine: FileSyncEngine, file_store: InMemoryFileStore, agent: FakeAgent
    ) -> None:
        file_store.seed("p1", {"a.js": "a", "b.js": "b", "c.js": "c"})
        agent.tree(INSTANCE).update({"a.js": "a", "node_modules/x/index.js": "x"})

        result = await engine.repair("p1", ENDPOINT, INSTANCE)

        assert result.synced_count == 2
        assert agent.write_counts[(INSTANCE, "a.js")] == 0
        assert agent.write_counts[(INSTANCE, "b.js")] == 1
        assert agent.write_counts[(INSTANCE, "c.js")] == 1

    async def test_nothing_missing(
        self, engine: FileSyncEngine, file_store: InMemoryFileStore, agent: FakeAgent
    ) -> None:
        file_store.seed("p1", {"a.js": "a"})
        agent.tree(INSTANCE)["a.js"] = "a"

        result = await engine.repair("p1", ENDPOINT, INSTANCE)
        assert result.total == 0

    async def test_listing_failure_skips_repair(
        self, engine: FileSyncEngine, file_store: InMemoryFileStore, agent: FakeAgent
    ) -> None:
        file_store.seed("p1", {"a.js": "a"})
        agent.exec_results["find . -type f"] = ExecResult(exit_code=2, stderr="no such dir")

        result = await engine.repair("p1", ENDPOINT, INSTANCE)

        assert result.total == 0
        assert agent.write_counts[(INSTANCE, "a.js")] == 0

    async def test_list_command_runs_in_project_dir(
        self, engine: FileSyncEngine, agent: FakeAgent, agent_config: AgentConfig
    ) -> None:
        await engine.list_remote_files(ENDPOINT, INSTANCE)

        (call,) = agent.commands
        assert call["cwd"] == agent_config.project_dir
        assert "-not -path '*/node_modules/*'" in call["command"]
        assert "-not -path '*/.git/*'" in call["command"]


class TestSaveFiles:
    """save_files(): chunked bulk ingestion."""

    async def test_chunks_under_store_limit(
        self, engine: FileSyncEngine, file_store: InMemoryFileStore
    ) -> None:
        files = [(f"f{i}.ts", "x") for i in range(1000)]

        result = await engine.save_files("p1", files)

        assert result.saved_count == 1000
        assert file_store.put_many_calls == [450, 450, 100]
        assert len(await file_store.list_paths("p1")) == 1000

    async def test_failed_chunk_counts_whole_chunk(
        self, engine: FileSyncEngine, file_store: InMemoryFileStore
    ) -> None:
        file_store.fail_put_many = {2}
        files = [(f"f{i}.ts", "x") for i in range(1000)]

        result = await engine.save_files("p1", files)

        assert result.saved_count == 550
        assert result.failed_count == 450
        assert len(file_store.put_many_calls) == 3

    async def test_ico_is_ignored(
        self, engine: FileSyncEngine, file_store: InMemoryFileStore
    ) -> None:
        result = await engine.save_files("p1", [("favicon.ico", "x"), ("app.js", "y")])

        assert result.saved_count == 1
        assert result.ignored_count == 1
        assert await file_store.list_paths("p1") == {"app.js"}

    async def test_store_limit_caps_configured_batch(
        self,
        file_store: InMemoryFileStore,
        agent: FakeAgent,
        provider: FakeMachineProvider,
    ) -> None:
        """A batch_limit above the store's transaction limit is clamped."""
        engine = FileSyncEngine(
            file_store, agent, provider, config=SyncConfig(batch_limit=10_000)
        )
        result = await engine.save_files("p1", [(f"f{i}", "x") for i in range(600)])

        assert result.saved_count == 600
        assert file_store.put_many_calls == [500, 100]

    async def test_store_rejects_oversized_batch(self, file_store: InMemoryFileStore) -> None:
        with pytest.raises(BatchLimitExceededError):
            await file_store.put_many("p1", [(f"f{i}", "x") for i in range(501)])
