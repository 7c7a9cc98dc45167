"""Unit tests for RedisSessionStore."""

from collections.abc import AsyncIterator
from unittest.mock import AsyncMock, MagicMock

import pytest

from devhub.app.config import SessionConfig
from devhub.core.interfaces import Session
from devhub.infra.redis_kv import RedisSessionStore


def _session(project_id: str = "p1", instance_id: str = "m1") -> Session:
    return Session(
        project_id=project_id,
        instance_id=instance_id,
        instance_name=f"ws-{project_id}",
        endpoint="https://devhub-workspaces.test",
        created_at=100.0,
        last_used=200.0,
    )


@pytest.fixture
def client() -> MagicMock:
    redis = MagicMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock()
    redis.delete = AsyncMock()
    redis.mget = AsyncMock(return_value=[])
    return redis


@pytest.fixture
def store(client: MagicMock) -> RedisSessionStore:
    return RedisSessionStore(client, SessionConfig(key_prefix="vm:", store_ttl=3600))


def _scan(keys: list[str]):
    async def scan_iter(match: str) -> AsyncIterator[str]:
        for key in keys:
            yield key

    return scan_iter


class TestRedisSessionStore:
    async def test_put_sets_json_with_expiry(
        self, store: RedisSessionStore, client: MagicMock
    ) -> None:
        session = _session()
        await store.put(session)

        client.set.assert_awaited_once_with(
            "vm:p1", session.model_dump_json(), ex=3600
        )

    async def test_get_decodes(self, store: RedisSessionStore, client: MagicMock) -> None:
        client.get.return_value = _session().model_dump_json()

        assert await store.get("p1") == _session()
        client.get.assert_awaited_once_with("vm:p1")

    async def test_get_missing(self, store: RedisSessionStore) -> None:
        assert await store.get("p1") is None

    async def test_get_malformed(self, store: RedisSessionStore, client: MagicMock) -> None:
        client.get.return_value = '{"project_id": "p1"}'
        assert await store.get("p1") is None

    async def test_delete(self, store: RedisSessionStore, client: MagicMock) -> None:
        await store.delete("p1")
        client.delete.assert_awaited_once_with("vm:p1")

    async def test_list_all(self, store: RedisSessionStore, client: MagicMock) -> None:
        client.scan_iter = _scan(["vm:p1", "vm:p2", "vm:p3"])
        client.mget.return_value = [
            _session("p1", "m1").model_dump_json(),
            "not json",
            None,
        ]

        sessions = await store.list_all()

        assert [s.project_id for s in sessions] == ["p1"]
        client.mget.assert_awaited_once_with(["vm:p1", "vm:p2", "vm:p3"])

    async def test_list_all_empty(self, store: RedisSessionStore, client: MagicMock) -> None:
        client.scan_iter = _scan([])

        assert await store.list_all() == []
        client.mget.assert_not_awaited()
