"""Redis key-value store for durable sessions.

Key: vm:{project_id}
Value: Session JSON
Expiry: 24h safety net. The idle reaper and reconciliation delete keys
long before that; the expiry only bounds leaks from crashed writers.
"""

import logging

import redis.asyncio as redis
from pydantic import ValidationError

from devhub.app.config import SessionConfig, get_settings
from devhub.core.interfaces import Session, SessionStore

logger = logging.getLogger(__name__)


class RedisSessionStore(SessionStore):
    """Stores one Session per project as a JSON string."""

    def __init__(self, client: redis.Redis, config: SessionConfig | None = None) -> None:
        config = config or get_settings().session
        self._client = client
        self._prefix = config.key_prefix
        self._ttl = config.store_ttl

    def _key(self, project_id: str) -> str:
        return f"{self._prefix}{project_id}"

    def _decode(self, key: str, raw: str | None) -> Session | None:
        if raw is None:
            return None
        try:
            return Session.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Discarding malformed session %s: %s", key, exc)
            return None

    async def get(self, project_id: str) -> Session | None:
        key = self._key(project_id)
        return self._decode(key, await self._client.get(key))

    async def put(self, session: Session) -> None:
        await self._client.set(
            self._key(session.project_id), session.model_dump_json(), ex=self._ttl
        )

    async def delete(self, project_id: str) -> None:
        await self._client.delete(self._key(project_id))

    async def list_all(self) -> list[Session]:
        """All stored sessions (SCAN, then one MGET)."""
        keys = [key async for key in self._client.scan_iter(match=f"{self._prefix}*")]
        if not keys:
            return []

        values = await self._client.mget(keys)
        sessions = []
        for key, raw in zip(keys, values):
            session = self._decode(key, raw)
            if session is not None:
                sessions.append(session)
        logger.debug("Loaded %d sessions from %d keys", len(sessions), len(keys))
        return sessions
