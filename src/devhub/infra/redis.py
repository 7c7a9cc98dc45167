"""Redis client for the durable session store."""

import logging
from urllib.parse import urlsplit

import redis.asyncio as redis

from devhub.app.config import RedisConfig, get_settings
from devhub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

_client: redis.Redis | None = None


async def init_redis(config: RedisConfig | None = None) -> None:
    """Connect and verify with PING.

    Session records are JSON strings, so responses are decoded to str.
    """
    global _client

    config = config or get_settings().redis
    host = urlsplit(config.url).hostname or config.url

    client = redis.from_url(
        config.url,
        decode_responses=True,
        max_connections=config.max_connections,
    )
    try:
        await client.ping()
    except Exception as exc:
        logger.error(
            "Session store unreachable: %s",
            host,
            extra={"event": LogEvent.STORE_ERROR, "store": "redis", "error": str(exc)},
        )
        await client.aclose()
        raise

    _client = client
    logger.info(
        "Session store ready: %s (max_connections=%d)",
        host,
        config.max_connections,
        extra={"event": LogEvent.STORE_CONNECTED, "store": "redis"},
    )


async def close_redis() -> None:
    global _client

    if _client is None:
        return
    await _client.aclose()
    _client = None
    logger.info(
        "Session store closed",
        extra={"event": LogEvent.STORE_DISCONNECTED, "store": "redis"},
    )


async def ping_redis() -> None:
    """PING for /health. Raises RuntimeError before init_redis."""
    await get_redis().ping()


def get_redis() -> redis.Redis:
    if _client is None:
        raise RuntimeError("Redis not initialized")
    return _client
