"""Infrastructure layer - connections behind the stores.

Modules:
- postgresql: Engine and session factory (persistent file store)
- redis: Redis client management
- redis_kv: Durable session store
"""

from devhub.infra.postgresql import close_db, get_session_factory, init_db, ping_db
from devhub.infra.redis import close_redis, get_redis, init_redis, ping_redis
from devhub.infra.redis_kv import RedisSessionStore

__all__ = [
    # PostgreSQL
    "init_db",
    "close_db",
    "ping_db",
    "get_session_factory",
    # Redis
    "init_redis",
    "close_redis",
    "ping_redis",
    "get_redis",
    "RedisSessionStore",
]
