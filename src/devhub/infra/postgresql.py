"""Postgres backing for the persistent file store.

One async engine per process. init_db creates the project_files and
projects tables when missing; there are no migrations.
"""

import logging

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from devhub.app.config import DatabaseConfig, get_settings
from devhub.core import models  # noqa: F401  (registers tables on SQLModel.metadata)
from devhub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _create_engine(config: DatabaseConfig) -> AsyncEngine:
    # Bulk saves hold a connection per chunk; recycle before server-side idle kills
    return create_async_engine(
        config.url,
        echo=config.echo,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_recycle=1800,
        pool_pre_ping=True,
    )


async def init_db(config: DatabaseConfig | None = None) -> None:
    """Connect, create missing tables and build the session factory."""
    global _engine, _session_factory

    config = config or get_settings().database
    target = make_url(config.url).render_as_string(hide_password=True)

    engine = _create_engine(config)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
    except Exception as exc:
        logger.error(
            "File store database unreachable: %s",
            target,
            extra={"event": LogEvent.STORE_ERROR, "store": "postgres", "error": str(exc)},
        )
        await engine.dispose()
        raise

    _engine = engine
    _session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    logger.info(
        "File store database ready: %s (pool=%d+%d)",
        target,
        config.pool_size,
        config.max_overflow,
        extra={"event": LogEvent.STORE_CONNECTED, "store": "postgres"},
    )


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info(
        "File store database closed",
        extra={"event": LogEvent.STORE_DISCONNECTED, "store": "postgres"},
    )


async def ping_db() -> None:
    """Round-trip check for /health. Raises RuntimeError before init_db."""
    if _engine is None:
        raise RuntimeError("Database not initialized")
    async with _engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized")
    return _session_factory
