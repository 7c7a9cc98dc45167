"""FastAPI application entry point."""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from devhub import __version__
from devhub.adapters import FlyMachineProvider, GitHubArchiveClient, PostgresFileStore
from devhub.agent.client import HttpAgentClient
from devhub.app.api.v1 import ops_router
from devhub.app.config import get_settings
from devhub.app.logging import setup_logging
from devhub.app.metrics import get_metrics_response
from devhub.control.plane import ControlPlane
from devhub.core.errors import DevHubError
from devhub.core.logging_schema import LogEvent
from devhub.infra import (
    RedisSessionStore,
    close_db,
    close_redis,
    get_redis,
    get_session_factory,
    init_db,
    init_redis,
    ping_db,
    ping_redis,
)

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()

    await init_db()
    await init_redis()

    agent = HttpAgentClient(settings.agent, settings.machine)
    provider = FlyMachineProvider(agent, settings.machine)
    repositories = GitHubArchiveClient(settings.repository)
    control_plane = ControlPlane(
        provider,
        agent,
        PostgresFileStore(get_session_factory()),
        RedisSessionStore(get_redis(), settings.session),
        repositories=repositories,
        settings=settings,
    )
    await control_plane.start()
    app.state.control_plane = control_plane

    logger.info("Starting application", extra={"event": LogEvent.APP_STARTED})

    yield

    logger.info("Shutting down application", extra={"event": LogEvent.APP_STOPPED})
    await control_plane.stop()
    await repositories.close()
    await provider.close()
    await agent.close()
    await close_redis()
    await close_db()


app = FastAPI(title="DevHub", version=__version__, lifespan=lifespan)


@app.exception_handler(DevHubError)
async def devhub_error_handler(request: Request, exc: DevHubError) -> JSONResponse:
    """Handle DevHubError exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response().model_dump(),
    )


app.include_router(ops_router, prefix="/api/v1")


async def _check_service(ping: Callable[[], Awaitable[None]]) -> str:
    try:
        await ping()
        return "connected"
    except RuntimeError:
        return "not initialized"
    except Exception as e:
        return f"error: {e}"


@app.get("/health")
async def health(request: Request) -> dict:
    """Store connectivity plus control plane loop and pool status."""
    postgres, redis = await asyncio.gather(
        _check_service(ping_db),
        _check_service(ping_redis),
    )
    services = {"postgres": postgres, "redis": redis}

    control_plane: ControlPlane | None = getattr(request.app.state, "control_plane", None)
    plane: dict = {"running": control_plane is not None}
    if control_plane is not None:
        plane["loops"] = {loop.name: loop.ticks for loop in control_plane.loops}
        if control_plane.pool is not None:
            plane["pool_available"] = control_plane.pool.available_count

    is_degraded = any(s != "connected" for s in services.values()) or not plane["running"]
    return {
        "status": "degraded" if is_degraded else "ok",
        "version": __version__,
        "services": services,
        "control_plane": plane,
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus metrics endpoint."""
    return get_metrics_response()
