"""Operational endpoints: pool and session introspection."""

from fastapi import APIRouter, Request
from pydantic import BaseModel

from devhub.control.plane import ControlPlane
from devhub.core.domain import ActiveSession

router = APIRouter(tags=["ops"])


# =============================================================================
# Response Models
# =============================================================================


class PoolEntryResponse(BaseModel):
    instance_id: str
    name: str
    allocated_to: str | None
    prewarmed: bool
    age_seconds: int


class PoolResponse(BaseModel):
    """Warm pool snapshot. enabled=False when the pool is turned off."""

    enabled: bool
    total: int = 0
    available: int = 0
    allocated: int = 0
    provisioning: int = 0
    target: int = 0
    active_users: int = 0
    entries: list[PoolEntryResponse] = []


class SessionListResponse(BaseModel):
    items: list[ActiveSession]
    total: int


def _control_plane(request: Request) -> ControlPlane:
    return request.app.state.control_plane


# =============================================================================
# Endpoints
# =============================================================================


@router.get("/pool", response_model=PoolResponse)
async def get_pool(request: Request) -> PoolResponse:
    pool = _control_plane(request).pool
    if pool is None:
        return PoolResponse(enabled=False)

    stats = pool.get_stats()
    return PoolResponse(
        enabled=True,
        total=stats.total,
        available=stats.available,
        allocated=stats.allocated,
        provisioning=stats.provisioning,
        target=stats.target,
        active_users=stats.active_users,
        entries=[PoolEntryResponse(**entry) for entry in stats.entries],
    )


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(request: Request) -> SessionListResponse:
    sessions = await _control_plane(request).orchestrator.get_active_sessions()
    return SessionListResponse(items=sessions, total=len(sessions))
