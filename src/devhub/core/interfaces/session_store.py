"""Durable session store interface.

Survives control-plane restarts. Idle-timeout and reconciliation
decisions read from here, never from the in-process cache.
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel


class Session(BaseModel):
    """Binding of a project to a live instance."""

    project_id: str
    instance_id: str
    instance_name: str
    endpoint: str
    created_at: float
    last_used: float

    model_config = {"frozen": True}

    def touched(self, now: float) -> "Session":
        return self.model_copy(update={"last_used": now})

    def idle_seconds(self, now: float) -> float:
        return max(0.0, now - self.last_used)


class SessionStore(ABC):
    """Interface to the durable session store."""

    @abstractmethod
    async def get(self, project_id: str) -> Session | None: ...

    @abstractmethod
    async def put(self, session: Session) -> None: ...

    @abstractmethod
    async def delete(self, project_id: str) -> None: ...

    @abstractmethod
    async def list_all(self) -> list[Session]: ...
