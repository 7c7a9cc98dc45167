"""Warm pool domain types."""

from dataclasses import dataclass, field


@dataclass
class PoolEntry:
    """A pre-booted instance tracked by the warm pool.

    Mutable on purpose: allocate/release flip allocated_to in place, and
    every check-then-set on it happens without an intervening await.
    """

    instance_id: str
    name: str
    endpoint: str
    created_at: float
    allocated_to: str | None = None
    allocated_at: float | None = None
    prewarmed: bool = False

    @property
    def is_available(self) -> bool:
        return self.allocated_to is None

    def lease(self, project_id: str, now: float) -> None:
        self.allocated_to = project_id
        self.allocated_at = now

    def unlease(self) -> None:
        self.allocated_to = None
        self.allocated_at = None


@dataclass(frozen=True)
class ReplenishResult:
    created: int = 0
    failed: int = 0


@dataclass(frozen=True)
class PoolStats:
    total: int
    available: int
    allocated: int
    provisioning: int
    target: int
    active_users: int
    entries: list[dict] = field(default_factory=list)
