"""Domain models."""

from devhub.core.domain.pool import PoolEntry, PoolStats, ReplenishResult
from devhub.core.domain.project import (
    ActiveSession,
    CloneResult,
    PreviewResult,
    ProjectInfo,
    ReconcileResult,
)
from devhub.core.domain.sync import BundleFile, SaveResult, SyncResult

__all__ = [
    "PoolEntry",
    "PoolStats",
    "ReplenishResult",
    "ProjectInfo",
    "PreviewResult",
    "CloneResult",
    "ActiveSession",
    "ReconcileResult",
    "BundleFile",
    "SyncResult",
    "SaveResult",
]
