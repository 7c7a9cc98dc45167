"""Control Plane - pool, sessions, sync and background loops.

Loops:
- PoolMaintainer: replenish, evict stale, report (pool.interval)
- Reconciler: adopt orphans, drop stale sessions (session.reconcile_interval)
- IdleReaper: one watch per project, owned by the orchestrator
"""

from devhub.control.loops import PeriodicLoop, PoolMaintainer, Reconciler
from devhub.control.orchestrator import SessionOrchestrator, with_host_binding
from devhub.control.plane import ControlPlane
from devhub.control.pool import WarmPoolManager
from devhub.control.reaper import IdleReaper
from devhub.control.sync import FileSyncEngine

__all__ = [
    "ControlPlane",
    "WarmPoolManager",
    "SessionOrchestrator",
    "FileSyncEngine",
    "IdleReaper",
    "PeriodicLoop",
    "PoolMaintainer",
    "Reconciler",
    "with_host_binding",
]
