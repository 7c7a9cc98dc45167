"""Prometheus metrics definitions for the control plane.

The warm pool and session cache live in one process, so metrics use the
default registry (no multiprocess mode).
"""

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Histogram Buckets
# =============================================================================

# MEDIUM: agent calls, file pushes, repository downloads (5ms ~ 60s)
_BUCKETS_MEDIUM = (
    0.005, 0.01, 0.02, 0.04, 0.09,
    0.18, 0.36, 0.73, 1.5, 3,
    6.2, 12.7, 26, 53,
)  # 14 buckets

# SLOW: instance acquisition incl. cold boot (100ms ~ 180s)
_BUCKETS_SLOW = (
    0.1, 0.2, 0.39, 0.77, 1.5,
    3, 6, 12, 23, 46,
    91, 180,
)  # 12 buckets

# =============================================================================
# Warm Pool
# =============================================================================

POOL_ENTRIES = Gauge(
    "devhub_pool_entries",
    "Warm pool entries by lease state",
    ["state"],  # available, allocated
)

POOL_PROVISIONING = Gauge(
    "devhub_pool_provisioning",
    "Warm pool instances currently being provisioned",
)

POOL_TARGET_SIZE = Gauge(
    "devhub_pool_target_size",
    "Current target number of unallocated pool entries",
)

POOL_ALLOCATIONS_TOTAL = Counter(
    "devhub_pool_allocations_total",
    "Pool allocations by source",
    ["source"],  # warm, cold
)

POOL_EVICTIONS_TOTAL = Counter(
    "devhub_pool_evictions_total",
    "Pool entries evicted",
    ["reason"],  # unhealthy, stale
)

POOL_REPLENISH_TOTAL = Counter(
    "devhub_pool_replenish_total",
    "Pool instances created by replenishment",
    ["result"],  # created, failed
)

# =============================================================================
# Sessions
# =============================================================================

VM_ACQUIRE_DURATION = Histogram(
    "devhub_vm_acquire_duration_seconds",
    "Time to hand a live instance to a project",
    ["path"],  # cache, store, adopted, pool, cold
    buckets=_BUCKETS_SLOW,
)

VM_PROVISION_TOTAL = Counter(
    "devhub_vm_provision_total",
    "Instance provisioning attempts",
    ["result"],  # success, failure
)

SESSIONS_ACTIVE = Gauge(
    "devhub_sessions_active",
    "Sessions held in the in-process cache",
)

IDLE_REAPED_TOTAL = Counter(
    "devhub_idle_reaped_total",
    "Sessions stopped by the idle reaper",
)

RECONCILE_ADOPTED_TOTAL = Counter(
    "devhub_reconcile_adopted_total",
    "Orphan instances adopted by reconciliation",
)

RECONCILE_STALE_TOTAL = Counter(
    "devhub_reconcile_stale_total",
    "Stored sessions removed because their instance is gone",
)

# =============================================================================
# File Sync
# =============================================================================

SYNC_FILES_TOTAL = Counter(
    "devhub_sync_files_total",
    "Files pushed to instances",
    ["result"],  # synced, failed
)

SYNC_DURATION = Histogram(
    "devhub_sync_duration_seconds",
    "Duration of a full project sync",
    buckets=_BUCKETS_MEDIUM,
)

REPAIR_FILES_TOTAL = Counter(
    "devhub_repair_files_total",
    "Files re-pushed by integrity repair",
)

SAVE_FILES_TOTAL = Counter(
    "devhub_save_files_total",
    "Files written by bulk ingestion",
    ["result"],  # saved, failed, ignored
)
