"""Logging field schema - v1.0

Standard fields (added to all logs):
- schema_version: Log schema version
- service: Service name (devhub-control-plane)
- component: Component name (POOL, SESSION, SYNC, REAPER, RECONCILE, API)
- event: Event type (pool_allocated, sync_complete, etc.)
- trace_id: Operation trace ID
- duration_ms: Duration in milliseconds

High cardinality fields (OK in logs, NOT in metric labels):
- project_id: Project ID
- instance_id: Machine ID
- path: File path
"""

from enum import StrEnum


class LogEvent(StrEnum):
    """Standard log event types.

    Use these event types in the 'event' extra field for consistent
    log filtering and analysis.
    """

    # Warm pool events
    POOL_ALLOCATED = "pool_allocated"
    POOL_COLD_FALLBACK = "pool_cold_fallback"
    POOL_EVICTED = "pool_evicted"
    POOL_RELEASED = "pool_released"
    POOL_REPLENISHED = "pool_replenished"
    POOL_ADOPTED = "pool_adopted"
    POOL_STATS = "pool_stats"

    # Instance lifecycle events
    VM_PROVISIONED = "vm_provisioned"
    VM_ADOPTED = "vm_adopted"
    VM_REUSED = "vm_reused"
    VM_STOPPED = "vm_stopped"
    VM_NOT_READY = "vm_not_ready"

    # File sync events
    SYNC_COMPLETE = "sync_complete"
    SYNC_FILE_FAILED = "sync_file_failed"
    REPAIR_COMPLETE = "repair_complete"
    SAVE_COMPLETE = "save_complete"
    SAVE_CHUNK_FAILED = "save_chunk_failed"

    # Session events
    IDLE_REAPED = "idle_reaped"
    RECONCILE_COMPLETE = "reconcile_complete"
    ORPHAN_ADOPTED = "orphan_adopted"
    STALE_SESSION_REMOVED = "stale_session_removed"
    REPOSITORY_CLONED = "repository_cloned"
    PREVIEW_STARTED = "preview_started"

    # Loop events
    OPERATION_FAILED = "operation_failed"

    # Lifecycle events
    APP_STARTED = "app_started"
    APP_STOPPED = "app_stopped"
    STORE_CONNECTED = "store_connected"
    STORE_DISCONNECTED = "store_disconnected"
    STORE_ERROR = "store_error"


class ErrorClass(StrEnum):
    """Error classification for structured error logging.

    Use these in the 'error_class' extra field to enable
    filtering by error type and setting up alerts.
    """

    TRANSIENT = "transient"  # Retryable (network timeout, temp failure)
    PERMANENT = "permanent"  # Not retryable (invalid input, not found)
    TIMEOUT = "timeout"
    LIVENESS = "liveness"  # Instance failed a health probe


class Component(StrEnum):
    """Component identifiers for log filtering."""

    POOL = "pool"  # WarmPoolManager
    SESSION = "session"  # SessionOrchestrator
    SYNC = "sync"  # FileSyncEngine
    REAPER = "reaper"  # IdleReaper
    RECONCILE = "reconcile"  # Reconciler
    API = "api"
