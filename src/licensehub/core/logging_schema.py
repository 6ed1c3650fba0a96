"""Logging field schema - v1.0

Standard fields (added to all logs):
- schema_version: Log schema version
- service: Service name (licensehub)
- component: Component name (lifecycle, scheduler, prep, shutdown, api)
- event: Event type (instance_started, session_prep_failed, etc.)
- trace_id: Request or sweep tick trace ID

High cardinality fields (OK in logs, NOT in metric labels):
- user_id: Instance owner
- session_id: Scheduled session ID
- license_id: License pool ID
"""

from enum import StrEnum


class LogEvent(StrEnum):
    """Standard log event types.

    Use these event types in the 'event' extra field for consistent
    log filtering and analysis.
    """

    # Instance lifecycle
    INSTANCE_CREATED = "instance_created"
    INSTANCE_STARTED = "instance_started"
    INSTANCE_STOPPED = "instance_stopped"
    INSTANCE_DESTROYED = "instance_destroyed"
    INSTANCE_RECONCILED = "instance_reconciled"
    VERSION_UPDATED = "version_updated"

    # Scheduling
    SESSION_SCHEDULED = "session_scheduled"
    SESSION_ACTIVATED = "session_activated"
    SESSION_COMPLETED = "session_completed"
    SESSION_CANCELLED = "session_cancelled"
    SESSION_EXPIRED = "session_expired"
    SESSION_PREP_FAILED = "session_prep_failed"
    LICENSE_REBOUND = "license_rebound"
    LICENSE_PREEMPTED = "license_preempted"
    POOL_ACTIVATED = "pool_activated"
    POOL_DEACTIVATED = "pool_deactivated"

    # State store
    CONDITIONAL_WRITE_SKIPPED = "conditional_write_skipped"
    DB_CONNECTED = "db_connected"
    DB_ERROR = "db_error"

    # Sweeps
    SWEEP_TICK = "sweep_tick"
    SWEEP_SLOW = "sweep_slow"

    # Cascades / external calls
    CLEANUP_STEP_FAILED = "cleanup_step_failed"
    UPSTREAM_ERROR = "upstream_error"
    OPERATION_TIMEOUT = "operation_timeout"
    STATE_CHANGED = "state_changed"

    # Usage
    USAGE_RECORDED = "usage_recorded"
    DONATION_RECEIVED = "donation_received"

    # Admin
    ADMIN_ACTION = "admin_action"

    # Lifecycle events
    APP_STARTED = "app_started"
    APP_STOPPED = "app_stopped"

    # API events
    REQUEST_COMPLETE = "request_complete"
    REQUEST_FAILED = "request_failed"
    REQUEST_SLOW = "request_slow"
    DISPATCH_FAILED = "dispatch_failed"


class ErrorClass(StrEnum):
    """Error classification for structured error logging."""

    TRANSIENT = "transient"  # Retryable (throttling, 5xx)
    PERMANENT = "permanent"  # Not retryable (access denied, not found)
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"


class Component(StrEnum):
    """Component identifiers for log filtering."""

    LIFECYCLE = "lifecycle"
    SCHEDULER = "scheduler"
    PREP = "prep"  # Session Preparation Sweep
    SHUTDOWN = "shutdown"  # Auto-Shutdown Sweep
    USAGE = "usage"
    ADMIN = "admin"
    API = "api"
    ADAPTER = "adapter"
