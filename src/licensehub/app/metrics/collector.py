"""Prometheus metrics definitions."""

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Histogram Buckets (optimized by latency category)
# =============================================================================

# MEDIUM: API calls, dispatch actions, sweep ticks (5ms ~ 60s)
_BUCKETS_MEDIUM = (
    0.005, 0.01, 0.02, 0.04, 0.09,
    0.18, 0.36, 0.73, 1.5, 3,
    6.2, 12.7, 26, 53,
)  # 14 buckets

# SLOW: task launches waiting for readiness (100ms ~ 6min)
_BUCKETS_SLOW = (
    0.1, 0.5, 1, 2.5, 5,
    10, 20, 40, 60, 120,
    240, 360,
)  # 12 buckets

# =============================================================================
# HTTP Metrics
# =============================================================================

HTTP_REQUESTS_TOTAL = Counter(
    "licensehub_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

HTTP_REQUEST_DURATION = Histogram(
    "licensehub_http_request_duration_seconds",
    "HTTP request duration",
    ["method", "endpoint"],
    buckets=_BUCKETS_MEDIUM,
)

# =============================================================================
# Dispatch Metrics
# =============================================================================

DISPATCH_TOTAL = Counter(
    "licensehub_dispatch_total",
    "Dispatched actions by result status code",
    ["action", "status"],
)

DISPATCH_DURATION = Histogram(
    "licensehub_dispatch_duration_seconds",
    "Dispatched action duration",
    ["action"],
    buckets=_BUCKETS_MEDIUM,
)

# =============================================================================
# Lifecycle / Scheduling Metrics
# =============================================================================

INSTANCES_BY_STATUS = Gauge(
    "licensehub_instances",
    "Instances by status",
    ["status"],
)

INSTANCE_START_DURATION = Histogram(
    "licensehub_instance_start_duration_seconds",
    "Time from task launch to routed and running",
    buckets=_BUCKETS_SLOW,
)

SESSIONS_SCHEDULED_TOTAL = Counter(
    "licensehub_sessions_scheduled_total",
    "Sessions scheduled",
    ["license_type"],
)

PREEMPTIONS_TOTAL = Counter(
    "licensehub_preemptions_total",
    "On-demand instances stopped to make room for a scheduled session",
)

CONDITIONAL_WRITE_SKIPS_TOTAL = Counter(
    "licensehub_conditional_write_skips_total",
    "Conditional writes skipped because the precondition no longer held",
    ["entity"],
)

# =============================================================================
# Sweep Metrics
# =============================================================================

SWEEP_DURATION = Histogram(
    "licensehub_sweep_duration_seconds",
    "Sweep tick duration",
    ["sweep"],
    buckets=_BUCKETS_MEDIUM,
)

SWEEP_ITEMS_TOTAL = Counter(
    "licensehub_sweep_items_total",
    "Items processed by sweeps",
    ["sweep", "result"],
)

SESSION_PREP_FAILURES_TOTAL = Counter(
    "licensehub_session_prep_failures_total",
    "Session preparation attempts that failed",
)

# =============================================================================
# Circuit Breaker Metrics
# =============================================================================

CIRCUIT_BREAKER_STATE = Gauge(
    "licensehub_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["circuit"],
)

CIRCUIT_BREAKER_CALLS_TOTAL = Counter(
    "licensehub_circuit_breaker_calls_total",
    "Calls through circuit breaker",
    ["circuit", "result"],
)

CIRCUIT_BREAKER_REJECTIONS_TOTAL = Counter(
    "licensehub_circuit_breaker_rejections_total",
    "Calls rejected by open circuit",
    ["circuit"],
)
