"""Per-request access log, HTTP metrics and X-Trace-ID propagation."""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from licensehub.app.config import get_settings
from licensehub.app.logging import clear_trace_context, set_trace_id
from licensehub.app.metrics.collector import HTTP_REQUEST_DURATION, HTTP_REQUESTS_TOTAL
from licensehub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

TRACE_HEADER = "X-Trace-ID"

# Anything else is reported as "other" to bound label cardinality
_ENDPOINTS = frozenset({"/api/v1/dispatch", "/api/v1/webhooks/donation"})
_QUIET_PATHS = frozenset({"/health", "/metrics"})


class LoggingMiddleware(BaseHTTPMiddleware):
    """Binds a trace ID for the request and logs one line when it finishes.

    The caller's X-Trace-ID is reused when sent and always echoed back.
    Health and metrics scrapes are neither logged nor counted.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        trace_id = set_trace_id(request.headers.get(TRACE_HEADER))
        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "%s %s failed",
                request.method,
                request.url.path,
                extra={
                    "event": LogEvent.REQUEST_FAILED,
                    "duration_ms": round((time.monotonic() - started) * 1000, 1),
                },
            )
            raise
        finally:
            clear_trace_context()

        if request.url.path not in _QUIET_PATHS:
            self._observe(request, response.status_code, time.monotonic() - started, trace_id)

        response.headers[TRACE_HEADER] = trace_id
        return response

    def _observe(self, request: Request, status: int, elapsed: float, trace_id: str) -> None:
        path = request.url.path
        endpoint = path if path in _ENDPOINTS else "other"
        HTTP_REQUESTS_TOTAL.labels(method=request.method, endpoint=endpoint, status=str(status)).inc()
        HTTP_REQUEST_DURATION.labels(method=request.method, endpoint=endpoint).observe(elapsed)

        duration_ms = round(elapsed * 1000, 1)
        fields = {
            "method": request.method,
            "path": path,
            "status": status,
            "duration_ms": duration_ms,
            "trace_id": trace_id,
        }
        logger.info("%s %s %d", request.method, path, status, extra={"event": LogEvent.REQUEST_COMPLETE, **fields})

        threshold_ms = get_settings().logging.slow_threshold_ms
        if duration_ms > threshold_ms:
            logger.warning(
                "Slow request: %s %s took %.0fms",
                request.method,
                path,
                duration_ms,
                extra={"event": LogEvent.REQUEST_SLOW, "threshold_ms": threshold_ms, **fields},
            )
