"""JSON logging: trace/action context, secret redaction and storm control.

Every dispatched action and every sweep tick runs under a trace ID; the
dispatcher additionally binds the action name and calling user so service
logs can be correlated without threading those values through every call.
"""

import logging
import sys
import time
from collections import deque
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pythonjsonlogger import jsonlogger

from licensehub.app.config import get_settings

_trace_id: ContextVar[str | None] = ContextVar("trace_id", default=None)
_action: ContextVar[str | None] = ContextVar("action", default=None)
_caller: ContextVar[str | None] = ContextVar("caller", default=None)

# Extra keys whose values never reach the log stream
REDACTED_KEYS = frozenset({
    "password",
    "license_password",
    "licensePassword",
    "admin_key",
    "secret_access_key",
    "bucket_secret_access_key",
    "verification_token",
    "verificationToken",
})
REDACTED = "***"


def get_trace_id() -> str | None:
    return _trace_id.get()


def set_trace_id(trace_id: str | None = None) -> str:
    """Bind a trace ID to the current context, generating one if not given."""
    tid = trace_id or uuid4().hex
    _trace_id.set(tid)
    return tid


def bind_action(action: str, caller: str | None) -> None:
    """Tag subsequent logs in this context with the dispatched action."""
    _action.set(action)
    _caller.set(caller)


def clear_trace_context() -> None:
    _trace_id.set(None)
    _action.set(None)
    _caller.set(None)


def redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: REDACTED if k in REDACTED_KEYS else redact(v) for k, v in value.items()}
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value


class RateLimitFilter(logging.Filter):
    """Drop repeats of one log site beyond ``rate_per_minute``.

    A log site is the logger plus its ``event`` (or message template when the
    record has no event). ERROR and above always pass, so a failed session
    preparation is never hidden. The first dropped record of a burst is let
    through with a marker so the suppression itself is visible.
    """

    WINDOW = 60.0

    def __init__(self, rate_per_minute: int = 100) -> None:
        super().__init__()
        self.rate_per_minute = rate_per_minute
        self._seen: dict[tuple[str, str], deque[float]] = {}
        self._suppressing: set[tuple[str, str]] = set()

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.ERROR:
            return True

        site = (record.name, str(getattr(record, "event", None) or record.msg))
        now = time.monotonic()
        stamps = self._seen.setdefault(site, deque())
        while stamps and now - stamps[0] >= self.WINDOW:
            stamps.popleft()

        if len(stamps) < self.rate_per_minute:
            self._suppressing.discard(site)
            stamps.append(now)
            return True

        if site in self._suppressing:
            return False
        self._suppressing.add(site)
        record.msg = f"[RATE LIMITED] {record.msg} (max {self.rate_per_minute}/min)"
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """One JSON object per record.

    Standard fields: timestamp, level, logger, schema_version, service and,
    when bound, trace_id, action and caller_id.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        settings = get_settings()
        self._schema_version = settings.logging.schema_version
        self._service = settings.logging.service_name

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["schema_version"] = self._schema_version
        log_record["service"] = self._service

        for key, var in (("trace_id", _trace_id), ("action", _action), ("caller_id", _caller)):
            value = var.get()
            if value is not None:
                log_record.setdefault(key, value)

        for key in REDACTED_KEYS.intersection(log_record):
            log_record[key] = REDACTED
        for key, value in log_record.items():
            if isinstance(value, (dict, list)):
                log_record[key] = redact(value)

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        log_record.pop("color_message", None)


def setup_logging(level: int | None = None) -> None:
    """Install the JSON handler on the root logger.

    Args:
        level: Log level. If None, uses LOGGING_LEVEL from settings.
    """
    settings = get_settings()
    if level is None:
        level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter())
    handler.addFilter(RateLimitFilter(settings.logging.rate_limit_per_minute))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in ("uvicorn", "uvicorn.error"):
        server_logger = logging.getLogger(name)
        server_logger.handlers.clear()
        server_logger.propagate = False
        server_logger.addHandler(handler)

    # LoggingMiddleware emits the per-request line
    logging.getLogger("uvicorn.access").disabled = True

    # Task polling is chatty at DEBUG/INFO
    for name in ("botocore", "aiobotocore", "aioboto3", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)
