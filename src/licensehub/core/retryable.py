"""Retry policy for AWS collaborator calls.

Errors are sorted into ``ErrorClass`` buckets. TRANSIENT, TIMEOUT and
RATE_LIMITED are retried with jittered exponential backoff; throttled calls
back off twice as long. PERMANENT errors, and anything unrecognised, are
raised immediately.

Usage:
    from licensehub.core.retryable import with_retry

    arn = await with_retry(lambda: ecs.run_task(**params), circuit_breaker="ecs")
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from licensehub.core.circuit_breaker import CircuitOpenError, get_circuit_breaker
from licensehub.core.logging_schema import ErrorClass

logger = logging.getLogger(__name__)

T = TypeVar("T")

THROTTLING_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "SlowDown",
    "PriorRequestNotComplete",
})

SERVER_FAULT_CODES = frozenset({
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalError",
    "InternalFailure",
    "InternalServerError",
    "ServerException",
})

TIMEOUT_CODES = frozenset({"RequestTimeout", "RequestTimeoutException"})

# Codes that describe the request or the resource, not the service's health
CALLER_FAULT_CODES = frozenset({
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedOperation",
    "InvalidClientTokenId",
    "ValidationError",
    "ValidationException",
    "InvalidParameterException",
    "InvalidParameterValue",
    "ClientException",
    "ResourceNotFoundException",
    "ResourceExistsException",
    "NoSuchBucket",
    "NoSuchEntity",
    "TargetGroupNotFound",
    "RuleNotFound",
    "AccessPointNotFound",
})

RETRYABLE_CLASSES = frozenset({ErrorClass.TRANSIENT, ErrorClass.TIMEOUT, ErrorClass.RATE_LIMITED})

_CONNECTION_ERRORS = (EndpointConnectionError, ConnectionClosedError)
_TIMEOUT_ERRORS = (asyncio.TimeoutError, ConnectTimeoutError, ReadTimeoutError)


def error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def classify_error(exc: Exception) -> ErrorClass | None:
    """Bucket an exception. None means unrecognised (not retried)."""
    if isinstance(exc, _TIMEOUT_ERRORS):
        return ErrorClass.TIMEOUT
    if isinstance(exc, _CONNECTION_ERRORS):
        return ErrorClass.TRANSIENT
    if not isinstance(exc, ClientError):
        return None

    code = error_code(exc)
    if code in THROTTLING_CODES:
        return ErrorClass.RATE_LIMITED
    if code in TIMEOUT_CODES:
        return ErrorClass.TIMEOUT
    if code in SERVER_FAULT_CODES:
        return ErrorClass.TRANSIENT
    if code in CALLER_FAULT_CODES:
        return ErrorClass.PERMANENT

    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
    if status == 429:
        return ErrorClass.RATE_LIMITED
    if status >= 500:
        return ErrorClass.TRANSIENT
    if 400 <= status < 500:
        return ErrorClass.PERMANENT
    return None


def is_retryable(exc: Exception) -> bool:
    return classify_error(exc) in RETRYABLE_CLASSES


def backoff_delay(attempt: int, error_class: ErrorClass, base_delay: float, max_delay: float) -> float:
    """Jittered exponential delay (50%-150%) before retry number ``attempt + 1``."""
    if error_class == ErrorClass.RATE_LIMITED:
        base_delay *= 2
    delay = min(base_delay * (2**attempt), max_delay)
    return delay * (0.5 + random.random())


async def with_retry(
    coro_factory: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    circuit_breaker: str | None = None,
) -> T:
    """Run ``coro_factory()`` until it succeeds or fails for good.

    Args:
        coro_factory: Creates a fresh coroutine per attempt
        max_retries: Retries after the first attempt
        base_delay: First backoff in seconds
        max_delay: Backoff ceiling in seconds
        circuit_breaker: Name of the service breaker to call through, if any

    Raises:
        CircuitOpenError: If the service's circuit is open
        Exception: The error of the last attempt
    """
    breaker = get_circuit_breaker(circuit_breaker, classify_error) if circuit_breaker else None
    attempts = max_retries + 1

    for attempt in range(attempts):
        try:
            if breaker is not None:
                return await breaker.call(coro_factory)
            return await coro_factory()
        except CircuitOpenError:
            raise
        except Exception as exc:
            error_class = classify_error(exc)
            if error_class not in RETRYABLE_CLASSES:
                raise
            if attempt + 1 == attempts:
                logger.error(
                    "Giving up after %d attempts: %s",
                    attempts,
                    exc,
                    extra={"error_class": error_class, "attempt": attempts, "service": circuit_breaker},
                )
                raise

            delay = backoff_delay(attempt, error_class, base_delay, max_delay)
            logger.warning(
                "AWS call failed, retrying in %.1fs (attempt %d/%d): %s",
                delay,
                attempt + 1,
                attempts,
                exc,
                extra={
                    "error_class": error_class,
                    "attempt": attempt + 1,
                    "delay": delay,
                    "service": circuit_breaker,
                },
            )
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")
