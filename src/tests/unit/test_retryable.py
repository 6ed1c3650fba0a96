"""Tests for AWS error classification and retry logic."""

import asyncio

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from licensehub.core.circuit_breaker import (
    CircuitOpenError,
    CircuitState,
    get_circuit_breaker,
    reset_all_circuit_breakers,
)
from licensehub.core.logging_schema import ErrorClass
from licensehub.core.retryable import backoff_delay, classify_error, error_code, is_retryable, with_retry


def _client_error(code: str, status: int = 400) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": "test error"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        "TestOperation",
    )


class TestClassifyError:
    """Tests for classify_error function."""

    @pytest.mark.parametrize("code", ["Throttling", "ThrottlingException", "SlowDown"])
    def test_throttling_is_rate_limited(self, code: str) -> None:
        assert classify_error(_client_error(code)) == ErrorClass.RATE_LIMITED
        assert is_retryable(_client_error(code)) is True

    @pytest.mark.parametrize("code", ["ServiceUnavailable", "InternalError"])
    def test_server_faults_are_transient(self, code: str) -> None:
        assert classify_error(_client_error(code, status=503)) == ErrorClass.TRANSIENT
        assert is_retryable(_client_error(code)) is True

    @pytest.mark.parametrize(
        "code",
        ["AccessDenied", "NoSuchBucket", "NoSuchEntity", "TargetGroupNotFound", "AccessPointNotFound"],
    )
    def test_permanent_codes(self, code: str) -> None:
        assert classify_error(_client_error(code)) == ErrorClass.PERMANENT
        assert is_retryable(_client_error(code)) is False

    def test_request_timeout_code(self) -> None:
        assert classify_error(_client_error("RequestTimeout", status=408)) == ErrorClass.TIMEOUT

    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (503, ErrorClass.TRANSIENT),
            (429, ErrorClass.RATE_LIMITED),
            (409, ErrorClass.PERMANENT),
        ],
    )
    def test_unknown_code_uses_http_status(self, status: int, expected: ErrorClass) -> None:
        """Unlisted codes fall back to the HTTP status."""
        assert classify_error(_client_error("Weird", status=status)) == expected

    def test_unknown_code_without_status_is_unclassified(self) -> None:
        exc = ClientError({"Error": {"Code": "Weird", "Message": "?"}}, "Op")
        assert classify_error(exc) is None
        assert is_retryable(exc) is False

    def test_network_errors_are_transient(self) -> None:
        exc = EndpointConnectionError(endpoint_url="https://ecs.us-east-1.amazonaws.com")
        assert classify_error(exc) == ErrorClass.TRANSIENT

    def test_asyncio_timeout(self) -> None:
        assert classify_error(asyncio.TimeoutError()) == ErrorClass.TIMEOUT

    def test_plain_exception_is_unclassified(self) -> None:
        assert classify_error(ValueError("x")) is None

    def test_error_code(self) -> None:
        assert error_code(_client_error("NoSuchBucket")) == "NoSuchBucket"


class TestBackoffDelay:
    def test_grows_exponentially_within_jitter(self) -> None:
        for attempt, nominal in ((0, 1.0), (1, 2.0), (2, 4.0)):
            delay = backoff_delay(attempt, ErrorClass.TRANSIENT, base_delay=1.0, max_delay=30.0)
            assert 0.5 * nominal <= delay <= 1.5 * nominal

    def test_capped_at_max_delay(self) -> None:
        delay = backoff_delay(10, ErrorClass.TRANSIENT, base_delay=1.0, max_delay=5.0)
        assert delay <= 7.5

    def test_throttling_backs_off_longer(self) -> None:
        delay = backoff_delay(0, ErrorClass.RATE_LIMITED, base_delay=1.0, max_delay=30.0)
        assert 1.0 <= delay <= 3.0


class TestWithRetry:
    """Tests for with_retry function."""

    @pytest.fixture(autouse=True)
    def reset_circuit_breakers(self) -> None:
        reset_all_circuit_breakers()

    async def test_success_on_first_attempt(self) -> None:
        """Should return result on first successful attempt."""
        calls = 0

        async def succeed() -> str:
            nonlocal calls
            calls += 1
            return "arn"

        assert await with_retry(succeed, max_retries=3) == "arn"
        assert calls == 1

    async def test_retry_on_throttling(self) -> None:
        """Throttled calls are retried until they succeed."""
        calls = 0

        async def throttled_then_ok() -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise _client_error("ThrottlingException")
            return "arn"

        assert await with_retry(throttled_then_ok, max_retries=3, base_delay=0.01) == "arn"
        assert calls == 3

    async def test_no_retry_on_permanent_error(self) -> None:
        calls = 0

        async def denied() -> str:
            nonlocal calls
            calls += 1
            raise _client_error("AccessDenied", status=403)

        with pytest.raises(ClientError):
            await with_retry(denied, max_retries=3)
        assert calls == 1

    async def test_max_retries_exceeded(self) -> None:
        calls = 0

        async def always_throttled() -> str:
            nonlocal calls
            calls += 1
            raise _client_error("Throttling")

        with pytest.raises(ClientError):
            await with_retry(always_throttled, max_retries=2, base_delay=0.01)
        assert calls == 3  # Initial + 2 retries


class TestWithRetryCircuitBreaker:
    """Tests for with_retry integration with circuit breaker."""

    @pytest.fixture(autouse=True)
    def reset_circuit_breakers(self) -> None:
        reset_all_circuit_breakers()

    async def test_permanent_error_does_not_affect_circuit(self) -> None:
        """Missing resources must not open the service's circuit."""

        async def missing() -> str:
            raise _client_error("TargetGroupNotFound")

        for _ in range(6):
            with pytest.raises(ClientError):
                await with_retry(missing, max_retries=0, circuit_breaker="elbv2")

        cb = get_circuit_breaker("elbv2")
        assert cb.state == CircuitState.CLOSED
        assert cb._failures == 0

    async def test_transient_errors_open_circuit(self) -> None:
        """Repeated 5xx failures open the circuit (threshold 5)."""

        async def unavailable() -> str:
            raise _client_error("ServiceUnavailable", status=503)

        for _ in range(5):
            with pytest.raises(ClientError):
                await with_retry(unavailable, max_retries=0, circuit_breaker="ecs")

        assert get_circuit_breaker("ecs").state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await with_retry(unavailable, max_retries=3, circuit_breaker="ecs")
