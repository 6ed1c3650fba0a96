"""Tests for the per-service circuit breaker."""

import asyncio

import pytest
from botocore.exceptions import ClientError

from licensehub.core.circuit_breaker import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    get_circuit_breaker,
    reset_all_circuit_breakers,
)
from licensehub.core.retryable import classify_error


async def _fail() -> str:
    raise RuntimeError("fail")


async def _succeed() -> str:
    return "ok"


class TestCircuitBreaker:
    """State transitions of a single breaker."""

    @pytest.fixture(autouse=True)
    def reset_circuit_breakers(self) -> None:
        """Reset global circuit breakers before each test."""
        reset_all_circuit_breakers()

    async def test_initial_state_is_closed(self) -> None:
        cb = CircuitBreaker(name="ecs")
        assert cb.state == CircuitState.CLOSED

    async def test_success_keeps_circuit_closed(self) -> None:
        cb = CircuitBreaker(name="ecs", failure_threshold=3)

        for _ in range(10):
            assert await cb.call(_succeed) == "ok"

        assert cb.state == CircuitState.CLOSED

    async def test_failures_open_circuit(self) -> None:
        cb = CircuitBreaker(name="ecs", failure_threshold=3)

        for _ in range(3):
            with pytest.raises(RuntimeError):
                await cb.call(_fail)

        assert cb.state == CircuitState.OPEN

    async def test_open_circuit_rejects_immediately(self) -> None:
        """Calls are refused without running while the circuit is open."""
        cb = CircuitBreaker(name="elbv2", failure_threshold=2)

        for _ in range(2):
            with pytest.raises(RuntimeError):
                await cb.call(_fail)

        with pytest.raises(CircuitOpenError) as exc_info:
            await cb.call(_succeed)

        assert exc_info.value.service == "elbv2"
        assert exc_info.value.retry_after >= 0

    async def test_half_open_success_closes_circuit(self) -> None:
        """Circuit should close after success_threshold trial calls succeed."""
        cb = CircuitBreaker(name="ecs", failure_threshold=2, success_threshold=2, cooldown=0.1)

        for _ in range(2):
            with pytest.raises(RuntimeError):
                await cb.call(_fail)
        await asyncio.sleep(0.15)

        await cb.call(_succeed)
        assert cb.state == CircuitState.HALF_OPEN
        await cb.call(_succeed)
        assert cb.state == CircuitState.CLOSED

    async def test_half_open_failure_reopens_circuit(self) -> None:
        """A failed trial call should reopen the circuit."""
        cb = CircuitBreaker(name="ecs", failure_threshold=2, cooldown=0.1)

        for _ in range(2):
            with pytest.raises(RuntimeError):
                await cb.call(_fail)
        await asyncio.sleep(0.15)

        with pytest.raises(RuntimeError):
            await cb.call(_fail)

        assert cb.state == CircuitState.OPEN

    async def test_success_resets_failure_count(self) -> None:
        """Failures must be consecutive to open the circuit."""
        cb = CircuitBreaker(name="ecs", failure_threshold=3)

        for _ in range(2):
            with pytest.raises(RuntimeError):
                await cb.call(_fail)
        await cb.call(_succeed)
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await cb.call(_fail)

        assert cb.state == CircuitState.CLOSED

    async def test_permanent_errors_do_not_trip(self) -> None:
        """Errors classified permanent say nothing about service health."""
        cb = CircuitBreaker(name="s3", failure_threshold=2, error_classifier=classify_error)

        async def no_such_bucket() -> str:
            raise ClientError({"Error": {"Code": "NoSuchBucket", "Message": "gone"}}, "HeadBucket")

        for _ in range(5):
            with pytest.raises(ClientError):
                await cb.call(no_such_bucket)

        assert cb.state == CircuitState.CLOSED

    async def test_throttling_does_not_trip(self) -> None:
        cb = CircuitBreaker(name="route53", failure_threshold=2, error_classifier=classify_error)

        async def throttled() -> str:
            raise ClientError({"Error": {"Code": "Throttling", "Message": "slow"}}, "ChangeResourceRecordSets")

        for _ in range(5):
            with pytest.raises(ClientError):
                await cb.call(throttled)

        assert cb.state == CircuitState.CLOSED
        assert cb._failures == 0


class TestCircuitBreakerRegistry:
    """Tests for the per-service breaker registry."""

    @pytest.fixture(autouse=True)
    def reset_circuit_breakers(self) -> None:
        """Reset global circuit breakers before each test."""
        reset_all_circuit_breakers()

    def test_same_service_returns_same_instance(self) -> None:
        assert get_circuit_breaker("ecs") is get_circuit_breaker("ecs")

    def test_services_are_isolated(self) -> None:
        """Each AWS service gets its own breaker."""
        assert get_circuit_breaker("ecs") is not get_circuit_breaker("route53")

    def test_reset_clears_all_instances(self) -> None:
        before = get_circuit_breaker("ecs")
        reset_all_circuit_breakers()
        assert get_circuit_breaker("ecs") is not before


class TestCircuitOpenError:
    def test_has_service_and_retry_after(self) -> None:
        exc = CircuitOpenError("iam", 15.5)
        assert exc.service == "iam"
        assert exc.retry_after == 15.5

    def test_message_format(self) -> None:
        exc = CircuitOpenError("iam", 15.5)
        assert "iam" in str(exc)
        assert "15.5" in str(exc)
