"""
Unit Tests for the Per-Dependency Circuit Breaker

Reliability Level: L6 Critical

Tests:
- CLOSED -> OPEN after consecutive failures
- OPEN rejects immediately until the cooldown elapses
- HALF_OPEN closes after consecutive successes, reopens on one failure
- Business-rule answers do not count against the dependency
- Registry isolation between dependencies
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.logic.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitStatus
from app.transport.errors import CircuitOpenError, NetworkError, VersionConflictError


class FakeClock:

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def _ok() -> str:
    return "ok"


async def _network_failure() -> None:
    raise NetworkError("connection reset")


async def _conflict() -> None:
    raise VersionConflictError("stale version")


def _breaker(clock: FakeClock, failures: int = 3, successes: int = 2) -> CircuitBreaker:
    return CircuitBreaker(
        "orders",
        failure_threshold=failures,
        success_threshold=successes,
        cooldown_seconds=30.0,
        clock=clock,
    )


async def _fail_times(breaker: CircuitBreaker, count: int) -> None:
    for _ in range(count):
        with pytest.raises(NetworkError):
            await breaker.call(_network_failure)


class TestTransitions:

    @pytest.mark.asyncio
    async def test_trips_after_threshold(self) -> None:
        clock = FakeClock()
        breaker = _breaker(clock)

        await _fail_times(breaker, 2)
        assert breaker.status is CircuitStatus.CLOSED

        await _fail_times(breaker, 1)
        assert breaker.status is CircuitStatus.OPEN

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self) -> None:
        breaker = _breaker(FakeClock())

        await _fail_times(breaker, 2)
        await breaker.call(_ok)
        await _fail_times(breaker, 2)

        assert breaker.status is CircuitStatus.CLOSED

    @pytest.mark.asyncio
    async def test_open_rejects_without_calling(self) -> None:
        clock = FakeClock()
        breaker = _breaker(clock)
        await _fail_times(breaker, 3)
        calls = []

        async def tracked() -> None:
            calls.append(1)

        clock.now += 10
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(tracked)

        assert calls == []
        assert exc_info.value.retry_in_seconds == pytest.approx(20.0)
        assert exc_info.value.error_code == "CB-OPEN-001"

    @pytest.mark.asyncio
    async def test_half_open_closes_after_successes(self) -> None:
        clock = FakeClock()
        breaker = _breaker(clock, successes=2)
        await _fail_times(breaker, 3)

        clock.now += 31
        await breaker.call(_ok)
        assert breaker.status is CircuitStatus.HALF_OPEN

        await breaker.call(_ok)
        assert breaker.status is CircuitStatus.CLOSED
        assert breaker.state.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens_with_fresh_cooldown(self) -> None:
        clock = FakeClock()
        breaker = _breaker(clock)
        await _fail_times(breaker, 3)

        clock.now += 31
        await _fail_times(breaker, 1)

        assert breaker.status is CircuitStatus.OPEN
        assert breaker.state.next_retry_at == pytest.approx(clock.now + 30.0)

    @pytest.mark.asyncio
    async def test_business_errors_do_not_trip(self) -> None:
        breaker = _breaker(FakeClock(), failures=1)

        with pytest.raises(VersionConflictError):
            await breaker.call(_conflict)

        assert breaker.status is CircuitStatus.CLOSED

    def test_rejects_non_positive_thresholds(self) -> None:
        with pytest.raises(ValueError):
            CircuitBreaker("orders", failure_threshold=0)


class TestRegistry:

    @pytest.mark.asyncio
    async def test_dependencies_are_isolated(self) -> None:
        registry = CircuitBreakerRegistry(failure_threshold=1, clock=FakeClock())

        with pytest.raises(NetworkError):
            await registry.get("timestamps").call(_network_failure)

        assert registry.get("timestamps").status is CircuitStatus.OPEN
        assert await registry.get("orders").call(_ok) == "ok"
        assert registry.snapshot() == {"timestamps": "OPEN", "orders": "CLOSED"}

    def test_get_returns_same_instance(self) -> None:
        registry = CircuitBreakerRegistry()

        assert registry.get("orders") is registry.get("orders")
