"""
============================================================================
Detention Adjudicator
Circuit Breaker - Per-Dependency Failure Gate
============================================================================

Reliability Level: L6 Critical
Input Constraints: Success/failure callbacks from the guarded dependency only
Side Effects: Updates breaker state gauge

PURPOSE
-------
One breaker guards one downstream dependency (order API, timestamp API,
mutation API). A burst of failures against one dependency must never
throttle calls to another, so each breaker owns its own counters.

STATE MACHINE
-------------
    CLOSED    -> OPEN       failure_threshold consecutive failures
    OPEN      -> HALF_OPEN  first call after the cooldown elapsed
    HALF_OPEN -> CLOSED     success_threshold consecutive successes
    HALF_OPEN -> OPEN       any single failure (fresh cooldown)

While OPEN every call is rejected immediately with CircuitOpenError.

ERROR CODES
-----------
- CB-OPEN-001: Call rejected, breaker open
- CB-TRIP-001: Breaker tripped to OPEN

============================================================================
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from app.observability.metrics import record_breaker_state
from app.transport.errors import (
    CircuitOpenError,
    DetentionError,
    ErrorCategory,
    classify_exception,
)

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_SUCCESS_THRESHOLD = 2
DEFAULT_COOLDOWN_SECONDS = 60.0


# ============================================================================
# DATA MODELS
# ============================================================================

class CircuitStatus(Enum):
    """Breaker position."""
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitState:
    """
    Mutable bookkeeping for one dependency.

    consecutive_successes is only meaningful in HALF_OPEN.
    next_retry_at is a clock reading (monotonic seconds) while OPEN.
    """
    status: CircuitStatus = CircuitStatus.CLOSED
    failure_count: int = 0
    consecutive_successes: int = 0
    next_retry_at: Optional[float] = None


# ============================================================================
# CIRCUIT BREAKER CLASS
# ============================================================================

class CircuitBreaker:
    """
    Failure-rate gate for a single downstream dependency.

    Reliability Level: L6 Critical
    Input Constraints: Thresholds must be positive
    Side Effects: Logs transitions, updates Prometheus gauge

    Example Usage:
        breaker = CircuitBreaker("order_api")
        order = await breaker.call(lambda: client.get_order("ORD-1"))
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        success_threshold: int = DEFAULT_SUCCESS_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        if failure_threshold <= 0 or success_threshold <= 0:
            raise ValueError("Circuit breaker thresholds must be positive")
        if cooldown_seconds < 0:
            raise ValueError("cooldown_seconds must be non-negative")

        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._state = CircuitState()

        record_breaker_state(self.name, self._state.status.value)

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def status(self) -> CircuitStatus:
        return self._state.status

    def before_call(self) -> None:
        """
        Gate a call.

        Raises:
            CircuitOpenError: While OPEN and the cooldown has not elapsed.
        """
        state = self._state
        if state.status is not CircuitStatus.OPEN:
            return

        now = self._clock()
        if state.next_retry_at is not None and now < state.next_retry_at:
            remaining = state.next_retry_at - now
            logger.debug(
                f"[CB-OPEN-001] Call rejected | dependency={self.name} | "
                f"retry_in={remaining:.1f}s"
            )
            raise CircuitOpenError(self.name, remaining)

        self._transition(CircuitStatus.HALF_OPEN)
        state.consecutive_successes = 0

    def record_success(self) -> None:
        state = self._state
        if state.status is CircuitStatus.HALF_OPEN:
            state.consecutive_successes += 1
            if state.consecutive_successes >= self.success_threshold:
                state.failure_count = 0
                state.consecutive_successes = 0
                state.next_retry_at = None
                self._transition(CircuitStatus.CLOSED)
            return

        state.failure_count = 0

    def record_failure(self) -> None:
        state = self._state
        if state.status is CircuitStatus.HALF_OPEN:
            self._trip()
            return

        state.failure_count += 1
        if state.status is CircuitStatus.CLOSED and state.failure_count >= self.failure_threshold:
            self._trip()

    async def call(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run `operation` through the breaker.

        Only transport-level failures (network, timeout, rate limit) and
        unparseable payloads count against the dependency. Business-rule
        answers such as a version conflict mean the dependency is healthy.
        """
        self.before_call()
        try:
            result = await operation()
        except Exception as exc:
            error = classify_exception(exc)
            if _counts_as_failure(error):
                self.record_failure()
            else:
                self.record_success()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        self._state = CircuitState()
        record_breaker_state(self.name, self._state.status.value)

    def _trip(self) -> None:
        state = self._state
        state.next_retry_at = self._clock() + self.cooldown_seconds
        state.consecutive_successes = 0
        self._transition(CircuitStatus.OPEN)
        logger.critical(
            f"[CB-TRIP-001] Circuit breaker OPEN | dependency={self.name} | "
            f"failures={state.failure_count} | cooldown={self.cooldown_seconds:.0f}s"
        )

    def _transition(self, target: CircuitStatus) -> None:
        previous = self._state.status
        if previous is target:
            return
        self._state.status = target
        record_breaker_state(self.name, target.value)
        logger.info(
            f"[CB-STATE] {self.name}: {previous.value} -> {target.value}"
        )


def _counts_as_failure(error: DetentionError) -> bool:
    return error.retryable or error.category is ErrorCategory.PARSE


# ============================================================================
# REGISTRY
# ============================================================================

class CircuitBreakerRegistry:
    """
    Holds one independent breaker per dependency name.

    Constructed once per orchestrator and passed in explicitly so tests can
    substitute their own breakers.
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        success_threshold: int = DEFAULT_SUCCESS_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._failure_threshold = failure_threshold
        self._success_threshold = success_threshold
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, dependency: str) -> CircuitBreaker:
        breaker = self._breakers.get(dependency)
        if breaker is None:
            breaker = CircuitBreaker(
                dependency,
                failure_threshold=self._failure_threshold,
                success_threshold=self._success_threshold,
                cooldown_seconds=self._cooldown_seconds,
                clock=self._clock,
            )
            self._breakers[dependency] = breaker
        return breaker

    def snapshot(self) -> Dict[str, str]:
        return {name: b.status.value for name, b in self._breakers.items()}


# ============================================================================
# Reliability Audit
# ============================================================================
#
# [Reliability Audit]
# Isolation: Verified (one CircuitState per dependency)
# Half-open probing: Verified (single failure reopens with fresh cooldown)
# Clock: Injectable for deterministic tests
#
# ============================================================================
