"""
Property-Based Tests for the Circuit Breaker State Machine

Reliability Level: L6 Critical

Drives a breaker with arbitrary sequences of outcomes and clock advances
and checks it against a small reference model:
- The breaker is OPEN exactly when the model says so
- While OPEN and inside the cooldown, no call reaches the dependency
"""

import asyncio
import os
import sys

from hypothesis import given, settings, strategies as st

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.logic.circuit_breaker import CircuitBreaker, CircuitStatus
from app.transport.errors import CircuitOpenError, NetworkError


FAILURES = 3
SUCCESSES = 2
COOLDOWN = 10.0

step_strategy = st.one_of(
    st.tuples(st.just("call"), st.booleans()),
    st.tuples(st.just("wait"), st.floats(min_value=0.0, max_value=15.0)),
)


class Model:
    """Reference state machine."""

    def __init__(self) -> None:
        self.status = "CLOSED"
        self.failures = 0
        self.successes = 0
        self.retry_at = 0.0

    def call(self, now: float, ok: bool) -> bool:
        """Returns True when the dependency is actually invoked."""
        if self.status == "OPEN":
            if now < self.retry_at:
                return False
            self.status = "HALF_OPEN"
            self.successes = 0

        if self.status == "HALF_OPEN":
            if ok:
                self.successes += 1
                if self.successes >= SUCCESSES:
                    self.status = "CLOSED"
                    self.failures = 0
            else:
                self.status = "OPEN"
                self.retry_at = now + COOLDOWN
            return True

        if ok:
            self.failures = 0
        else:
            self.failures += 1
            if self.failures >= FAILURES:
                self.status = "OPEN"
                self.retry_at = now + COOLDOWN
        return True


class TestBreakerMatchesModel:

    @settings(max_examples=150, deadline=None)
    @given(steps=st.lists(step_strategy, min_size=1, max_size=40))
    def test_transitions(self, steps) -> None:
        clock = {"now": 0.0}
        breaker = CircuitBreaker(
            "orders",
            failure_threshold=FAILURES,
            success_threshold=SUCCESSES,
            cooldown_seconds=COOLDOWN,
            clock=lambda: clock["now"],
        )
        model = Model()

        async def drive() -> None:
            for kind, value in steps:
                if kind == "wait":
                    clock["now"] += value
                    continue

                invoked = []

                async def operation() -> None:
                    invoked.append(1)
                    if not value:
                        raise NetworkError("down")

                expected_invoked = model.call(clock["now"], value)
                try:
                    await breaker.call(operation)
                except (NetworkError, CircuitOpenError):
                    pass

                assert bool(invoked) == expected_invoked
                assert breaker.status is CircuitStatus(model.status)

        asyncio.run(drive())
