# ============================================================================
# Detention Adjudicator
# Retry Policy - Capped Exponential Backoff
# ============================================================================
#
# Reliability Level: L6 Critical
# Purpose: Decide whether and when a failed downstream call is retried
#
# MANDATE:
#   - Backoff calculation is a pure transition (attempt, error) -> delay
#   - Scheduling is done by run_with_retry() with an injectable sleep
#   - Rate-limit signals apply a multiplier plus an extra cooldown
#
# Error Codes:
#   - DET-RETRY-001: Attempt ceiling reached
#
# ============================================================================

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, NamedTuple, Optional

from app.transport.errors import (
    DetentionError,
    ErrorCategory,
    RateLimitError,
    classify_exception,
)

logger = logging.getLogger(__name__)


SleepFunc = Callable[[float], Awaitable[None]]


class RetryDecision(NamedTuple):
    """Outcome of one backoff transition."""
    retry: bool
    attempt: int
    delay_seconds: float


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff calculator for retryable failures.

    Formula: min(base * multiplier ^ (attempt - 1), max_delay)
    Rate-limit: delay * rate_limit_multiplier + rate_limit_cooldown,
    or the server retry_after hint when that is larger.

    Reliability Level: L6 Critical
    Side Effects: None
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    rate_limit_multiplier: float = 2.0
    rate_limit_cooldown: float = 5.0
    jitter: float = 0.0

    def next_delay(
        self,
        attempt: int,
        error: DetentionError,
        rand: Callable[[], float] = random.random
    ) -> RetryDecision:
        """
        Compute the transition after `attempt` (1-based) failed with `error`.

        Returns:
            RetryDecision(retry=False, ...) when the error is terminal or the
            attempt ceiling is reached; otherwise the delay before the next try.
        """
        if not error.retryable or attempt >= self.max_attempts:
            return RetryDecision(retry=False, attempt=attempt, delay_seconds=0.0)

        delay = min(
            self.base_delay * (self.multiplier ** (attempt - 1)),
            self.max_delay
        )

        if error.category is ErrorCategory.RATE_LIMIT:
            delay = delay * self.rate_limit_multiplier + self.rate_limit_cooldown
            retry_after = getattr(error, "retry_after", None)
            if isinstance(error, RateLimitError) and retry_after:
                delay = max(delay, float(retry_after))

        if self.jitter > 0:
            delay += delay * self.jitter * rand()

        return RetryDecision(retry=True, attempt=attempt + 1, delay_seconds=delay)


async def run_with_retry(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    sleep: SleepFunc = asyncio.sleep,
    correlation_id: Optional[str] = None,
    label: str = "call",
    on_retry: Optional[Callable[[DetentionError, RetryDecision], None]] = None,
) -> Any:
    """
    Await `operation` until it succeeds or the policy gives up.

    Foreign exceptions are classified first, so the caller always sees a
    DetentionError.

    Raises:
        DetentionError: The last failure once retries are exhausted, or the
            first terminal failure.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify_exception(exc)
            decision = policy.next_delay(attempt, error)

            if not decision.retry:
                if error.retryable:
                    logger.warning(
                        f"[DET-RETRY-001] Attempt ceiling reached | "
                        f"label={label} | attempts={attempt} | "
                        f"error={error} | correlation_id={correlation_id}"
                    )
                if error is exc:
                    raise
                raise error from exc

            logger.warning(
                f"[DET-RETRY] Retrying {label} | attempt={attempt}/{policy.max_attempts} | "
                f"category={error.category.value} | delay={decision.delay_seconds:.2f}s | "
                f"correlation_id={correlation_id}"
            )
            if on_retry is not None:
                on_retry(error, decision)

            await sleep(decision.delay_seconds)
            attempt = decision.attempt


__all__ = [
    "RetryPolicy",
    "RetryDecision",
    "run_with_retry",
    "SleepFunc",
]
