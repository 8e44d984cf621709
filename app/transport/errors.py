"""
============================================================================
Detention Adjudicator - Error Taxonomy
============================================================================

Reliability Level: L6 Critical
Input Constraints: None
Side Effects: None

Every failure raised inside the engine is a DetentionError carrying:
- category: one of ErrorCategory
- error_code: stable audit code (logged as "[code]")
- retryable: whether the retry loop may try the call again

PROPAGATION POLICY
------------------
- VALIDATION / BUSINESS_RULE: terminal for the order, never retried
- NETWORK / TIMEOUT / RATE_LIMIT: retried with capped backoff
- AUTHENTICATION: credential invalidated, call not retried
- CIRCUIT_OPEN: not retried locally, breaker cooldown governs recovery
- STATE: invalid batch operation, raised to the caller

ERROR CODES:
    - DET-NET-001: Network failure
    - DET-NET-002: Request timeout
    - DET-RATE-001: Rate limit signalled by downstream
    - DET-AUTH-001: Authentication rejected
    - DET-PARSE-001: Unparseable downstream payload
    - DET-VAL-001: Validation failure
    - DET-VAL-002: Session ceiling exceeded
    - DET-BIZ-001: Business rule violation
    - DET-BIZ-002: No billing rules for shipper
    - DET-BIZ-003: Order version conflict
    - CB-OPEN-001: Circuit breaker open
    - DET-STATE-001: Invalid batch state transition

============================================================================
"""

import asyncio
from enum import Enum
from typing import Optional

import httpx


class ErrorCategory(Enum):
    """Failure classes understood by the retry loop and the report."""
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION = "AUTHENTICATION"
    PARSE = "PARSE"
    VALIDATION = "VALIDATION"
    BUSINESS_RULE = "BUSINESS_RULE"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    STATE = "STATE"


RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.NETWORK,
    ErrorCategory.TIMEOUT,
    ErrorCategory.RATE_LIMIT,
})


class DetentionError(Exception):
    """
    Base exception for the detention engine.

    Args:
        message: Human-readable cause (ends up in the report notes)
        error_code: Audit code, prefixed to str(error)
    """

    category = ErrorCategory.BUSINESS_RULE
    default_code = "DET-BIZ-001"

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.error_code = error_code or self.default_code
        self.message = message
        super().__init__(f"[{self.error_code}] {message}")

    @property
    def retryable(self) -> bool:
        return self.category in RETRYABLE_CATEGORIES


class NetworkError(DetentionError):
    category = ErrorCategory.NETWORK
    default_code = "DET-NET-001"


class RequestTimeoutError(DetentionError):
    category = ErrorCategory.TIMEOUT
    default_code = "DET-NET-002"


class RateLimitError(DetentionError):
    """Raised on HTTP 429. retry_after is the server hint in seconds, if any."""

    category = ErrorCategory.RATE_LIMIT
    default_code = "DET-RATE-001"

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message, error_code)
        self.retry_after = retry_after


class AuthenticationError(DetentionError):
    category = ErrorCategory.AUTHENTICATION
    default_code = "DET-AUTH-001"


class ParseError(DetentionError):
    category = ErrorCategory.PARSE
    default_code = "DET-PARSE-001"


class ValidationError(DetentionError):
    category = ErrorCategory.VALIDATION
    default_code = "DET-VAL-001"


class SessionLimitExceededError(ValidationError):
    default_code = "DET-VAL-002"


class BusinessRuleError(DetentionError):
    category = ErrorCategory.BUSINESS_RULE
    default_code = "DET-BIZ-001"


class MissingBillingRulesError(BusinessRuleError):
    default_code = "DET-BIZ-002"


class VersionConflictError(BusinessRuleError):
    """Write rejected because the order changed since it was last read."""

    default_code = "DET-BIZ-003"


class CircuitOpenError(DetentionError):
    category = ErrorCategory.CIRCUIT_OPEN
    default_code = "CB-OPEN-001"

    def __init__(self, dependency: str, retry_in_seconds: float):
        self.dependency = dependency
        self.retry_in_seconds = retry_in_seconds
        super().__init__(
            f"Circuit open for {dependency}, retry in {retry_in_seconds:.1f}s"
        )


class BatchStateError(DetentionError):
    category = ErrorCategory.STATE
    default_code = "DET-STATE-001"


def classify_exception(exc: BaseException) -> DetentionError:
    """
    Map a foreign exception into the detention taxonomy.

    DetentionError instances pass through unchanged. httpx transport
    failures and asyncio timeouts become NETWORK / TIMEOUT errors.
    Anything else is treated as a terminal business-rule failure so a
    programming error never loops in the retry path.
    """
    if isinstance(exc, DetentionError):
        return exc
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return RequestTimeoutError(f"Request timed out: {exc}")
    if isinstance(exc, httpx.TransportError):
        return NetworkError(f"Transport failure: {exc}")
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return ParseError(f"{type(exc).__name__}: {exc}")
    return BusinessRuleError(f"{type(exc).__name__}: {exc}")


__all__ = [
    "ErrorCategory",
    "RETRYABLE_CATEGORIES",
    "DetentionError",
    "NetworkError",
    "RequestTimeoutError",
    "RateLimitError",
    "AuthenticationError",
    "ParseError",
    "ValidationError",
    "SessionLimitExceededError",
    "BusinessRuleError",
    "MissingBillingRulesError",
    "VersionConflictError",
    "CircuitOpenError",
    "BatchStateError",
    "classify_exception",
]
