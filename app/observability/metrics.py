"""
============================================================================
Detention Adjudicator
Prometheus Metrics - Batch Observability
============================================================================

Reliability Level: L5 High
Input Constraints: Currency values must be Decimal
Side Effects: Updates Prometheus metrics registry

METRICS EXPOSED
---------------
- detention_orders_total: Orders finished, by report status
- detention_actions_applied_total: Downstream mutations, by action
- detention_retries_total: Retried downstream calls, by error category
- detention_credential_refresh_total: Token refreshes, by outcome
- detention_approvals_total: Approval gate resolutions, by outcome
- detention_circuit_state: Breaker position per dependency (0/1/2)
- detention_charge_amount: Distribution of applied charge amounts

ZERO-FLOAT MANDATE
------------------
Decimal amounts are converted to float ONLY at the Prometheus boundary.

============================================================================
"""

import logging
from decimal import Decimal

from prometheus_client import Counter, Gauge, Histogram

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# PROMETHEUS METRICS DEFINITIONS
# ============================================================================

ORDERS_TOTAL = Counter(
    "detention_orders_total",
    "Orders that reached a report entry",
    ["status"]
)

ACTIONS_APPLIED = Counter(
    "detention_actions_applied_total",
    "Mutations applied against the order API",
    ["action"]
)

RETRIES_TOTAL = Counter(
    "detention_retries_total",
    "Downstream calls retried after a retryable failure",
    ["category"]
)

CREDENTIAL_REFRESH_TOTAL = Counter(
    "detention_credential_refresh_total",
    "Credential refresh attempts",
    ["outcome"]
)

APPROVALS_TOTAL = Counter(
    "detention_approvals_total",
    "Approval gate resolutions",
    ["outcome"]
)

CIRCUIT_STATE_GAUGE = Gauge(
    "detention_circuit_state",
    "Circuit breaker position (0=CLOSED, 1=HALF_OPEN, 2=OPEN)",
    ["dependency"]
)

CHARGE_AMOUNT_HISTOGRAM = Histogram(
    "detention_charge_amount",
    "Applied detention charge amounts",
    buckets=[10, 25, 50, 75, 100, 150, 250, 500, 1000]
)

_CIRCUIT_STATE_VALUES = {
    "CLOSED": 0,
    "HALF_OPEN": 1,
    "OPEN": 2,
}


# ============================================================================
# METRIC UPDATE FUNCTIONS
# ============================================================================

def record_order_outcome(status: str) -> None:
    ORDERS_TOTAL.labels(status=status).inc()


def record_action_applied(action: str, amount: Decimal = Decimal("0")) -> None:
    """
    Count one applied mutation and observe its amount.

    Args:
        action: processed action label (created / updated / released)
        amount: Charge amount as Decimal (float conversion happens here only)
    """
    ACTIONS_APPLIED.labels(action=action).inc()
    if amount > Decimal("0"):
        CHARGE_AMOUNT_HISTOGRAM.observe(float(amount))


def record_retry(category: str) -> None:
    RETRIES_TOTAL.labels(category=category).inc()


def record_credential_refresh(outcome: str) -> None:
    CREDENTIAL_REFRESH_TOTAL.labels(outcome=outcome).inc()


def record_approval_outcome(outcome: str) -> None:
    APPROVALS_TOTAL.labels(outcome=outcome).inc()


def record_breaker_state(dependency: str, status: str) -> None:
    value = _CIRCUIT_STATE_VALUES.get(status)
    if value is None:
        logger.warning(f"[DET-METRICS] Unknown breaker status: {status}")
        return
    CIRCUIT_STATE_GAUGE.labels(dependency=dependency).set(value)
