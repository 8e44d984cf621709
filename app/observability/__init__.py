"""
============================================================================
Detention Adjudicator
Observability Module - Prometheus Metrics
============================================================================

Reliability Level: L5 High
Input Constraints: None
Side Effects: Exposes Prometheus metrics

============================================================================
"""

from app.observability.metrics import (
    ORDERS_TOTAL,
    ACTIONS_APPLIED,
    RETRIES_TOTAL,
    CREDENTIAL_REFRESH_TOTAL,
    APPROVALS_TOTAL,
    CIRCUIT_STATE_GAUGE,
    CHARGE_AMOUNT_HISTOGRAM,
    record_order_outcome,
    record_action_applied,
    record_retry,
    record_credential_refresh,
    record_approval_outcome,
    record_breaker_state,
)

__all__ = [
    "ORDERS_TOTAL",
    "ACTIONS_APPLIED",
    "RETRIES_TOTAL",
    "CREDENTIAL_REFRESH_TOTAL",
    "APPROVALS_TOTAL",
    "CIRCUIT_STATE_GAUGE",
    "CHARGE_AMOUNT_HISTOGRAM",
    "record_order_outcome",
    "record_action_applied",
    "record_retry",
    "record_credential_refresh",
    "record_approval_outcome",
    "record_breaker_state",
]
