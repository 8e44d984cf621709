"""
============================================================================
Detention Approval Gate - Core Data Models
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: Charge totals are decimal.Decimal
Traceability: order_id is carried on every request and resolution

PRIME DIRECTIVE:
    "The engine computes. A human confirms. Nothing is charged twice."

This module defines the data exchanged with the Approval Gate:
- ApprovalRequest: what the operator is asked to confirm
- ApprovalDecision: what the operator answered
- ApprovalResolution: how the request was finally resolved
- SubmitResult: acknowledgement of a submitted decision

ERROR CODES:
    - APPR-001: Authorization code required but not supplied
    - APPR-002: No pending approval for order
    - APPR-003: Approval already resolved
    - APPR-004: Unknown decision type

============================================================================
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


# =============================================================================
# Error Codes
# =============================================================================

class ApprovalErrorCode:
    """Approval-specific error codes for audit logging."""
    AUTH_CODE_REQUIRED = "APPR-001"
    NOT_PENDING = "APPR-002"
    ALREADY_RESOLVED = "APPR-003"
    UNKNOWN_DECISION = "APPR-004"


# =============================================================================
# Enums
# =============================================================================

class ApprovalOutcome(Enum):
    """How an approval request was resolved."""
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"
    SKIPPED = "SKIPPED"
    TIMED_OUT = "TIMED_OUT"


class DecisionType(Enum):
    """Decision submitted by an operator."""
    APPROVE = "APPROVE"
    DECLINE = "DECLINE"
    SKIP = "SKIP"


class DecisionChannel(Enum):
    """Source of a decision."""
    WEB = "WEB"
    CLI = "CLI"
    SYSTEM = "SYSTEM"


_DECISION_TO_OUTCOME = {
    DecisionType.APPROVE: ApprovalOutcome.APPROVED,
    DecisionType.DECLINE: ApprovalOutcome.DECLINED,
    DecisionType.SKIP: ApprovalOutcome.SKIPPED,
}


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class ApprovalStopLine:
    """Per-stop breakdown shown to the operator."""
    stop_index: int
    charge: Decimal
    breakdown: str
    chargeable_minutes: int = 0
    hit_max: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stop_index": self.stop_index,
            "charge": str(self.charge),
            "breakdown": self.breakdown,
            "chargeable_minutes": self.chargeable_minutes,
            "hit_max": self.hit_max,
        }


@dataclass
class ApprovalRequest:
    """
    Pending approval for one order.

    ============================================================================
    FIELDS:
    ============================================================================
    - request_id: Unique identifier of this request
    - order_id: Order awaiting confirmation
    - shipper: Shipper name (for display)
    - total: Sum of the pending stop charges
    - stops: Per-stop breakdown
    - auth_number_required: Approve must carry an authorization code
    - requested_at / expires_at: Time box (UTC)
    ============================================================================
    """
    request_id: str
    order_id: str
    shipper: str
    total: Decimal
    stops: List[ApprovalStopLine]
    auth_number_required: bool
    requested_at: datetime
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "order_id": self.order_id,
            "shipper": self.shipper,
            "total": str(self.total),
            "stops": [s.to_dict() for s in self.stops],
            "auth_number_required": self.auth_number_required,
            "requested_at": self.requested_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class ApprovalDecision:
    """Decision payload from an operator."""
    decision_type: DecisionType
    auth_code: Optional[str] = None
    operator_id: Optional[str] = None
    channel: DecisionChannel = DecisionChannel.CLI
    reason: Optional[str] = None

    @property
    def outcome(self) -> ApprovalOutcome:
        return _DECISION_TO_OUTCOME[self.decision_type]

    @classmethod
    def parse(
        cls,
        decision: str,
        auth_code: Optional[str] = None,
        operator_id: Optional[str] = None,
        channel: DecisionChannel = DecisionChannel.CLI
    ) -> "ApprovalDecision":
        """
        Build a decision from a free-form string (APPROVE / A / DECLINE / ...).

        Raises:
            ValueError: APPR-004 on unknown decision strings
        """
        aliases = {
            "APPROVE": DecisionType.APPROVE, "APPROVED": DecisionType.APPROVE, "A": DecisionType.APPROVE,
            "DECLINE": DecisionType.DECLINE, "DECLINED": DecisionType.DECLINE, "D": DecisionType.DECLINE,
            "REJECT": DecisionType.DECLINE,
            "SKIP": DecisionType.SKIP, "S": DecisionType.SKIP,
        }
        key = (decision or "").strip().upper()
        if key not in aliases:
            raise ValueError(f"[{ApprovalErrorCode.UNKNOWN_DECISION}] Unknown decision: {decision!r}")
        code = auth_code.strip() if auth_code and auth_code.strip() else None
        return cls(decision_type=aliases[key], auth_code=code, operator_id=operator_id, channel=channel)


@dataclass(frozen=True)
class ApprovalResolution:
    """Final resolution of an ApprovalRequest."""
    order_id: str
    outcome: ApprovalOutcome
    decided_at: datetime
    channel: DecisionChannel
    auth_code: Optional[str] = None
    decided_by: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class SubmitResult:
    """Acknowledgement returned by ApprovalGate.submit_decision()."""
    accepted: bool
    order_id: str
    error_code: Optional[str] = None
    message: str = ""


__all__ = [
    "ApprovalErrorCode",
    "ApprovalOutcome",
    "DecisionType",
    "DecisionChannel",
    "ApprovalStopLine",
    "ApprovalRequest",
    "ApprovalDecision",
    "ApprovalResolution",
    "SubmitResult",
]
