"""
============================================================================
Detention Adjudicator - Core Data Models
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: All money values use decimal.Decimal
Traceability: order_id is the correlation_id for every per-order log line

This module defines the records that flow through one batch run:
- StopInfo / TimestampFacts / DetentionLine: facts read from downstream
- OrderFacts / OrderSnapshot: order views (read-only / mutable)
- AnalysisResult: per-stop decision plus post-execution bookkeeping
- OrderRecord: everything known about one order during processing
- BatchJob: state of a whole run

============================================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from services.billing_rules import BillingRules


ZERO = Decimal("0")


# =============================================================================
# Enums
# =============================================================================

class Classification(Enum):
    """Outcome of the detention decision for one stop."""
    ORDER_CANCELLED = "ORDER_CANCELLED"
    ORDER_INVOICED = "ORDER_INVOICED"
    CHARGE_EXISTS = "CHARGE_EXISTS"
    FMC_DATA_UNAVAILABLE = "FMC_DATA_UNAVAILABLE"
    MISSING_ARRIVAL = "MISSING_ARRIVAL"
    MISSING_DEPARTURE = "MISSING_DEPARTURE"
    NO_DETENTION_DROP_HOOK = "NO_DETENTION_DROP_HOOK"
    DRIVER_LATE = "DRIVER_LATE"
    WITHIN_FREE_TIME = "WITHIN_FREE_TIME"
    NO_HOLD_NO_CHARGE = "NO_HOLD_NO_CHARGE"
    BELOW_MINIMUM_THRESHOLD = "BELOW_MINIMUM_THRESHOLD"
    DETENTION_CHARGEABLE = "DETENTION_CHARGEABLE"


class DetentionAction(Enum):
    """What the orchestrator should do with a stop."""
    NONE = "NONE"
    PENDING_RETRY = "PENDING_RETRY"
    RELEASE_HOLD = "RELEASE_HOLD"
    CREATE_CHARGE = "CREATE_CHARGE"
    UPDATE_CHARGE = "UPDATE_CHARGE"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    ANALYSIS_ONLY = "ANALYSIS_ONLY"


MUTATING_ACTIONS = frozenset({
    DetentionAction.RELEASE_HOLD,
    DetentionAction.CREATE_CHARGE,
    DetentionAction.UPDATE_CHARGE,
})


class ProcessedAction(Enum):
    """What was actually done with a stop once execution finished."""
    UPDATED = "updated"
    CREATED = "created"
    RELEASED = "released"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"
    ANALYSIS_ONLY = "analysis_only"


class BatchState(Enum):
    """
    Batch run lifecycle.

    IDLE → RUNNING ⇄ PAUSED
    RUNNING/PAUSED → CANCELLED (terminal)
    RUNNING → COMPLETED (terminal)
    """
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


TERMINAL_BATCH_STATES = frozenset({BatchState.CANCELLED, BatchState.COMPLETED})


# =============================================================================
# Downstream facts
# =============================================================================

@dataclass(frozen=True)
class StopInfo:
    """
    One pickup or delivery stop of an order.

    stop_type: PICKUP | DELIVERY
    load_type: LIVE | DROP (drop-and-hook)
    """
    stop_index: int
    stop_type: str
    load_type: str
    location: Optional[str] = None


@dataclass(frozen=True)
class TimestampFacts:
    """Planned / actual times for one stop, epoch seconds (UTC)."""
    planned_arrival: Optional[int] = None
    actual_arrival: Optional[int] = None
    planned_departure: Optional[int] = None
    actual_departure: Optional[int] = None


@dataclass(frozen=True)
class DetentionLine:
    """
    A detention pricing line on an order.

    amount == 0 is a hold reserved for the stop; amount > 0 is a charge.
    """
    line_id: str
    stop_index: int
    amount: Decimal = ZERO
    auth_number: Optional[str] = None
    description: str = "Detention"

    @property
    def is_hold(self) -> bool:
        return self.amount == ZERO


@dataclass
class OrderFacts:
    """Read-only order view returned by the order-facts source."""
    order_id: str
    status: str
    shipper_name: str
    tour_id: Optional[str]
    stops: List[StopInfo] = field(default_factory=list)
    detention_lines: List[DetentionLine] = field(default_factory=list)
    version: int = 0
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OrderSnapshot:
    """Mutable order view; every write is keyed by its version."""
    order_id: str
    version: int
    pricing_lines: List[DetentionLine] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    def line_for_stop(self, stop_index: int) -> Optional[DetentionLine]:
        for line in self.pricing_lines:
            if line.stop_index == stop_index:
                return line
        return None


# =============================================================================
# AnalysisResult
# =============================================================================

@dataclass
class AnalysisResult:
    """
    Decision for one stop, plus what execution did with it.

    Invariant: processed is True iff processed_action is set.
    """
    stop_index: int
    classification: Classification
    action: DetentionAction
    charge: Decimal = ZERO
    breakdown: str = ""
    chargeable_minutes: int = 0
    hit_max: bool = False
    hold_exists: bool = False
    hold_id: Optional[str] = None
    existing_charge: Decimal = ZERO
    requires_approval: bool = False
    auto_charge_allowed: bool = False
    auth_number_required: bool = False

    processed: bool = False
    processed_action: Optional[ProcessedAction] = None
    processed_amount: Decimal = ZERO
    process_error: Optional[str] = None

    def mark_processed(self, action: ProcessedAction, amount: Decimal = ZERO) -> None:
        if self.processed:
            raise ValueError(
                f"Stop {self.stop_index} already processed as {self.processed_action.value}"
            )
        self.processed = True
        self.processed_action = action
        self.processed_amount = amount

    @property
    def needs_mutation(self) -> bool:
        return self.action in MUTATING_ACTIONS and not self.processed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stop_index": self.stop_index,
            "classification": self.classification.value,
            "action": self.action.value,
            "charge": str(self.charge),
            "breakdown": self.breakdown,
            "chargeable_minutes": self.chargeable_minutes,
            "hit_max": self.hit_max,
            "hold_exists": self.hold_exists,
            "hold_id": self.hold_id,
            "existing_charge": str(self.existing_charge),
            "processed": self.processed,
            "processed_action": self.processed_action.value if self.processed_action else None,
            "processed_amount": str(self.processed_amount),
            "process_error": self.process_error,
        }


# =============================================================================
# OrderRecord
# =============================================================================

@dataclass
class OrderRecord:
    """
    Everything known about one order while it is being processed.

    Owned by the task that created it; never shared across tasks.
    """
    order_id: str
    order_view: Optional[OrderFacts] = None
    tour_id: Optional[str] = None
    timestamps: Optional[Dict[int, TimestampFacts]] = None
    results: List[AnalysisResult] = field(default_factory=list)
    shipper_name: Optional[str] = None
    billing_rules: Optional[BillingRules] = None
    timestamp_error: Optional[str] = None

    @property
    def pending_approval(self) -> List[AnalysisResult]:
        return [
            r for r in self.results
            if r.action is DetentionAction.PENDING_APPROVAL and not r.processed
        ]

    @property
    def pending_total(self) -> Decimal:
        return sum((r.charge for r in self.pending_approval), ZERO)


# =============================================================================
# BatchJob
# =============================================================================

@dataclass(frozen=True)
class FailureEntry:
    order_id: str
    error: str
    timestamp: datetime


@dataclass
class BatchJob:
    """State of one batch run."""
    job_id: str
    order_ids: List[str]
    chunk_size: int
    state: BatchState = BatchState.IDLE
    current_chunk_index: int = 0
    processed: Dict[str, OrderRecord] = field(default_factory=dict)
    failures: List[FailureEntry] = field(default_factory=list)
    started_at: Optional[datetime] = None

    @property
    def failed_ids(self) -> List[str]:
        return [f.order_id for f in self.failures]

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_BATCH_STATES

    def record_failure(self, order_id: str, error: str) -> None:
        self.failures.append(
            FailureEntry(order_id=order_id, error=error, timestamp=datetime.now(timezone.utc))
        )
