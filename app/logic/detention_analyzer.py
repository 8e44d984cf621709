"""
============================================================================
Detention Adjudicator
Detention Analyzer - Per-Stop Charge Decision
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: Parsed BillingRules, downstream facts for one stop
Side Effects: None (pure function, no I/O)

DECISION ORDER (first match wins)
---------------------------------
1. Order cancelled/rejected          -> ORDER_CANCELLED, no action
2. Order invoiced/paid               -> ORDER_INVOICED, no action
3. Non-zero charge already on stop   -> CHARGE_EXISTS, no action
4. No timestamp data                 -> FMC_DATA_UNAVAILABLE, pending retry
5. No actual arrival                 -> MISSING_ARRIVAL, pending retry
6. No actual departure               -> MISSING_DEPARTURE, pending retry
7. Stop/load type not eligible       -> NO_DETENTION_DROP_HOOK, release hold
8. Arrived past the late threshold   -> DRIVER_LATE, release hold
9. Chargeable time computation       -> free time / minimum / charge

POLICY MATRIX (autoChargeAllowed, requiresApproval)
---------------------------------------------------
    (True,  False) -> create / update charge
    (True,  True)  -> pending approval
    (False, True)  -> pending approval
    (False, False) -> analysis only

ZERO-FLOAT MANDATE
------------------
Charges are Decimal, quantized to cents with ROUND_HALF_EVEN.

============================================================================
"""

import logging
from decimal import Decimal, ROUND_HALF_EVEN
from typing import List, NamedTuple, Optional, Sequence

from app.logic.detention_models import (
    AnalysisResult,
    Classification,
    DetentionAction,
    DetentionLine,
    StopInfo,
    TimestampFacts,
    ZERO,
)
from services.billing_rules import BillingRules, RateUnit, RoundingMode

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

PRECISION_MONEY = Decimal("0.01")
DEFAULT_LATE_THRESHOLD_MINUTES = 15

CANCELLED_STATUSES = frozenset({"CANCELLED", "CANCELED", "REJECTED"})
INVOICED_STATUSES = frozenset({"INVOICED", "PAID"})


class ChargeComputation(NamedTuple):
    """Result of turning chargeable minutes into money."""
    billed_minutes: int
    charge: Decimal
    uncapped_charge: Decimal
    hit_max: bool


# ============================================================================
# ARITHMETIC
# ============================================================================

def apply_increment(minutes: int, increment: int, mode: Optional[str]) -> int:
    """
    Round chargeable minutes to a billing increment.

    UP rounds to the next multiple, DOWN to the previous one, NEAREST to
    the closer one with ties rounding up. Unknown or missing modes are
    treated as UP. Values already on a multiple are returned unchanged.
    """
    if increment <= 0:
        return minutes

    remainder = minutes % increment
    if remainder == 0:
        return minutes

    floor_value = minutes - remainder
    ceil_value = floor_value + increment

    normalized = (mode or "").strip().upper()
    if normalized == RoundingMode.DOWN.value:
        return floor_value
    if normalized == RoundingMode.NEAREST.value:
        return ceil_value if remainder * 2 >= increment else floor_value
    return ceil_value


def compute_charge(billed_minutes: int, rules: BillingRules) -> ChargeComputation:
    """
    Price billed minutes and cap the result at rules.max_charge.

    hit_max is True when the uncapped charge is at or above the cap.
    """
    minutes = Decimal(billed_minutes)
    if rules.rate_unit is RateUnit.PER_MINUTE:
        raw = minutes * rules.rate
    else:
        raw = minutes / Decimal(60) * rules.rate

    uncapped = raw.quantize(PRECISION_MONEY, rounding=ROUND_HALF_EVEN)
    hit_max = uncapped >= rules.max_charge
    charge = rules.max_charge if hit_max else uncapped

    return ChargeComputation(
        billed_minutes=billed_minutes,
        charge=charge.quantize(PRECISION_MONEY, rounding=ROUND_HALF_EVEN),
        uncapped_charge=uncapped,
        hit_max=hit_max,
    )


def minutes_between(start: int, end: int) -> int:
    """Whole minutes from start to end (epoch seconds); negative if end < start."""
    return (end - start) // 60


# ============================================================================
# HELPERS
# ============================================================================

def _line_for_stop(lines: Sequence[DetentionLine], stop_index: int) -> Optional[DetentionLine]:
    for line in lines:
        if line.stop_index == stop_index:
            return line
    return None


def _release_or_none(hold: Optional[DetentionLine]) -> DetentionAction:
    return DetentionAction.RELEASE_HOLD if hold is not None else DetentionAction.NONE


def _select_charge_action(rules: BillingRules, hold: Optional[DetentionLine]) -> DetentionAction:
    if rules.requires_approval:
        return DetentionAction.PENDING_APPROVAL
    if rules.auto_charge_allowed:
        return DetentionAction.UPDATE_CHARGE if hold is not None else DetentionAction.CREATE_CHARGE
    return DetentionAction.ANALYSIS_ONLY


def _format_money(amount: Decimal) -> str:
    return f"${amount:,.2f}"


def _rate_label(rules: BillingRules) -> str:
    unit = "min" if rules.rate_unit is RateUnit.PER_MINUTE else "hr"
    return f"{_format_money(rules.rate)}/{unit}"


# ============================================================================
# ANALYZE
# ============================================================================

def analyze(
    stop: StopInfo,
    timestamps: Optional[TimestampFacts],
    rules: BillingRules,
    order_status: str,
    existing_holds: Sequence[DetentionLine],
    stop_index: int,
    late_threshold_minutes: int = DEFAULT_LATE_THRESHOLD_MINUTES
) -> AnalysisResult:
    """
    Decide what to do about detention on one stop.

    Args:
        stop: Stop type / load type of the stop
        timestamps: Planned and actual times, None when unavailable
        rules: Shipper billing rules
        order_status: Order status string from the order view
        existing_holds: Detention lines currently on the order
        stop_index: Index of the stop on the order
        late_threshold_minutes: Arrival lateness that voids eligibility

    Returns:
        AnalysisResult (never raises for missing data)
    """
    line = _line_for_stop(existing_holds, stop_index)
    existing_charge = line.amount if line is not None else ZERO
    hold = line if line is not None and line.is_hold else None

    result = AnalysisResult(
        stop_index=stop_index,
        classification=Classification.NO_HOLD_NO_CHARGE,
        action=DetentionAction.NONE,
        hold_exists=hold is not None,
        hold_id=hold.line_id if hold is not None else None,
        existing_charge=existing_charge,
        requires_approval=rules.requires_approval,
        auto_charge_allowed=rules.auto_charge_allowed,
        auth_number_required=rules.auth_number_required,
    )

    status = (order_status or "").strip().upper()

    if status in CANCELLED_STATUSES:
        return _finish(result, Classification.ORDER_CANCELLED, DetentionAction.NONE,
                       f"Order is {status.lower()}")

    if status in INVOICED_STATUSES:
        return _finish(result, Classification.ORDER_INVOICED, DetentionAction.NONE,
                       f"Order is already {status.lower()}")

    if existing_charge > ZERO:
        return _finish(result, Classification.CHARGE_EXISTS, DetentionAction.NONE,
                       f"Detention of {_format_money(existing_charge)} already charged")

    if timestamps is None:
        return _finish(result, Classification.FMC_DATA_UNAVAILABLE, DetentionAction.PENDING_RETRY,
                       "No timestamp data available")

    if timestamps.actual_arrival is None:
        return _finish(result, Classification.MISSING_ARRIVAL, DetentionAction.PENDING_RETRY,
                       "Arrival not recorded")

    if timestamps.actual_departure is None:
        return _finish(result, Classification.MISSING_DEPARTURE, DetentionAction.PENDING_RETRY,
                       "Departure not recorded")

    if not rules.is_eligible(stop.stop_type, stop.load_type):
        return _finish(result, Classification.NO_DETENTION_DROP_HOOK, _release_or_none(hold),
                       f"{stop.stop_type.title()} {stop.load_type.lower()} is not eligible for detention")

    if timestamps.planned_arrival is not None:
        late_by = minutes_between(timestamps.planned_arrival, timestamps.actual_arrival)
        if late_by > late_threshold_minutes:
            return _finish(result, Classification.DRIVER_LATE, _release_or_none(hold),
                           f"Driver arrived {late_by} min late (threshold {late_threshold_minutes} min)")

    planned_departure = timestamps.planned_departure
    if planned_departure is None:
        planned_departure = timestamps.actual_arrival

    delay = max(0, minutes_between(planned_departure, timestamps.actual_departure))
    free_time = rules.free_time_for(stop.stop_type, stop.load_type) or 0
    chargeable = delay - free_time
    result.chargeable_minutes = max(0, chargeable)

    if chargeable <= 0:
        classification = (
            Classification.WITHIN_FREE_TIME if hold is not None
            else Classification.NO_HOLD_NO_CHARGE
        )
        return _finish(result, classification, _release_or_none(hold),
                       f"Delay {delay} min within {free_time} min free time")

    minimum = rules.minimum_chargeable_minutes
    if minimum is not None and chargeable < minimum:
        return _finish(result, Classification.BELOW_MINIMUM_THRESHOLD, _release_or_none(hold),
                       f"{chargeable} chargeable min below {minimum} min minimum")

    billed = chargeable
    if rules.billing_increment_minutes and rules.rounding_mode:
        billed = apply_increment(chargeable, rules.billing_increment_minutes, rules.rounding_mode)

    computation = compute_charge(billed, rules)
    result.charge = computation.charge
    result.hit_max = computation.hit_max

    parts: List[str] = [
        f"Delay {delay} min - {free_time} min free = {chargeable} min chargeable"
    ]
    if billed != chargeable:
        parts.append(f"billed as {billed} min ({rules.rounding_mode} {rules.billing_increment_minutes})")
    parts.append(f"x {_rate_label(rules)} = {_format_money(computation.uncapped_charge)}")
    if computation.hit_max:
        parts.append(f"capped at {_format_money(rules.max_charge)}")

    return _finish(result, Classification.DETENTION_CHARGEABLE,
                   _select_charge_action(rules, hold), ", ".join(parts))


def _finish(
    result: AnalysisResult,
    classification: Classification,
    action: DetentionAction,
    breakdown: str
) -> AnalysisResult:
    result.classification = classification
    result.action = action
    result.breakdown = breakdown
    logger.debug(
        f"[DET-ANALYZE] stop={result.stop_index} | classification={classification.value} | "
        f"action={action.value} | charge={result.charge}"
    )
    return result


__all__ = [
    "analyze",
    "apply_increment",
    "compute_charge",
    "minutes_between",
    "ChargeComputation",
    "DEFAULT_LATE_THRESHOLD_MINUTES",
    "CANCELLED_STATUSES",
    "INVOICED_STATUSES",
]
