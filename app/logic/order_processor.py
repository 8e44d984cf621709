"""
============================================================================
Detention Adjudicator
Order Processor - Per-Order Pipeline
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: One order identifier per call
Side Effects: Downstream reads and version-keyed writes

PIPELINE (one order)
--------------------
1. Fetch order facts                   (orders breaker, retry, dedup)
2. Resolve billing rules by shipper    (missing = terminal failure)
3. Fetch timestamps by tour            (timestamps breaker, non-fatal)
4. Analyze every stop                  (pure)
5. Any stop PENDING_APPROVAL           -> defer the whole order
   otherwise apply mutations in stop order, each on a fresh snapshot
6. Emit one consolidated report entry

WRITE DISCIPLINE
----------------
Every write fetches a fresh snapshot and is keyed by its version. A
version conflict triggers exactly one refetch-and-retry of that write. The
audit comment after a mutation is best effort.

ERROR HANDLING
--------------
Authentication errors invalidate the shared credential and are not
retried. Network/timeout/rate-limit failures are retried by the retry
loop. No error escapes process(); each becomes a Failed report entry.

============================================================================
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Tuple
import asyncio
import logging

from app.clients.base import OrderFactsSource, OrderMutationSink, TimestampFactsSource
from app.logic.circuit_breaker import CircuitBreakerRegistry
from app.logic.detention_analyzer import DEFAULT_LATE_THRESHOLD_MINUTES, analyze
from app.logic.detention_models import (
    AnalysisResult,
    DetentionAction,
    DetentionLine,
    OrderRecord,
    OrderSnapshot,
    ProcessedAction,
    ZERO,
)
from app.observability.metrics import record_action_applied, record_order_outcome, record_retry
from app.reporting.report_writer import ReportEntry, ReportStatus
from app.transport.credential_manager import ERROR_REFRESH_FAILED, CredentialManager
from app.transport.errors import (
    AuthenticationError,
    DetentionError,
    MissingBillingRulesError,
    VersionConflictError,
)
from app.transport.request_deduplicator import RequestDeduplicator
from app.transport.retry_policy import RetryDecision, RetryPolicy, SleepFunc, run_with_retry
from services.approval_models import ApprovalOutcome, ApprovalResolution
from services.billing_rules import BillingRules

# Configure module logger
logger = logging.getLogger(__name__)


ORDERS_DEPENDENCY = "orders"
TIMESTAMPS_DEPENDENCY = "timestamps"

# Write intents
_CHARGE = "charge"
_RELEASE = "release"

_ACTION_LABELS = {
    ProcessedAction.CREATED: "Charge created",
    ProcessedAction.UPDATED: "Charge applied",
    ProcessedAction.RELEASED: "Hold released",
}

_APPROVAL_LABELS = {
    ApprovalOutcome.APPROVED: "Approved",
    ApprovalOutcome.DECLINED: "Declined",
    ApprovalOutcome.SKIPPED: "Skipped",
    ApprovalOutcome.TIMED_OUT: "Approval timed out",
}


@dataclass
class OrderOutcome:
    """What process() hands back to the orchestrator."""
    record: OrderRecord
    entry: ReportEntry
    deferred: bool = False
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class OrderProcessor:
    """
    Runs the per-order pipeline against injected downstream clients.

    Reliability Level: SOVEREIGN TIER
    Input Constraints: Shared breakers/credential/deduplicator instances
    Side Effects: Downstream writes, metrics
    """

    def __init__(
        self,
        orders: OrderFactsSource,
        timestamps: TimestampFactsSource,
        mutations: OrderMutationSink,
        rules: Mapping[str, BillingRules],
        breakers: Optional[CircuitBreakerRegistry] = None,
        credentials: Optional[CredentialManager] = None,
        retry_policy: Optional[RetryPolicy] = None,
        deduplicator: Optional[RequestDeduplicator] = None,
        sleep: SleepFunc = asyncio.sleep,
        late_threshold_minutes: int = DEFAULT_LATE_THRESHOLD_MINUTES
    ) -> None:
        self._orders = orders
        self._timestamps = timestamps
        self._mutations = mutations
        self._rules = rules
        self._breakers = breakers or CircuitBreakerRegistry()
        self._credentials = credentials
        self._policy = retry_policy or RetryPolicy()
        self._dedup = deduplicator or RequestDeduplicator()
        self._sleep = sleep
        self._late_threshold = late_threshold_minutes

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    # ------------------------------------------------------------------
    # Guarded downstream call
    # ------------------------------------------------------------------

    async def _call(
        self,
        dependency: str,
        label: str,
        operation: Callable[[], Awaitable[Any]],
        correlation_id: str,
        dedup_key: Optional[str] = None
    ) -> Any:
        breaker = self._breakers.get(dependency)

        def on_retry(error: DetentionError, decision: RetryDecision) -> None:
            record_retry(error.category.value)

        async def guarded() -> Any:
            return await run_with_retry(
                lambda: breaker.call(operation),
                self._policy,
                sleep=self._sleep,
                correlation_id=correlation_id,
                label=f"{dependency}.{label}",
                on_retry=on_retry,
            )

        try:
            if dedup_key is not None:
                return await self._dedup.run(dedup_key, guarded)
            return await guarded()
        except AuthenticationError:
            if self._credentials is not None:
                self._credentials.invalidate()
            raise

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def process(self, order_id: str) -> OrderOutcome:
        """
        Run one order through the pipeline.

        Returns:
            OrderOutcome with deferred=True when a human must decide first.
            Never raises for downstream or business failures.
        """
        record = OrderRecord(order_id=order_id)
        try:
            await self._ensure_credential()
            await self._gather_facts(record)
            self._analyze(record)

            if record.pending_approval:
                logger.info(
                    f"[DET-ORDER] Deferred for approval | order_id={order_id} | "
                    f"shipper={record.shipper_name} | pending_total={record.pending_total}"
                )
                return OrderOutcome(record=record, entry=build_report_entry(record), deferred=True)

            await self.apply(record)
        except DetentionError as e:
            return self._failed(record, e)

        entry = build_report_entry(record)
        record_order_outcome(entry.status.value)
        logger.info(
            f"[DET-ORDER] Order settled | order_id={order_id} | status={entry.status.value} | "
            f"action={entry.action_label} | amount={entry.amount}"
        )
        return OrderOutcome(record=record, entry=entry, error=_first_process_error(record))

    async def _ensure_credential(self) -> None:
        """Re-acquire the shared credential if an earlier order invalidated it."""
        if self._credentials is None:
            return
        if not await self._credentials.ensure():
            raise AuthenticationError(
                f"No valid credential: {self._credentials.last_error or 'refresh failed'}",
                error_code=ERROR_REFRESH_FAILED,
            )

    async def _gather_facts(self, record: OrderRecord) -> None:
        order_id = record.order_id
        facts = await self._call(
            ORDERS_DEPENDENCY, "get_order",
            lambda: self._orders.get_order(order_id),
            order_id,
            dedup_key=f"order:{order_id}",
        )
        record.order_view = facts
        record.tour_id = facts.tour_id
        record.shipper_name = facts.shipper_name

        rules = self._rules.get(facts.shipper_name or "")
        if rules is None:
            raise MissingBillingRulesError(f"No active billing rules for shipper '{facts.shipper_name}'")
        record.billing_rules = rules

        if not facts.tour_id:
            record.timestamp_error = "Order has no tour linkage"
            return

        tour_id = facts.tour_id
        try:
            record.timestamps = await self._call(
                TIMESTAMPS_DEPENDENCY, "get_timestamps",
                lambda: self._timestamps.get_timestamps(tour_id),
                order_id,
                dedup_key=f"tour:{tour_id}",
            )
        except DetentionError as e:
            record.timestamp_error = str(e)
            logger.warning(
                f"[DET-ORDER] Timestamps unavailable, continuing | order_id={order_id} | "
                f"tour_id={tour_id} | error={e}"
            )

    def _analyze(self, record: OrderRecord) -> None:
        facts = record.order_view
        for stop in facts.stops:
            timestamps = None
            if record.timestamps is not None:
                timestamps = record.timestamps.get(stop.stop_index)
            record.results.append(analyze(
                stop,
                timestamps,
                record.billing_rules,
                facts.status,
                facts.detention_lines,
                stop.stop_index,
                late_threshold_minutes=self._late_threshold,
            ))

    def _failed(self, record: OrderRecord, error: DetentionError) -> OrderOutcome:
        logger.error(
            f"[{error.error_code}] Order failed | order_id={record.order_id} | "
            f"category={error.category.value} | error={error.message}"
        )
        entry = build_report_entry(record, error=str(error))
        record_order_outcome(entry.status.value)
        return OrderOutcome(record=record, entry=entry, error=str(error))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def apply(
        self,
        record: OrderRecord,
        approval: Optional[ApprovalResolution] = None
    ) -> None:
        """
        Carry out every mutation the analysis asked for, in stop order.

        Pending-approval stops are charged when approval is APPROVED,
        released (or skipped without a hold) when DECLINED, and marked
        skipped/timeout otherwise. The first failing write stops the order.
        """
        plan: List[Tuple[AnalysisResult, Optional[str]]] = []
        for result in sorted(record.results, key=lambda r: r.stop_index):
            if result.processed:
                continue
            if result.action is DetentionAction.ANALYSIS_ONLY:
                result.mark_processed(ProcessedAction.ANALYSIS_ONLY, result.charge)
            elif result.action is DetentionAction.RELEASE_HOLD:
                plan.append((result, _RELEASE))
            elif result.action in (DetentionAction.CREATE_CHARGE, DetentionAction.UPDATE_CHARGE):
                plan.append((result, _CHARGE))
            elif result.action is DetentionAction.PENDING_APPROVAL and approval is not None:
                plan.append((result, self._approval_intent(result, approval)))

        auth_code = approval.auth_code if approval is not None else None
        for result, intent in plan:
            if intent is None:
                continue
            try:
                await self._apply_one(record, result, intent, auth_code)
            except DetentionError as e:
                result.process_error = str(e)
                logger.error(
                    f"[{e.error_code}] Write failed | order_id={record.order_id} | "
                    f"stop={result.stop_index} | intent={intent} | error={e.message}"
                )
                break

    def _approval_intent(self, result: AnalysisResult, approval: ApprovalResolution) -> Optional[str]:
        outcome = approval.outcome
        if outcome is ApprovalOutcome.APPROVED:
            return _CHARGE
        if outcome is ApprovalOutcome.DECLINED and result.hold_exists:
            return _RELEASE
        if outcome is ApprovalOutcome.TIMED_OUT:
            result.mark_processed(ProcessedAction.TIMEOUT)
        else:
            result.mark_processed(ProcessedAction.SKIPPED)
        return None

    async def _apply_one(
        self,
        record: OrderRecord,
        result: AnalysisResult,
        intent: str,
        auth_code: Optional[str]
    ) -> None:
        order_id = record.order_id
        stop_index = result.stop_index

        async def mutate(snapshot: OrderSnapshot) -> Tuple[ProcessedAction, Decimal]:
            line = snapshot.line_for_stop(stop_index)

            if intent == _RELEASE:
                if line is None or not line.is_hold:
                    return ProcessedAction.SKIPPED, ZERO
                remaining = [l for l in snapshot.pricing_lines if l.line_id != line.line_id]
                await self._mutations.update_order(order_id, snapshot.version, remaining)
                return ProcessedAction.RELEASED, ZERO

            if line is not None and not line.is_hold:
                # Charged by someone else since the analysis ran
                return ProcessedAction.SKIPPED, ZERO

            if line is not None:
                charged = DetentionLine(
                    line_id=line.line_id,
                    stop_index=stop_index,
                    amount=result.charge,
                    auth_number=auth_code or line.auth_number,
                    description=line.description,
                )
                lines = [charged if l.line_id == line.line_id else l for l in snapshot.pricing_lines]
                await self._mutations.update_order(order_id, snapshot.version, lines)
                return ProcessedAction.UPDATED, result.charge

            new_line = DetentionLine(
                line_id=f"DET-{order_id}-{stop_index}",
                stop_index=stop_index,
                amount=result.charge,
                auth_number=auth_code,
            )
            await self._mutations.add_pricing_line(order_id, snapshot.version, new_line)
            return ProcessedAction.CREATED, result.charge

        action, amount = await self._versioned_write(order_id, f"{intent}.stop{stop_index}", mutate)
        result.mark_processed(action, amount)

        if action is ProcessedAction.SKIPPED:
            logger.info(
                f"[DET-ORDER] Nothing to write, stop already settled | order_id={order_id} | "
                f"stop={stop_index} | intent={intent}"
            )
            return

        record_action_applied(action.value, amount)
        logger.info(
            f"[DET-ORDER] Applied {action.value} | order_id={order_id} | stop={stop_index} | "
            f"amount={amount}"
        )
        await self._append_comment(record, result)

    async def _versioned_write(
        self,
        order_id: str,
        label: str,
        mutate: Callable[[OrderSnapshot], Awaitable[Any]]
    ) -> Any:
        """Fetch a fresh snapshot and write; one refetch-and-retry on conflict."""
        for attempt in (1, 2):
            snapshot = await self._call(
                ORDERS_DEPENDENCY, "get_snapshot",
                lambda: self._mutations.get_snapshot(order_id),
                order_id,
            )
            try:
                return await self._call(ORDERS_DEPENDENCY, label, lambda: mutate(snapshot), order_id)
            except VersionConflictError:
                if attempt == 2:
                    raise
                logger.warning(
                    f"[DET-BIZ-003] Version conflict, refetching snapshot | order_id={order_id} | "
                    f"write={label} | version={snapshot.version}"
                )

    async def _append_comment(self, record: OrderRecord, result: AnalysisResult) -> None:
        text = (
            f"Detention stop {result.stop_index}: {result.processed_action.value} "
            f"{result.processed_amount} ({result.classification.value}) {result.breakdown}"
        ).strip()

        async def comment(snapshot: OrderSnapshot) -> int:
            return await self._mutations.add_comment(record.order_id, snapshot.version, text)

        try:
            await self._versioned_write(record.order_id, "add_comment", comment)
        except DetentionError as e:
            logger.warning(
                f"[DET-ORDER] Audit comment not written | order_id={record.order_id} | "
                f"stop={result.stop_index} | error={e}"
            )

    # ------------------------------------------------------------------
    # Approval follow-up
    # ------------------------------------------------------------------

    async def complete_approval(self, record: OrderRecord, approval: ApprovalResolution) -> ReportEntry:
        """Apply a resolved approval to a deferred order and build its final entry."""
        try:
            await self._ensure_credential()
        except AuthenticationError as e:
            return self._failed(record, e).entry
        await self.apply(record, approval=approval)
        entry = build_report_entry(record, approval=approval)
        record_order_outcome(entry.status.value)
        logger.info(
            f"[DET-ORDER] Approval applied | order_id={record.order_id} | "
            f"outcome={approval.outcome.value} | status={entry.status.value} | amount={entry.amount}"
        )
        return entry


# ============================================================================
# REPORT ENTRY
# ============================================================================

def _first_process_error(record: OrderRecord) -> Optional[str]:
    for result in record.results:
        if result.process_error:
            return result.process_error
    return None


def _with_action(results: List[AnalysisResult], action: ProcessedAction) -> List[AnalysisResult]:
    return [r for r in results if r.processed_action is action]


def _notes(record: OrderRecord) -> str:
    notes = [
        f"Stop {r.stop_index}: {r.classification.value}" + (f" - {r.breakdown}" if r.breakdown else "")
        for r in record.results
    ]
    if record.timestamp_error:
        notes.append(f"Timestamps: {record.timestamp_error}")
    return "; ".join(notes)


def build_report_entry(
    record: OrderRecord,
    error: Optional[str] = None,
    approval: Optional[ApprovalResolution] = None
) -> ReportEntry:
    """
    Collapse an order's per-stop results into one report entry.

    Precedence: failure, applied writes, analysis-only, timeout, skipped,
    awaiting approval, then no action.
    """
    shipper = record.shipper_name or ""
    results = record.results

    process_error = error or _first_process_error(record)
    if process_error:
        notes = _notes(record)
        return ReportEntry(
            order_id=record.order_id,
            shipper=shipper,
            action_label="Error",
            amount=ZERO,
            status=ReportStatus.FAILED,
            notes=f"{process_error}; {notes}" if notes else process_error,
        )

    applied = [r for r in results if r.processed_action in _ACTION_LABELS]

    if applied:
        labels: List[str] = []
        for r in applied:
            label = _ACTION_LABELS[r.processed_action]
            if label not in labels:
                labels.append(label)
        if approval is not None:
            labels.insert(0, _APPROVAL_LABELS[approval.outcome])
        status = ReportStatus.SUCCESS
        label = "; ".join(labels)
        amount = sum((r.processed_amount for r in applied), ZERO)
    elif _with_action(results, ProcessedAction.ANALYSIS_ONLY):
        status = ReportStatus.INFO
        label = "Analysis only"
        amount = sum((r.processed_amount for r in _with_action(results, ProcessedAction.ANALYSIS_ONLY)), ZERO)
    elif _with_action(results, ProcessedAction.TIMEOUT):
        status = ReportStatus.TIMEOUT
        label = _APPROVAL_LABELS[ApprovalOutcome.TIMED_OUT]
        amount = sum((r.charge for r in _with_action(results, ProcessedAction.TIMEOUT)), ZERO)
    elif _with_action(results, ProcessedAction.SKIPPED):
        status = ReportStatus.SKIPPED
        label = _APPROVAL_LABELS[approval.outcome] if approval is not None else "Skipped"
        amount = ZERO
    elif record.pending_approval:
        status = ReportStatus.PENDING
        label = "Awaiting approval"
        amount = record.pending_total
    elif any(r.action is DetentionAction.PENDING_RETRY for r in results):
        status = ReportStatus.SKIPPED
        label = "Retry later"
        amount = ZERO
    else:
        status = ReportStatus.SKIPPED
        label = "No action"
        amount = ZERO

    return ReportEntry(
        order_id=record.order_id,
        shipper=shipper,
        action_label=label,
        amount=amount,
        status=status,
        notes=_notes(record),
    )


__all__ = [
    "OrderProcessor",
    "OrderOutcome",
    "build_report_entry",
    "ORDERS_DEPENDENCY",
    "TIMESTAMPS_DEPENDENCY",
]
