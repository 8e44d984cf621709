"""
Unit Tests for the Order Processor

Reliability Level: SOVEREIGN TIER

Runs the per-order pipeline against in-memory downstream fakes.

Tests:
- Create / update / release writes and their report entries
- Version conflicts: one refetch-and-retry, then failure
- Missing billing rules and missing tour linkage
- Deferral for approval, and each approval outcome
- Retry of transient failures, credential invalidation on auth errors
- Audit comment failures never fail the order
"""

import os
import sys
from datetime import datetime, timezone
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.logic.circuit_breaker import CircuitBreakerRegistry
from app.logic.detention_models import DetentionAction, DetentionLine, ProcessedAction
from app.logic.order_processor import OrderProcessor
from app.reporting.report_writer import ReportStatus
from app.transport.credential_manager import CredentialManager
from app.transport.errors import AuthenticationError, NetworkError, VersionConflictError
from app.transport.retry_policy import RetryPolicy
from services.approval_models import ApprovalOutcome, ApprovalResolution, DecisionChannel
from services.billing_rules import BillingRulesRepository
from tests.fakes import (
    FakeOrderSystem,
    FakeTimestampSource,
    FakeTokenSource,
    RecordingSleep,
    T0,
    make_rules,
    stop_times,
)


HOLD = DetentionLine(line_id="H-1", stop_index=0)


def _processor(orders: FakeOrderSystem, timestamps: FakeTimestampSource, rules=None, **kwargs) -> OrderProcessor:
    return OrderProcessor(
        orders=orders,
        timestamps=timestamps,
        mutations=orders,
        rules=BillingRulesRepository([rules or make_rules()]),
        retry_policy=RetryPolicy(max_attempts=3),
        sleep=RecordingSleep(),
        **kwargs
    )


def _resolution(outcome: ApprovalOutcome, auth_code=None) -> ApprovalResolution:
    return ApprovalResolution(
        order_id="ORD-1",
        outcome=outcome,
        decided_at=datetime.now(timezone.utc),
        channel=DecisionChannel.CLI,
        auth_code=auth_code,
    )


@pytest.fixture
def orders() -> FakeOrderSystem:
    return FakeOrderSystem()


@pytest.fixture
def timestamps() -> FakeTimestampSource:
    return FakeTimestampSource()


# =============================================================================
# Writes
# =============================================================================

class TestWrites:

    @pytest.mark.asyncio
    async def test_creates_charge_line(self, orders, timestamps) -> None:
        orders.add_order("ORD-1")
        timestamps.set("ORD-1", stop_times(95))

        outcome = await _processor(orders, timestamps).process("ORD-1")

        assert outcome.failed is False
        assert outcome.entry.status is ReportStatus.SUCCESS
        assert outcome.entry.action_label == "Charge created"
        assert outcome.entry.amount == Decimal("70.00")
        assert orders.lines["ORD-1"] == [DetentionLine("DET-ORD-1-0", 0, Decimal("70.00"))]
        assert len(orders.comments["ORD-1"]) == 1

    @pytest.mark.asyncio
    async def test_updates_hold_line(self, orders, timestamps) -> None:
        orders.add_order("ORD-1", lines=[HOLD])
        timestamps.set("ORD-1", stop_times(95))

        outcome = await _processor(orders, timestamps).process("ORD-1")

        assert outcome.entry.action_label == "Charge applied"
        assert orders.lines["ORD-1"][0].line_id == "H-1"
        assert orders.lines["ORD-1"][0].amount == Decimal("70.00")

    @pytest.mark.asyncio
    async def test_releases_hold_for_late_driver(self, orders, timestamps) -> None:
        orders.add_order("ORD-1", lines=[HOLD])
        timestamps.set("ORD-1", stop_times(95, late_minutes=40))

        outcome = await _processor(orders, timestamps).process("ORD-1")

        assert outcome.entry.status is ReportStatus.SUCCESS
        assert outcome.entry.action_label == "Hold released"
        assert outcome.entry.amount == Decimal("0")
        assert orders.lines["ORD-1"] == []

    @pytest.mark.asyncio
    async def test_analysis_only_reports_info(self, orders, timestamps) -> None:
        orders.add_order("ORD-1")
        timestamps.set("ORD-1", stop_times(95))

        outcome = await _processor(orders, timestamps, rules=make_rules(auto_charge_allowed=False)).process("ORD-1")

        assert outcome.entry.status is ReportStatus.INFO
        assert outcome.entry.action_label == "Analysis only"
        assert outcome.entry.amount == Decimal("70.00")
        assert orders.count("add_pricing_line") == 0

    @pytest.mark.asyncio
    async def test_existing_charge_is_not_touched(self, orders, timestamps) -> None:
        orders.add_order("ORD-1", lines=[DetentionLine("C-1", 0, Decimal("45.00"))])
        timestamps.set("ORD-1", stop_times(95))

        outcome = await _processor(orders, timestamps).process("ORD-1")

        assert outcome.entry.status is ReportStatus.SKIPPED
        assert outcome.entry.action_label == "No action"
        assert "CHARGE_EXISTS" in outcome.entry.notes
        assert orders.count("get_snapshot") == 0

    @pytest.mark.asyncio
    async def test_multi_stop_order_applies_in_stop_order(self, orders, timestamps) -> None:
        orders.add_order("ORD-1", stops=[("PICKUP", "LIVE"), ("DELIVERY", "LIVE")],
                         lines=[DetentionLine("H-1", 1)])
        timestamps.set("ORD-1", stop_times(150), stop_times(95))

        outcome = await _processor(orders, timestamps).process("ORD-1")

        # pickup: 150 - 120 = 30 min -> $60, delivery hold -> $70
        assert outcome.entry.amount == Decimal("130.00")
        assert outcome.entry.action_label == "Charge created; Charge applied"
        writes = [op for op, _ in orders.calls if op in ("add_pricing_line", "update_order")]
        assert writes == ["add_pricing_line", "update_order"]


# =============================================================================
# Version conflicts
# =============================================================================

class TestVersionConflicts:

    @pytest.mark.asyncio
    async def test_conflict_refetches_once_and_succeeds(self, orders, timestamps) -> None:
        orders.add_order("ORD-1")
        timestamps.set("ORD-1", stop_times(95))
        orders.fail("add_pricing_line", "ORD-1", VersionConflictError("stale"))

        outcome = await _processor(orders, timestamps).process("ORD-1")

        assert outcome.entry.status is ReportStatus.SUCCESS
        assert orders.count("add_pricing_line") == 2
        assert orders.count("get_snapshot") >= 2

    @pytest.mark.asyncio
    async def test_second_conflict_fails_order(self, orders, timestamps) -> None:
        orders.add_order("ORD-1")
        timestamps.set("ORD-1", stop_times(95))
        orders.fail("add_pricing_line", "ORD-1", VersionConflictError("stale"), VersionConflictError("stale"))

        outcome = await _processor(orders, timestamps).process("ORD-1")

        assert outcome.failed is True
        assert outcome.entry.status is ReportStatus.FAILED
        assert "DET-BIZ-003" in outcome.entry.notes
        assert orders.lines["ORD-1"] == []

    @pytest.mark.asyncio
    async def test_charge_appearing_concurrently_is_skipped(self, orders, timestamps) -> None:
        orders.add_order("ORD-1")
        timestamps.set("ORD-1", stop_times(95))
        processor = _processor(orders, timestamps)

        original = orders.get_snapshot

        async def racing_snapshot(order_id):
            orders.lines[order_id] = [DetentionLine("OTHER", 0, Decimal("10.00"))]
            return await original(order_id)

        orders.get_snapshot = racing_snapshot
        outcome = await processor.process("ORD-1")

        assert outcome.record.results[0].processed_action is ProcessedAction.SKIPPED
        assert orders.count("add_pricing_line") == 0
        assert outcome.entry.status is ReportStatus.SKIPPED


# =============================================================================
# Failures
# =============================================================================

class TestFailures:

    @pytest.mark.asyncio
    async def test_missing_rules_fail_order(self, orders, timestamps) -> None:
        orders.add_order("ORD-1", shipper="Nobody Inc")

        outcome = await _processor(orders, timestamps).process("ORD-1")

        assert outcome.failed
        assert "DET-BIZ-002" in outcome.error
        assert outcome.entry.shipper == "Nobody Inc"

    @pytest.mark.asyncio
    async def test_missing_tour_is_pending_retry(self, orders, timestamps) -> None:
        orders.add_order("ORD-1", tour_id=None)

        outcome = await _processor(orders, timestamps).process("ORD-1")

        assert outcome.failed is False
        assert outcome.record.results[0].action is DetentionAction.PENDING_RETRY
        assert outcome.entry.action_label == "Retry later"
        assert "no tour linkage" in outcome.entry.notes

    @pytest.mark.asyncio
    async def test_timestamp_failure_is_not_fatal(self, orders, timestamps) -> None:
        orders.add_order("ORD-1")
        timestamps.failures["T-ORD-1"] = [NetworkError("down")] * 3

        outcome = await _processor(orders, timestamps).process("ORD-1")

        assert outcome.failed is False
        assert outcome.entry.action_label == "Retry later"
        assert len(timestamps.calls) == 3

    @pytest.mark.asyncio
    async def test_transient_read_failure_is_retried(self, orders, timestamps) -> None:
        orders.add_order("ORD-1")
        timestamps.set("ORD-1", stop_times(95))
        orders.fail("get_order", "ORD-1", NetworkError("blip"))

        outcome = await _processor(orders, timestamps).process("ORD-1")

        assert outcome.entry.status is ReportStatus.SUCCESS
        assert orders.count("get_order") == 2

    @pytest.mark.asyncio
    async def test_auth_failure_invalidates_credential(self, orders, timestamps) -> None:
        orders.add_order("ORD-1")
        orders.fail("get_order", "ORD-1", AuthenticationError("expired"))
        credentials = CredentialManager(FakeTokenSource(), clock=lambda: float(T0))
        await credentials.ensure()

        outcome = await _processor(orders, timestamps, credentials=credentials).process("ORD-1")

        assert outcome.failed
        assert credentials.credential is None
        assert orders.count("get_order") == 1

    @pytest.mark.asyncio
    async def test_next_order_reacquires_invalidated_credential(self, orders, timestamps) -> None:
        orders.add_order("ORD-1")
        timestamps.set("ORD-1", stop_times(95))
        source = FakeTokenSource()
        credentials = CredentialManager(source, clock=lambda: float(T0))
        await credentials.ensure()
        credentials.invalidate()

        outcome = await _processor(orders, timestamps, credentials=credentials).process("ORD-1")

        assert outcome.entry.status is ReportStatus.SUCCESS
        assert credentials.token == "tok-2"
        assert source.refresh_calls == 2

    @pytest.mark.asyncio
    async def test_failed_refresh_fails_order_without_reads(self, orders, timestamps) -> None:
        orders.add_order("ORD-1")
        source = FakeTokenSource()
        source.fail_with = AuthenticationError("login rejected")
        credentials = CredentialManager(source, clock=lambda: float(T0))

        outcome = await _processor(orders, timestamps, credentials=credentials).process("ORD-1")

        assert outcome.failed
        assert "DET-AUTH-002" in outcome.error
        assert orders.count("get_order") == 0

    @pytest.mark.asyncio
    async def test_open_breaker_fails_fast(self, orders, timestamps) -> None:
        orders.add_order("ORD-1")
        breakers = CircuitBreakerRegistry(failure_threshold=1)
        orders.fail("get_order", "ORD-1", NetworkError("down"), NetworkError("down"))

        processor = _processor(orders, timestamps, breakers=breakers)
        outcome = await processor.process("ORD-1")

        assert outcome.failed
        assert "CB-OPEN-001" in outcome.error
        assert orders.count("get_order") == 1

    @pytest.mark.asyncio
    async def test_comment_failure_does_not_fail_order(self, orders, timestamps) -> None:
        orders.add_order("ORD-1")
        timestamps.set("ORD-1", stop_times(95))
        orders.fail("add_comment", "ORD-1", NetworkError("down"), NetworkError("down"), NetworkError("down"))

        outcome = await _processor(orders, timestamps).process("ORD-1")

        assert outcome.entry.status is ReportStatus.SUCCESS
        assert orders.comments["ORD-1"] == []


# =============================================================================
# Approval
# =============================================================================

class TestApproval:

    async def _deferred(self, orders, timestamps, lines=()):
        orders.add_order("ORD-1", lines=lines)
        timestamps.set("ORD-1", stop_times(95))
        processor = _processor(orders, timestamps, rules=make_rules(requires_approval=True))
        outcome = await processor.process("ORD-1")
        return processor, outcome

    @pytest.mark.asyncio
    async def test_pending_order_is_deferred_without_writes(self, orders, timestamps) -> None:
        _, outcome = await self._deferred(orders, timestamps)

        assert outcome.deferred is True
        assert outcome.entry.status is ReportStatus.PENDING
        assert outcome.entry.amount == Decimal("70.00")
        assert orders.count("get_snapshot") == 0

    @pytest.mark.asyncio
    async def test_approved_charges_with_auth_code(self, orders, timestamps) -> None:
        processor, outcome = await self._deferred(orders, timestamps)

        entry = await processor.complete_approval(
            outcome.record, _resolution(ApprovalOutcome.APPROVED, "AUTH-5")
        )

        assert entry.status is ReportStatus.SUCCESS
        assert entry.action_label == "Approved; Charge created"
        assert orders.lines["ORD-1"][0].auth_number == "AUTH-5"

    @pytest.mark.asyncio
    async def test_declined_releases_hold(self, orders, timestamps) -> None:
        processor, outcome = await self._deferred(orders, timestamps, lines=[HOLD])

        entry = await processor.complete_approval(outcome.record, _resolution(ApprovalOutcome.DECLINED))

        assert entry.action_label == "Declined; Hold released"
        assert orders.lines["ORD-1"] == []

    @pytest.mark.asyncio
    async def test_declined_without_hold_is_skipped(self, orders, timestamps) -> None:
        processor, outcome = await self._deferred(orders, timestamps)

        entry = await processor.complete_approval(outcome.record, _resolution(ApprovalOutcome.DECLINED))

        assert entry.status is ReportStatus.SKIPPED
        assert entry.action_label == "Declined"

    @pytest.mark.asyncio
    async def test_timeout_is_reported(self, orders, timestamps) -> None:
        processor, outcome = await self._deferred(orders, timestamps)

        entry = await processor.complete_approval(outcome.record, _resolution(ApprovalOutcome.TIMED_OUT))

        assert entry.status is ReportStatus.TIMEOUT
        assert entry.amount == Decimal("70.00")
        assert orders.count("add_pricing_line") == 0
