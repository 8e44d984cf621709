"""
Unit Tests for the Detention Approval Gate

Reliability Level: L6 Critical (Sovereign Tier)

PRIME DIRECTIVE:
    "The engine computes. A human confirms. Nothing is charged twice."

Tests:
- First of decision / timeout / cancellation wins
- Timeout resolves TIMED_OUT, never approves
- APPROVE without a required auth code is refused (APPR-001) and the
  request stays open
- Decisions for unknown or resolved requests are refused
- Decision string parsing (APPR-004)
- Console and auto-skip channels; a late console answer never reaches the
  next request
"""

import asyncio
import os
import queue
import sys
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.logic.detention_models import AnalysisResult, Classification, DetentionAction
from services.approval_console import ApprovalConsole, auto_skip_notifier, render_request
from services.approval_gate import ApprovalGate
from services.approval_models import (
    ApprovalDecision,
    ApprovalErrorCode,
    ApprovalOutcome,
    DecisionChannel,
    DecisionType,
)


def _pending_stop(stop_index: int = 0, charge: str = "70.00") -> AnalysisResult:
    return AnalysisResult(
        stop_index=stop_index,
        classification=Classification.DETENTION_CHARGEABLE,
        action=DetentionAction.PENDING_APPROVAL,
        charge=Decimal(charge),
        breakdown="Delay 95 min - 60 min free = 35 min chargeable",
        chargeable_minutes=35,
    )


async def _open(gate: ApprovalGate, order_id: str = "ORD-1", auth: bool = False, cancel=None):
    task = asyncio.ensure_future(gate.request_approval(
        order_id, "ACME", [_pending_stop(0), _pending_stop(1, "30.00")], auth, cancel_event=cancel
    ))
    for _ in range(5):
        await asyncio.sleep(0)
        if gate.get_request(order_id) is not None:
            break
    return task


class TestResolution:

    @pytest.mark.asyncio
    async def test_approve_resolves_request(self) -> None:
        gate = ApprovalGate(timeout_seconds=5)
        task = await _open(gate)

        pending = gate.get_pending()
        assert [r.order_id for r in pending] == ["ORD-1"]
        assert pending[0].total == Decimal("100.00")

        result = gate.submit_decision("ORD-1", ApprovalDecision(DecisionType.APPROVE, operator_id="op"))
        resolution = await task

        assert result.accepted is True
        assert resolution.outcome is ApprovalOutcome.APPROVED
        assert resolution.decided_by == "op"
        assert gate.get_pending() == []

    @pytest.mark.asyncio
    async def test_timeout_never_approves(self) -> None:
        gate = ApprovalGate(timeout_seconds=0.05)

        resolution = await gate.request_approval("ORD-1", "ACME", [_pending_stop()], False)

        assert resolution.outcome is ApprovalOutcome.TIMED_OUT
        assert resolution.channel is DecisionChannel.SYSTEM

    @pytest.mark.asyncio
    async def test_cancellation_skips(self) -> None:
        gate = ApprovalGate(timeout_seconds=5)
        cancel = asyncio.Event()
        task = await _open(gate, cancel=cancel)

        cancel.set()
        resolution = await task

        assert resolution.outcome is ApprovalOutcome.SKIPPED
        assert resolution.reason == "Batch cancelled"

    @pytest.mark.asyncio
    async def test_missing_auth_code_keeps_request_open(self) -> None:
        gate = ApprovalGate(timeout_seconds=5)
        task = await _open(gate, auth=True)

        refused = gate.submit_decision("ORD-1", ApprovalDecision(DecisionType.APPROVE))
        assert refused.accepted is False
        assert refused.error_code == ApprovalErrorCode.AUTH_CODE_REQUIRED
        assert gate.get_request("ORD-1") is not None

        gate.submit_decision("ORD-1", ApprovalDecision(DecisionType.APPROVE, auth_code="AUTH-77"))
        resolution = await task

        assert resolution.outcome is ApprovalOutcome.APPROVED
        assert resolution.auth_code == "AUTH-77"

    @pytest.mark.asyncio
    async def test_decline_does_not_need_auth_code(self) -> None:
        gate = ApprovalGate(timeout_seconds=5)
        task = await _open(gate, auth=True)

        assert gate.submit_decision("ORD-1", ApprovalDecision(DecisionType.DECLINE)).accepted
        assert (await task).outcome is ApprovalOutcome.DECLINED

    def test_unknown_order_is_not_pending(self) -> None:
        gate = ApprovalGate()

        result = gate.submit_decision("ORD-404", ApprovalDecision(DecisionType.SKIP))

        assert result.accepted is False
        assert result.error_code == ApprovalErrorCode.NOT_PENDING

    @pytest.mark.asyncio
    async def test_duplicate_request_rejected(self) -> None:
        gate = ApprovalGate(timeout_seconds=5)
        task = await _open(gate)

        with pytest.raises(ValueError):
            await gate.request_approval("ORD-1", "ACME", [_pending_stop()], False)

        gate.submit_decision("ORD-1", ApprovalDecision(DecisionType.SKIP))
        await task

    def test_rejects_non_positive_timeout(self) -> None:
        with pytest.raises(ValueError):
            ApprovalGate(timeout_seconds=0)


class TestDecisionParsing:

    @pytest.mark.parametrize("raw,expected", [
        ("approve", DecisionType.APPROVE),
        ("A", DecisionType.APPROVE),
        (" d ", DecisionType.DECLINE),
        ("reject", DecisionType.DECLINE),
        ("Skip", DecisionType.SKIP),
    ])
    def test_aliases(self, raw: str, expected: DecisionType) -> None:
        assert ApprovalDecision.parse(raw).decision_type is expected

    def test_unknown_decision(self) -> None:
        with pytest.raises(ValueError) as exc_info:
            ApprovalDecision.parse("maybe")

        assert ApprovalErrorCode.UNKNOWN_DECISION in str(exc_info.value)

    def test_blank_auth_code_is_none(self) -> None:
        assert ApprovalDecision.parse("A", auth_code="   ").auth_code is None


def _scripted(*answers: str):
    remaining = list(answers)

    def read(_prompt: str) -> str:
        if not remaining:
            raise EOFError
        return remaining.pop(0)

    return read


def _from_queue(lines: "queue.Queue"):
    def read(_prompt: str) -> str:
        line = lines.get()
        if line is None:
            raise EOFError
        return line

    return read


class TestChannels:

    @pytest.mark.asyncio
    async def test_auto_skip_notifier(self) -> None:
        gate = ApprovalGate(timeout_seconds=5)
        gate.set_notifier(auto_skip_notifier(gate))

        resolution = await gate.request_approval("ORD-1", "ACME", [_pending_stop()], True)

        assert resolution.outcome is ApprovalOutcome.SKIPPED
        assert resolution.channel is DecisionChannel.SYSTEM

    @pytest.mark.asyncio
    async def test_console_reprompts_for_auth_code(self) -> None:
        gate = ApprovalGate(timeout_seconds=5)
        output = []
        console = ApprovalConsole(gate, input_func=_scripted("x", "a", "", "a", "AUTH-9"), output=output.append)
        gate.set_notifier(console)

        resolution = await gate.request_approval("ORD-1", "ACME", [_pending_stop()], True)

        assert resolution.outcome is ApprovalOutcome.APPROVED
        assert resolution.auth_code == "AUTH-9"
        assert resolution.channel is DecisionChannel.CLI
        assert any("APPR-004" in line for line in output)
        assert any("APPR-001" in line for line in output)

    @pytest.mark.asyncio
    async def test_late_answer_is_not_applied_to_next_request(self) -> None:
        gate = ApprovalGate(timeout_seconds=0.2)
        lines = queue.Queue()
        console = ApprovalConsole(
            gate, input_func=_from_queue(lines), output=lambda _text: None, poll_interval_seconds=0.01
        )
        gate.set_notifier(console)

        first = await gate.request_approval("ORD-1", "ACME", [_pending_stop()], False)
        second_task = await _open(gate, "ORD-2")
        lines.put("d")
        second = await asyncio.wait_for(second_task, timeout=5)
        lines.put(None)

        assert first.outcome is ApprovalOutcome.TIMED_OUT
        assert second.outcome is ApprovalOutcome.DECLINED
        assert second.channel is DecisionChannel.CLI

    @pytest.mark.asyncio
    async def test_typeahead_before_prompt_is_discarded(self) -> None:
        gate = ApprovalGate(timeout_seconds=0.2)
        lines = queue.Queue()
        console = ApprovalConsole(
            gate, input_func=_from_queue(lines), output=lambda _text: None, poll_interval_seconds=0.01
        )
        gate.set_notifier(console)

        first = await gate.request_approval("ORD-1", "ACME", [_pending_stop()], False)
        lines.put("a")
        await asyncio.sleep(0.05)
        second = await gate.request_approval("ORD-2", "ACME", [_pending_stop()], False)
        lines.put(None)

        assert first.outcome is ApprovalOutcome.TIMED_OUT
        assert second.outcome is ApprovalOutcome.TIMED_OUT

    def test_render_request_lists_stops(self) -> None:
        async def build():
            gate = ApprovalGate(timeout_seconds=5)
            task = await _open(gate, auth=True)
            request = gate.get_request("ORD-1")
            gate.submit_decision("ORD-1", ApprovalDecision(DecisionType.SKIP))
            await task
            return request

        text = render_request(asyncio.run(build()))

        assert "order ORD-1 (ACME)" in text
        assert "$100.00" in text
        assert "Stop 1: $30.00" in text
        assert "authorization code is required" in text
