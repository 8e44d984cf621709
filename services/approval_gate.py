"""
============================================================================
Detention Approval Gate - Core Gate Service
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: Pending totals are decimal.Decimal
Traceability: Every request, decision and expiry is logged with order_id

PRIME DIRECTIVE:
    "The engine computes. A human confirms. Nothing is charged twice."

This module implements the time-boxed approval step for orders carrying
one or more PENDING_APPROVAL stops:
- request_approval(): open a request and await its resolution
- submit_decision(): operator answer (CLI prompt or HTTP endpoint)
- get_pending(): list of open requests for operator surfaces

RESOLUTION RULES:
    - First of {decision, timeout, cancellation signal} wins
    - A resolved request can never be resolved again
    - APPROVE without a required authorization code is refused and the
      request stays open, so the operator is prompted again
    - Timeout = TIMED_OUT (never auto-approve)
    - Cancellation signal = SKIPPED

ERROR CODES:
    - APPR-001: Authorization code required
    - APPR-002: No pending approval for order
    - APPR-003: Approval already resolved

============================================================================
"""

from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Union
import asyncio
import logging
import uuid

from app.logic.detention_models import AnalysisResult, ZERO
from app.observability.metrics import record_approval_outcome
from services.approval_models import (
    ApprovalDecision,
    ApprovalErrorCode,
    ApprovalOutcome,
    ApprovalRequest,
    ApprovalResolution,
    ApprovalStopLine,
    DecisionChannel,
    DecisionType,
    SubmitResult,
)

# Configure module logger
logger = logging.getLogger(__name__)


# Default: 5 minutes to decide
DEFAULT_APPROVAL_TIMEOUT_SECONDS = 300.0

ApprovalNotifier = Callable[[ApprovalRequest], Union[None, Awaitable[None]]]


class _PendingApproval:
    """An open request and the future its resolution lands in."""

    def __init__(self, request: ApprovalRequest, future: "asyncio.Future[ApprovalResolution]"):
        self.request = request
        self.future = future


class ApprovalGate:
    """
    Time-boxed human decision point.

    Reliability Level: L6 Critical
    Input Constraints: timeout_seconds must be positive
    Side Effects: Calls the notifier for every new request, updates metrics

    Example Usage:
        gate = ApprovalGate(timeout_seconds=120, notifier=prompt_operator)
        resolution = await gate.request_approval("ORD-1", "ACME", stops, True)
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
        notifier: Optional[ApprovalNotifier] = None
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("Approval timeout_seconds must be positive")
        self.timeout_seconds = timeout_seconds
        self._notifier = notifier
        self._pending: Dict[str, _PendingApproval] = {}

    def set_notifier(self, notifier: Optional[ApprovalNotifier]) -> None:
        self._notifier = notifier

    def get_pending(self) -> List[ApprovalRequest]:
        """Open requests, oldest first."""
        return sorted(
            (p.request for p in self._pending.values() if not p.future.done()),
            key=lambda r: r.requested_at,
        )

    def get_request(self, order_id: str) -> Optional[ApprovalRequest]:
        pending = self._pending.get(order_id)
        return pending.request if pending is not None else None

    async def request_approval(
        self,
        order_id: str,
        shipper: str,
        stops: Sequence[AnalysisResult],
        auth_number_required: bool,
        cancel_event: Optional[asyncio.Event] = None
    ) -> ApprovalResolution:
        """
        Open an approval request and wait for it to resolve.

        Args:
            order_id: Order awaiting confirmation
            shipper: Shipper name shown to the operator
            stops: PENDING_APPROVAL analysis results for the order
            auth_number_required: Approve must carry an authorization code
            cancel_event: Optional signal that abandons the wait (SKIPPED)

        Returns:
            ApprovalResolution (never raises on timeout)
        """
        if order_id in self._pending:
            raise ValueError(
                f"[{ApprovalErrorCode.ALREADY_RESOLVED}] Approval already open for order {order_id}"
            )

        now = datetime.now(timezone.utc)
        lines = [
            ApprovalStopLine(
                stop_index=s.stop_index,
                charge=s.charge,
                breakdown=s.breakdown,
                chargeable_minutes=s.chargeable_minutes,
                hit_max=s.hit_max,
            )
            for s in stops
        ]
        request = ApprovalRequest(
            request_id=str(uuid.uuid4()),
            order_id=order_id,
            shipper=shipper,
            total=sum((line.charge for line in lines), ZERO),
            stops=lines,
            auth_number_required=auth_number_required,
            requested_at=now,
            expires_at=now + timedelta(seconds=self.timeout_seconds),
        )

        loop = asyncio.get_running_loop()
        future: "asyncio.Future[ApprovalResolution]" = loop.create_future()
        self._pending[order_id] = _PendingApproval(request, future)

        logger.info(
            f"[APPR] Approval requested | order_id={order_id} | shipper={shipper} | "
            f"total={request.total} | stops={len(lines)} | "
            f"auth_required={auth_number_required} | timeout={self.timeout_seconds:.0f}s"
        )

        cancel_task: Optional["asyncio.Task[bool]"] = None
        try:
            await self._notify(request)

            waiters = {future}
            if cancel_event is not None:
                cancel_task = asyncio.ensure_future(cancel_event.wait())
                waiters.add(cancel_task)

            if not future.done():
                await asyncio.wait(
                    waiters,
                    timeout=self.timeout_seconds,
                    return_when=asyncio.FIRST_COMPLETED,
                )

            if not future.done():
                if cancel_task is not None and cancel_task.done():
                    self._resolve(order_id, ApprovalOutcome.SKIPPED, DecisionChannel.SYSTEM,
                                  reason="Batch cancelled")
                else:
                    self._resolve(order_id, ApprovalOutcome.TIMED_OUT, DecisionChannel.SYSTEM,
                                  reason=f"No decision within {self.timeout_seconds:.0f}s")

            resolution = future.result()
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()
            if not future.done():
                future.cancel()
            self._pending.pop(order_id, None)

        record_approval_outcome(resolution.outcome.value)
        logger.info(
            f"[APPR] Approval resolved | order_id={order_id} | outcome={resolution.outcome.value} | "
            f"channel={resolution.channel.value} | decided_by={resolution.decided_by}"
        )
        return resolution

    def submit_decision(self, order_id: str, decision: ApprovalDecision) -> SubmitResult:
        """
        Apply an operator decision to an open request.

        Returns:
            SubmitResult(accepted=False, ...) when no request is open, the
            request already resolved, or an auth code is missing.
        """
        pending = self._pending.get(order_id)
        if pending is None:
            return SubmitResult(
                accepted=False,
                order_id=order_id,
                error_code=ApprovalErrorCode.NOT_PENDING,
                message=f"No pending approval for order {order_id}",
            )

        if pending.future.done():
            return SubmitResult(
                accepted=False,
                order_id=order_id,
                error_code=ApprovalErrorCode.ALREADY_RESOLVED,
                message=f"Approval for order {order_id} already resolved",
            )

        if (
            decision.decision_type is DecisionType.APPROVE
            and pending.request.auth_number_required
            and not decision.auth_code
        ):
            logger.warning(
                f"[{ApprovalErrorCode.AUTH_CODE_REQUIRED}] Approve refused, authorization code "
                f"required | order_id={order_id} | operator={decision.operator_id}"
            )
            return SubmitResult(
                accepted=False,
                order_id=order_id,
                error_code=ApprovalErrorCode.AUTH_CODE_REQUIRED,
                message="Authorization code is required to approve this charge",
            )

        self._resolve(
            order_id,
            decision.outcome,
            decision.channel,
            auth_code=decision.auth_code,
            decided_by=decision.operator_id,
            reason=decision.reason,
        )
        return SubmitResult(accepted=True, order_id=order_id, message=decision.outcome.value)

    def _resolve(
        self,
        order_id: str,
        outcome: ApprovalOutcome,
        channel: DecisionChannel,
        auth_code: Optional[str] = None,
        decided_by: Optional[str] = None,
        reason: Optional[str] = None
    ) -> bool:
        pending = self._pending.get(order_id)
        if pending is None or pending.future.done():
            return False
        pending.future.set_result(ApprovalResolution(
            order_id=order_id,
            outcome=outcome,
            decided_at=datetime.now(timezone.utc),
            channel=channel,
            auth_code=auth_code,
            decided_by=decided_by,
            reason=reason,
        ))
        return True

    async def _notify(self, request: ApprovalRequest) -> None:
        if self._notifier is None:
            return
        try:
            outcome = self._notifier(request)
            if asyncio.iscoroutine(outcome) or isinstance(outcome, asyncio.Future):
                await outcome
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[APPR] Approval notifier failed | order_id={request.order_id} | error={e}")


__all__ = [
    "ApprovalGate",
    "ApprovalNotifier",
    "DEFAULT_APPROVAL_TIMEOUT_SECONDS",
]
