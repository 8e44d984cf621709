"""
In-memory implementations of the downstream interfaces for tests.

FakeOrderSystem keeps real version semantics: every write bumps the version
and a stale version raises VersionConflictError, so tests exercise the same
refetch-and-retry paths as production.
When `credentials` is set, reads are rejected with AuthenticationError
unless the manager holds a token that is not in `revoked_tokens`.
"""

from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Set, Tuple
import asyncio

from app.clients.base import OrderFactsSource, OrderMutationSink, TimestampFactsSource
from app.logic.detention_models import (
    DetentionLine,
    OrderFacts,
    OrderSnapshot,
    StopInfo,
    TimestampFacts,
)
from app.transport.credential_manager import IssuedToken, TokenSource
from app.transport.errors import AuthenticationError, VersionConflictError
from services.billing_rules import BillingRules, RateUnit


T0 = 1_700_000_000


def stop_times(delay_minutes: int, late_minutes: int = 0) -> TimestampFacts:
    """Planned/actual times where departure slips by delay_minutes."""
    return TimestampFacts(
        planned_arrival=T0,
        actual_arrival=T0 + late_minutes * 60,
        planned_departure=T0 + 30 * 60,
        actual_departure=T0 + 30 * 60 + delay_minutes * 60,
    )


def make_rules(
    shipper: str = "ACME",
    rate: str = "2.00",
    rate_unit: RateUnit = RateUnit.PER_MINUTE,
    max_charge: str = "100.00",
    free_time: Optional[Dict[Tuple[str, str], int]] = None,
    auto_charge_allowed: bool = True,
    requires_approval: bool = False,
    auth_number_required: bool = False,
    billing_increment_minutes: Optional[int] = None,
    rounding_mode: Optional[str] = None,
    minimum_chargeable_minutes: Optional[int] = None,
) -> BillingRules:
    return BillingRules(
        shipper=shipper,
        rate=Decimal(rate),
        rate_unit=rate_unit,
        max_charge=Decimal(max_charge),
        free_time_minutes=free_time if free_time is not None else {
            ("PICKUP", "LIVE"): 120,
            ("DELIVERY", "LIVE"): 60,
        },
        billing_increment_minutes=billing_increment_minutes,
        rounding_mode=rounding_mode,
        minimum_chargeable_minutes=minimum_chargeable_minutes,
        requires_approval=requires_approval,
        auto_charge_allowed=auto_charge_allowed,
        auth_number_required=auth_number_required,
    )


class FakeOrderSystem(OrderFactsSource, OrderMutationSink):
    """Order service with per-operation failure injection."""

    def __init__(self) -> None:
        self._facts: Dict[str, OrderFacts] = {}
        self.lines: Dict[str, List[DetentionLine]] = {}
        self.versions: Dict[str, int] = {}
        self.comments: Dict[str, List[str]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.failures: Dict[Tuple[str, str], List[Exception]] = {}
        self.get_order_delay = 0.0
        self.active_reads = 0
        self.max_active_reads = 0
        self.credentials = None
        self.revoked_tokens: Set[str] = set()

    def add_order(
        self,
        order_id: str,
        shipper: str = "ACME",
        stops: Sequence[Tuple[str, str]] = (("DELIVERY", "LIVE"),),
        lines: Sequence[DetentionLine] = (),
        status: str = "DELIVERED",
        tour_id: Optional[str] = "auto",
    ) -> None:
        self._facts[order_id] = OrderFacts(
            order_id=order_id,
            status=status,
            shipper_name=shipper,
            tour_id=f"T-{order_id}" if tour_id == "auto" else tour_id,
            stops=[StopInfo(stop_index=i, stop_type=s, load_type=l) for i, (s, l) in enumerate(stops)],
        )
        self.lines[order_id] = list(lines)
        self.versions[order_id] = 1
        self.comments[order_id] = []

    def fail(self, operation: str, order_id: str, *errors: Exception) -> None:
        self.failures.setdefault((operation, order_id), []).extend(errors)

    def count(self, operation: str, order_id: Optional[str] = None) -> int:
        return sum(1 for op, oid in self.calls if op == operation and (order_id is None or oid == order_id))

    def _enter(self, operation: str, order_id: str) -> None:
        self.calls.append((operation, order_id))
        pending = self.failures.get((operation, order_id))
        if pending:
            raise pending.pop(0)

    def _check_token(self) -> None:
        if self.credentials is None:
            return
        token = self.credentials.token
        if token is None or token in self.revoked_tokens:
            raise AuthenticationError(f"token rejected: {token}")

    def _check_version(self, order_id: str, version: int) -> None:
        if self.versions[order_id] != version:
            raise VersionConflictError(
                f"stale version {version} for {order_id} (current {self.versions[order_id]})"
            )
        self.versions[order_id] += 1

    async def get_order(self, order_id: str) -> OrderFacts:
        self.active_reads += 1
        self.max_active_reads = max(self.max_active_reads, self.active_reads)
        try:
            await asyncio.sleep(self.get_order_delay)
        finally:
            self.active_reads -= 1
        self._enter("get_order", order_id)
        self._check_token()
        base = self._facts[order_id]
        return OrderFacts(
            order_id=base.order_id,
            status=base.status,
            shipper_name=base.shipper_name,
            tour_id=base.tour_id,
            stops=list(base.stops),
            detention_lines=list(self.lines[order_id]),
            version=self.versions[order_id],
        )

    async def get_snapshot(self, order_id: str) -> OrderSnapshot:
        self._enter("get_snapshot", order_id)
        return OrderSnapshot(
            order_id=order_id,
            version=self.versions[order_id],
            pricing_lines=list(self.lines[order_id]),
        )

    async def update_order(self, order_id: str, version: int, lines: List[DetentionLine]) -> int:
        self._enter("update_order", order_id)
        self._check_version(order_id, version)
        self.lines[order_id] = list(lines)
        return self.versions[order_id]

    async def add_pricing_line(self, order_id: str, version: int, line: DetentionLine) -> int:
        self._enter("add_pricing_line", order_id)
        self._check_version(order_id, version)
        self.lines[order_id].append(line)
        return self.versions[order_id]

    async def add_comment(self, order_id: str, version: int, text: str) -> int:
        self._enter("add_comment", order_id)
        self._check_version(order_id, version)
        self.comments[order_id].append(text)
        return self.versions[order_id]


class FakeTimestampSource(TimestampFactsSource):

    def __init__(self) -> None:
        self.tours: Dict[str, Dict[int, TimestampFacts]] = {}
        self.calls: List[str] = []
        self.failures: Dict[str, List[Exception]] = {}

    def set(self, order_id: str, *stops: TimestampFacts) -> None:
        self.tours[f"T-{order_id}"] = {i: facts for i, facts in enumerate(stops)}

    async def get_timestamps(self, tour_id: str) -> Dict[int, TimestampFacts]:
        self.calls.append(tour_id)
        pending = self.failures.get(tour_id)
        if pending:
            raise pending.pop(0)
        return dict(self.tours.get(tour_id, {}))


class FakeTokenSource(TokenSource):
    """Counts refreshes; optionally blocks refresh until released."""

    def __init__(self, clock=lambda: float(T0)) -> None:
        self.page_token: Optional[IssuedToken] = None
        self.refresh_calls = 0
        self.fail_with: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self._clock = clock

    async def peek(self) -> Optional[IssuedToken]:
        return self.page_token

    async def refresh(self) -> IssuedToken:
        self.refresh_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        return IssuedToken(token=f"tok-{self.refresh_calls}", issued_at=self._clock())


class RecordingSleep:
    """Drop-in for asyncio.sleep that records delays and yields once."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)
