"""
============================================================================
Detention Approval Gate - Console Channel
============================================================================

Reliability Level: L5 High
Side Effects: Reads stdin from a daemon thread, writes stdout

Terminal front-end for the Approval Gate. The gate calls the notifier
synchronously when a request opens; the console answers from a background
task so the gate's timeout keeps running while the operator types.

STDIN OWNERSHIP:
    One daemon reader thread reads a line only when a prompt asks for one
    and hands it to the prompt currently waiting. A prompt stops waiting as
    soon as its request resolves (decision, timeout or cancel), and a line
    that arrives while no prompt is waiting is dropped, so a late answer
    never lands on the next order.

MODES:
    - ApprovalConsole: interactive prompt, re-prompts on APPR-001
    - auto_skip_notifier: resolves every request as SKIP (unattended runs)

============================================================================
"""

from typing import Callable, Optional, Set
import asyncio
import logging
import threading

from services.approval_gate import ApprovalGate
from services.approval_models import (
    ApprovalDecision,
    ApprovalErrorCode,
    ApprovalRequest,
    DecisionChannel,
    DecisionType,
)

# Configure module logger
logger = logging.getLogger(__name__)

DECISION_PROMPT = "Decision [A]pprove / [D]ecline / [S]kip: "
AUTH_PROMPT = "Authorization code: "
DEFAULT_POLL_INTERVAL_SECONDS = 0.25


class _RequestClosed(Exception):
    """The request resolved while the prompt was waiting for a line."""


def render_request(request: ApprovalRequest) -> str:
    """Multi-line operator view of one request."""
    lines = [
        "",
        f"Approval required: order {request.order_id} ({request.shipper})",
        f"  Total: ${request.total:,.2f}   expires {request.expires_at.strftime('%H:%M:%S')} UTC",
    ]
    for stop in request.stops:
        cap = " [capped]" if stop.hit_max else ""
        lines.append(f"  Stop {stop.stop_index}: ${stop.charge:,.2f}{cap}  {stop.breakdown}")
    if request.auth_number_required:
        lines.append("  An authorization code is required to approve.")
    return "\n".join(lines)


class ApprovalConsole:
    """
    Interactive approval prompter.

    Example Usage:
        gate = ApprovalGate(timeout_seconds=300)
        gate.set_notifier(ApprovalConsole(gate))
    """

    def __init__(
        self,
        gate: ApprovalGate,
        input_func: Callable[[str], str] = input,
        output: Callable[[str], None] = print,
        operator_id: str = "console",
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    ) -> None:
        self._gate = gate
        self._input = input_func
        self._output = output
        self._operator_id = operator_id
        self._poll_interval = poll_interval_seconds
        self._tasks: Set["asyncio.Task[Optional[DecisionType]]"] = set()
        self._waiter: Optional["asyncio.Future[Optional[str]]"] = None
        self._reader: Optional[threading.Thread] = None
        self._wanted = threading.Event()
        self._closed = False

    def __call__(self, request: ApprovalRequest) -> None:
        task = asyncio.ensure_future(self.prompt(request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # stdin
    # ------------------------------------------------------------------

    def _ensure_reader(self) -> None:
        if self._reader is not None:
            return

        loop = asyncio.get_running_loop()

        def pump() -> None:
            while True:
                self._wanted.wait()
                self._wanted.clear()
                try:
                    line: Optional[str] = self._input("")
                except (EOFError, OSError):
                    line = None
                try:
                    loop.call_soon_threadsafe(self._deliver, line)
                except RuntimeError:
                    # Event loop already closed
                    return
                if line is None:
                    return

        self._reader = threading.Thread(target=pump, name="approval-console-stdin", daemon=True)
        self._reader.start()

    def _deliver(self, line: Optional[str]) -> None:
        """Hand a line to the prompt currently waiting; drop it if none is."""
        if line is None:
            self._closed = True
        waiter = self._waiter
        self._waiter = None
        if waiter is not None and not waiter.done():
            waiter.set_result(line)

    def _still_pending(self, order_id: str) -> bool:
        return self._gate.get_request(order_id) is not None

    async def _ask(self, prompt: str, order_id: str) -> str:
        """
        Next stdin line for this request.

        Only the newest waiter receives lines; an older prompt that is
        still waiting is woken with None and closes.

        Raises:
            _RequestClosed: The request resolved (or stdin closed) first
        """
        self._ensure_reader()
        self._output(prompt)
        loop = asyncio.get_running_loop()
        waiter: "asyncio.Future[Optional[str]]" = loop.create_future()
        previous, self._waiter = self._waiter, waiter
        if previous is not None and not previous.done():
            previous.set_result(None)
        self._wanted.set()

        try:
            while not self._closed and self._still_pending(order_id):
                try:
                    line = await asyncio.wait_for(asyncio.shield(waiter), timeout=self._poll_interval)
                except asyncio.TimeoutError:
                    continue
                if line is None or not self._still_pending(order_id):
                    break
                return line
            raise _RequestClosed(order_id)
        finally:
            if self._waiter is waiter:
                self._waiter = None

    # ------------------------------------------------------------------
    # Prompt loop
    # ------------------------------------------------------------------

    async def prompt(self, request: ApprovalRequest) -> Optional[DecisionType]:
        """Prompt until the gate accepts a decision or the request closes."""
        self._ensure_reader()
        if self._closed:
            logger.warning(f"[APPR] stdin closed, leaving approval to the gate | order_id={request.order_id}")
            return None

        self._output(render_request(request))
        try:
            return await self._prompt_until_accepted(request)
        except _RequestClosed:
            self._output(f"Approval for order {request.order_id} is no longer pending.")
            return None

    async def _prompt_until_accepted(self, request: ApprovalRequest) -> Optional[DecisionType]:
        order_id = request.order_id
        while True:
            answer = await self._ask(DECISION_PROMPT, order_id)
            try:
                decision = ApprovalDecision.parse(
                    answer, operator_id=self._operator_id, channel=DecisionChannel.CLI
                )
            except ValueError as e:
                self._output(str(e))
                continue

            if decision.decision_type is DecisionType.APPROVE and request.auth_number_required:
                code = await self._ask(AUTH_PROMPT, order_id)
                decision = ApprovalDecision.parse(
                    answer, auth_code=code, operator_id=self._operator_id, channel=DecisionChannel.CLI
                )

            result = self._gate.submit_decision(order_id, decision)
            if result.accepted:
                return decision.decision_type
            self._output(f"[{result.error_code}] {result.message}")
            if result.error_code != ApprovalErrorCode.AUTH_CODE_REQUIRED:
                return None


def auto_skip_notifier(gate: ApprovalGate) -> Callable[[ApprovalRequest], None]:
    """Notifier that answers SKIP immediately."""

    def notify(request: ApprovalRequest) -> None:
        logger.info(f"[APPR] Auto-skipping approval | order_id={request.order_id}")
        gate.submit_decision(
            request.order_id,
            ApprovalDecision(
                decision_type=DecisionType.SKIP,
                operator_id="auto",
                channel=DecisionChannel.SYSTEM,
                reason="Unattended run",
            ),
        )

    return notify


__all__ = [
    "ApprovalConsole",
    "auto_skip_notifier",
    "render_request",
]
