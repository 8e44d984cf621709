"""
============================================================================
Detention Adjudicator
Batch Orchestrator - Chunked, Resumable, Pausable Runs
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: Up to session_max_orders identifiers per run
Side Effects: Drives OrderProcessor, ApprovalGate and CheckpointStore

STATE MACHINE
-------------
    IDLE -> RUNNING <-> PAUSED
    RUNNING / PAUSED -> CANCELLED   (terminal, irreversible)
    RUNNING -> COMPLETED            (terminal)

RUN SHAPE
---------
1. Reject the run when the identifier count exceeds the session ceiling
2. Drop identifiers a resumed checkpoint already settled
3. Partition the rest into fixed-size chunks (input order preserved)
4. Per chunk: wait while paused, stop if cancelled, ensure the credential,
   run fixed-size parallel groups, checkpoint, cool down (not after last)
5. Resolve deferred approvals one order at a time
6. Clear the checkpoint on completion and log the final counts

A cancelled run keeps its checkpoint so it can be resumed later.

============================================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence
import asyncio
import logging
import uuid

from app.database.checkpoint_store import BatchCheckpoint, CheckpointStore
from app.logic.detention_models import BatchJob, BatchState, OrderRecord
from app.logic.order_processor import OrderOutcome, OrderProcessor, build_report_entry
from app.reporting.report_writer import BatchReport, ReportEntry, ReportStatus
from app.transport.credential_manager import CredentialManager
from app.transport.errors import BatchStateError, SessionLimitExceededError
from app.transport.retry_policy import SleepFunc
from services.approval_gate import ApprovalGate
from services.approval_models import ApprovalOutcome, ApprovalResolution, DecisionChannel

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

DEFAULT_CHUNK_SIZE = 50
DEFAULT_PARALLEL_GROUP_SIZE = 5
DEFAULT_CHUNK_COOLDOWN_SECONDS = 2.0
DEFAULT_SESSION_MAX_ORDERS = 5000


@dataclass
class BatchSummary:
    """Final (or cancelled) result of a run."""
    job_id: str
    state: BatchState
    total: int
    processed: int
    failed: int
    deferred_unresolved: int
    counts: Dict[str, int] = field(default_factory=dict)
    total_charged: Decimal = Decimal("0")
    report: Optional[BatchReport] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "state": self.state.value,
            "total": self.total,
            "processed": self.processed,
            "failed": self.failed,
            "deferred_unresolved": self.deferred_unresolved,
            "counts": dict(self.counts),
            "total_charged": str(self.total_charged),
        }


def partition(items: Sequence[str], size: int) -> List[List[str]]:
    """Split items into consecutive slices of at most `size`, order preserved."""
    if size <= 0:
        raise ValueError("Partition size must be positive")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


class BatchOrchestrator:
    """
    Runs a list of orders through the pipeline in chunks.

    Reliability Level: SOVEREIGN TIER
    Input Constraints: Positive chunk and group sizes
    Side Effects: Checkpoint writes, approval prompts, downstream writes

    Example Usage:
        orchestrator = BatchOrchestrator(processor, gate, credentials, store)
        checkpoint = orchestrator.load_resumable_checkpoint()
        summary = await orchestrator.start(order_ids, resume_from=checkpoint)
    """

    def __init__(
        self,
        processor: OrderProcessor,
        approval_gate: Optional[ApprovalGate] = None,
        credentials: Optional[CredentialManager] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        parallel_group_size: int = DEFAULT_PARALLEL_GROUP_SIZE,
        chunk_cooldown_seconds: float = DEFAULT_CHUNK_COOLDOWN_SECONDS,
        session_max_orders: int = DEFAULT_SESSION_MAX_ORDERS,
        sleep: SleepFunc = asyncio.sleep
    ) -> None:
        if chunk_size <= 0 or parallel_group_size <= 0:
            raise ValueError("chunk_size and parallel_group_size must be positive")

        self._processor = processor
        self._gate = approval_gate
        self._credentials = credentials
        self._store = checkpoint_store
        self.chunk_size = chunk_size
        self.parallel_group_size = parallel_group_size
        self.chunk_cooldown_seconds = chunk_cooldown_seconds
        self.session_max_orders = session_max_orders
        self._sleep = sleep

        self._job = BatchJob(job_id="", order_ids=[], chunk_size=chunk_size)
        self._report = BatchReport()
        self._total_chunks = 0
        self._deferred: List[OrderOutcome] = []
        self._prior_processed: List[str] = []
        self._prior_failed: List[str] = []

        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._cancel_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def job(self) -> BatchJob:
        return self._job

    @property
    def state(self) -> BatchState:
        return self._job.state

    @property
    def report(self) -> BatchReport:
        return self._report

    def status(self) -> Dict[str, Any]:
        job = self._job
        return {
            "job_id": job.job_id,
            "state": job.state.value,
            "total": len(job.order_ids),
            "chunk_index": job.current_chunk_index,
            "total_chunks": self._total_chunks,
            "processed": len(job.processed) + len(self._prior_processed),
            "failed": len(job.failures) + len(self._prior_failed),
            "awaiting_approval": len(self._deferred),
            "counts": self._report.counts(),
            "breakers": self._processor.breakers.snapshot(),
            "started_at": job.started_at.isoformat() if job.started_at else None,
        }

    def load_resumable_checkpoint(self) -> Optional[BatchCheckpoint]:
        if self._store is None:
            return None
        try:
            return self._store.load()
        except RuntimeError as e:
            logger.warning(f"[DET-BATCH] Checkpoint unavailable, starting fresh | error={e}")
            return None

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def pause(self) -> bool:
        """RUNNING -> PAUSED; no-op otherwise."""
        if self._job.state is not BatchState.RUNNING:
            return False
        self._job.state = BatchState.PAUSED
        self._resume_event.clear()
        logger.info(f"[DET-BATCH] Paused | correlation_id={self._job.job_id}")
        return True

    def resume(self) -> bool:
        """PAUSED -> RUNNING; no-op otherwise."""
        if self._job.state is not BatchState.PAUSED:
            return False
        self._job.state = BatchState.RUNNING
        self._resume_event.set()
        logger.info(f"[DET-BATCH] Resumed | correlation_id={self._job.job_id}")
        return True

    def cancel(self) -> bool:
        """Any non-terminal state -> CANCELLED (irreversible)."""
        if self._job.is_terminal:
            return False
        self._job.state = BatchState.CANCELLED
        self._cancel_event.set()
        self._resume_event.set()
        logger.warning(f"[DET-BATCH] Cancelled | correlation_id={self._job.job_id}")
        return True

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def start(
        self,
        order_ids: Sequence[str],
        resume_from: Optional[BatchCheckpoint] = None
    ) -> BatchSummary:
        """
        Process every identifier not already settled by `resume_from`.

        Raises:
            SessionLimitExceededError: More identifiers than the session allows
            BatchStateError: A run is already active, or the orchestrator was
                cancelled
        """
        if self._job.state in (BatchState.RUNNING, BatchState.PAUSED):
            raise BatchStateError(f"Batch {self._job.job_id} is already {self._job.state.value}")
        if self._job.state is BatchState.CANCELLED:
            raise BatchStateError("Batch orchestrator was cancelled")

        if len(order_ids) > self.session_max_orders:
            raise SessionLimitExceededError(
                f"{len(order_ids)} orders exceed the session limit of {self.session_max_orders}"
            )

        unique_ids = list(dict.fromkeys(str(i).strip() for i in order_ids if str(i).strip()))
        if len(unique_ids) != len(order_ids):
            logger.warning(
                f"[DET-BATCH] Dropped blank or duplicate identifiers | "
                f"received={len(order_ids)} | unique={len(unique_ids)}"
            )

        self._begin(unique_ids, resume_from)
        job = self._job

        settled = resume_from.settled_ids if resume_from is not None else set()
        todo = [order_id for order_id in unique_ids if order_id not in settled]
        chunks = partition(todo, self.chunk_size)
        self._total_chunks = job.current_chunk_index + len(chunks)

        logger.info(
            f"[DET-BATCH] Run started | total={len(unique_ids)} | to_process={len(todo)} | "
            f"already_settled={len(unique_ids) - len(todo)} | chunks={len(chunks)} | "
            f"chunk_size={self.chunk_size} | group_size={self.parallel_group_size} | "
            f"correlation_id={job.job_id}"
        )

        for position, chunk in enumerate(chunks):
            await self._resume_event.wait()
            if self.cancelled:
                break

            await self._ensure_credential()

            for group in partition(chunk, self.parallel_group_size):
                outcomes = await asyncio.gather(*(self._process_safely(oid) for oid in group))
                for outcome in outcomes:
                    self._absorb(outcome)

            job.current_chunk_index += 1
            self._save_checkpoint()
            logger.info(
                f"[DET-BATCH] Chunk done | chunk={job.current_chunk_index}/{self._total_chunks} | "
                f"size={len(chunk)} | correlation_id={job.job_id}"
            )

            if position < len(chunks) - 1 and not self.cancelled:
                await self._sleep(self.chunk_cooldown_seconds)

        await self._resolve_deferred()

        if self.cancelled:
            job.state = BatchState.CANCELLED
        else:
            job.state = BatchState.COMPLETED
            self._clear_checkpoint()

        summary = self._summary()
        logger.info(
            f"[DET-BATCH] Run finished | state={summary.state.value} | processed={summary.processed} | "
            f"failed={summary.failed} | awaiting_approval={summary.deferred_unresolved} | "
            f"counts={summary.counts} | charged={summary.total_charged} | correlation_id={job.job_id}"
        )
        return summary

    def _begin(self, order_ids: List[str], resume_from: Optional[BatchCheckpoint]) -> None:
        self._deferred = []
        if resume_from is not None:
            self._job = BatchJob(
                job_id=resume_from.job_id,
                order_ids=order_ids,
                chunk_size=self.chunk_size,
                current_chunk_index=resume_from.chunk_index,
            )
            self._report = BatchReport(ReportEntry.from_dict(d) for d in resume_from.report)
            self._prior_processed = list(resume_from.processed_ids)
            self._prior_failed = list(resume_from.failed_ids)
            logger.info(
                f"[DET-BATCH] Resuming from checkpoint | chunk_index={resume_from.chunk_index} | "
                f"processed={len(self._prior_processed)} | failed={len(self._prior_failed)} | "
                f"correlation_id={resume_from.job_id}"
            )
        else:
            self._job = BatchJob(job_id=str(uuid.uuid4()), order_ids=order_ids, chunk_size=self.chunk_size)
            self._report = BatchReport()
            self._prior_processed = []
            self._prior_failed = []

        self._job.state = BatchState.RUNNING
        self._job.started_at = datetime.now(timezone.utc)
        self._resume_event.set()

    async def _ensure_credential(self) -> None:
        if self._credentials is None:
            return
        if not await self._credentials.ensure():
            logger.error(
                f"[DET-AUTH-002] No valid credential before chunk, orders may fail | "
                f"error={self._credentials.last_error} | correlation_id={self._job.job_id}"
            )

    async def _process_safely(self, order_id: str) -> OrderOutcome:
        try:
            return await self._processor.process(order_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"[DET-BATCH] Unexpected order failure | order_id={order_id} | "
                f"error={type(e).__name__}: {e}",
                exc_info=True,
            )
            record = OrderRecord(order_id=order_id)
            message = f"Unexpected error: {e}"
            return OrderOutcome(record=record, entry=build_report_entry(record, error=message), error=message)

    def _absorb(self, outcome: OrderOutcome) -> None:
        self._report.add(outcome.entry)
        order_id = outcome.record.order_id
        if outcome.deferred:
            self._deferred.append(outcome)
        elif outcome.failed:
            self._job.record_failure(order_id, outcome.error)
        else:
            self._job.processed[order_id] = outcome.record

    async def _resolve_deferred(self) -> None:
        while self._deferred:
            await self._resume_event.wait()
            if self.cancelled:
                logger.warning(
                    f"[DET-BATCH] Cancelled with approvals outstanding | "
                    f"remaining={len(self._deferred)} | correlation_id={self._job.job_id}"
                )
                return

            outcome = self._deferred[0]
            record = outcome.record
            resolution = await self._request_approval(record)
            try:
                entry = await self._processor.complete_approval(record, resolution)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"[DET-BATCH] Approval follow-up failed | order_id={record.order_id} | error={e}",
                    exc_info=True,
                )
                entry = build_report_entry(record, error=f"Unexpected error: {e}")

            self._deferred.pop(0)
            self._report.add(entry)
            if entry.status is ReportStatus.FAILED:
                self._job.record_failure(record.order_id, entry.notes)
            else:
                self._job.processed[record.order_id] = record
            self._save_checkpoint()

    async def _request_approval(self, record: OrderRecord) -> ApprovalResolution:
        if self._gate is None:
            logger.warning(
                f"[APPR] No approval channel configured, skipping | order_id={record.order_id}"
            )
            return ApprovalResolution(
                order_id=record.order_id,
                outcome=ApprovalOutcome.SKIPPED,
                decided_at=datetime.now(timezone.utc),
                channel=DecisionChannel.SYSTEM,
                reason="No approval channel configured",
            )

        pending = record.pending_approval
        return await self._gate.request_approval(
            record.order_id,
            record.shipper_name or "",
            pending,
            any(r.auth_number_required for r in pending),
            cancel_event=self._cancel_event,
        )

    # ------------------------------------------------------------------
    # Checkpoint / summary
    # ------------------------------------------------------------------

    def _checkpoint(self) -> BatchCheckpoint:
        job = self._job
        return BatchCheckpoint(
            job_id=job.job_id,
            order_ids=list(job.order_ids),
            chunk_index=job.current_chunk_index,
            processed_ids=self._prior_processed + list(job.processed.keys()),
            failed_ids=self._prior_failed + job.failed_ids,
            report=self._report.to_dicts(),
        )

    def _save_checkpoint(self) -> None:
        if self._store is None:
            return
        try:
            self._store.save(self._checkpoint())
        except RuntimeError as e:
            logger.warning(
                f"[DET-BATCH] Continuing without checkpoint | error={e} | "
                f"correlation_id={self._job.job_id}"
            )

    def _clear_checkpoint(self) -> None:
        if self._store is None:
            return
        try:
            self._store.clear()
        except RuntimeError as e:
            logger.warning(
                f"[DET-BATCH] Completed run left its checkpoint behind | error={e} | "
                f"correlation_id={self._job.job_id}"
            )

    def _summary(self) -> BatchSummary:
        job = self._job
        return BatchSummary(
            job_id=job.job_id,
            state=job.state,
            total=len(job.order_ids),
            processed=len(job.processed) + len(self._prior_processed),
            failed=len(job.failures) + len(self._prior_failed),
            deferred_unresolved=len(self._deferred),
            counts=self._report.counts(),
            total_charged=self._report.total_charged(),
            report=self._report,
        )


__all__ = [
    "BatchOrchestrator",
    "BatchSummary",
    "partition",
    "DEFAULT_CHUNK_SIZE",
    "DEFAULT_PARALLEL_GROUP_SIZE",
    "DEFAULT_CHUNK_COOLDOWN_SECONDS",
    "DEFAULT_SESSION_MAX_ORDERS",
]
