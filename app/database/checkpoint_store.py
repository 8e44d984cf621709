"""
============================================================================
Detention Adjudicator
Checkpoint Store - Resumable Batch Progress
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: SQLAlchemy engine (SQLite or PostgreSQL)
Side Effects: Reads/writes the detention_checkpoints table

A checkpoint records which orders of a run have already been settled so an
interrupted run can resume without charging anything twice. It is written
after every chunk and cleared when the run completes.

LOAD RULES:
    - No row                       -> None
    - Version marker mismatch      -> cleared, None
    - Older than max_age_hours     -> cleared, None
    - Undecodable payload          -> cleared, None

ERROR CODES:
    - DET-CKPT-001: Checkpoint write failed
    - DET-CKPT-002: Checkpoint discarded (stale / version / corrupt)
    - DET-CKPT-003: Checkpoint read failed

============================================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import json
import logging
import uuid

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.database.session import create_detention_engine

# Configure module logger
logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1
DEFAULT_CHECKPOINT_KEY = "default"
DEFAULT_MAX_AGE_HOURS = 24.0


class CheckpointErrorCode:
    WRITE_FAILED = "DET-CKPT-001"
    DISCARDED = "DET-CKPT-002"
    READ_FAILED = "DET-CKPT-003"


# =============================================================================
# JSON encoding
# =============================================================================

class DetentionJSONEncoder(json.JSONEncoder):
    """
    JSON encoder for checkpoint payloads.

    Handles:
    - Decimal -> str (preserves precision)
    - datetime -> ISO format string
    - UUID -> str
    - Enum -> value
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, uuid.UUID):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


# =============================================================================
# Checkpoint record
# =============================================================================

@dataclass
class BatchCheckpoint:
    """Progress of one run as persisted between chunks."""
    job_id: str
    order_ids: List[str]
    chunk_index: int
    processed_ids: List[str] = field(default_factory=list)
    failed_ids: List[str] = field(default_factory=list)
    report: List[Dict[str, Any]] = field(default_factory=list)
    saved_at: Optional[datetime] = None
    version: int = CHECKPOINT_VERSION

    @property
    def settled_ids(self) -> set:
        return set(self.processed_ids) | set(self.failed_ids)

    def remaining_ids(self) -> List[str]:
        """Identifiers not yet settled, in original order."""
        settled = self.settled_ids
        return [order_id for order_id in self.order_ids if order_id not in settled]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "identifiers": self.order_ids,
            "chunk_index": self.chunk_index,
            "processed": self.processed_ids,
            "failed": self.failed_ids,
            "report": self.report,
        }

    @classmethod
    def from_payload(
        cls,
        payload: Dict[str, Any],
        saved_at: Optional[datetime],
        version: int
    ) -> "BatchCheckpoint":
        return cls(
            job_id=str(payload["job_id"]),
            order_ids=[str(i) for i in payload["identifiers"]],
            chunk_index=int(payload["chunk_index"]),
            processed_ids=[str(i) for i in payload.get("processed", [])],
            failed_ids=[str(i) for i in payload.get("failed", [])],
            report=list(payload.get("report", [])),
            saved_at=saved_at,
            version=version,
        )


# =============================================================================
# Store
# =============================================================================

def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CheckpointStore:
    """
    Single-row-per-key checkpoint persistence on SQLAlchemy Core.

    Reliability Level: SOVEREIGN TIER
    Side Effects: Creates the table on first use
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        key: str = DEFAULT_CHECKPOINT_KEY,
        max_age_hours: float = DEFAULT_MAX_AGE_HOURS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ) -> None:
        self._engine = engine if engine is not None else create_detention_engine()
        self.key = key
        self.max_age = timedelta(hours=max_age_hours)
        self._clock = clock
        self._schema_ready = False

    def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        with self._engine.begin() as conn:
            conn.execute(text("""
                CREATE TABLE IF NOT EXISTS detention_checkpoints (
                    checkpoint_key VARCHAR(128) PRIMARY KEY,
                    version INTEGER NOT NULL,
                    saved_at VARCHAR(64) NOT NULL,
                    payload TEXT NOT NULL
                )
            """))
        self._schema_ready = True

    def save(self, checkpoint: BatchCheckpoint) -> None:
        """
        Replace the stored checkpoint for this key.

        Raises:
            RuntimeError: DET-CKPT-001 when the write fails
        """
        saved_at = self._clock()
        payload = json.dumps(checkpoint.to_payload(), cls=DetentionJSONEncoder)

        try:
            self.ensure_schema()
            with self._engine.begin() as conn:
                conn.execute(
                    text("DELETE FROM detention_checkpoints WHERE checkpoint_key = :key"),
                    {"key": self.key},
                )
                conn.execute(
                    text("""
                        INSERT INTO detention_checkpoints (checkpoint_key, version, saved_at, payload)
                        VALUES (:key, :version, :saved_at, :payload)
                    """),
                    {
                        "key": self.key,
                        "version": CHECKPOINT_VERSION,
                        "saved_at": saved_at.isoformat(),
                        "payload": payload,
                    },
                )
        except SQLAlchemyError as e:
            logger.error(
                f"[{CheckpointErrorCode.WRITE_FAILED}] Checkpoint write failed | "
                f"key={self.key} | error={e} | correlation_id={checkpoint.job_id}"
            )
            raise RuntimeError(f"[{CheckpointErrorCode.WRITE_FAILED}] Checkpoint write failed: {e}") from e

        checkpoint.saved_at = saved_at
        logger.debug(
            f"[DET-CKPT] Checkpoint saved | key={self.key} | chunk_index={checkpoint.chunk_index} | "
            f"processed={len(checkpoint.processed_ids)} | failed={len(checkpoint.failed_ids)} | "
            f"correlation_id={checkpoint.job_id}"
        )

    def load(self) -> Optional[BatchCheckpoint]:
        """
        Return a fresh, version-matching checkpoint or None.

        Raises:
            RuntimeError: DET-CKPT-003 when the table cannot be read
        """
        try:
            self.ensure_schema()
            with self._engine.connect() as conn:
                row = conn.execute(
                    text("""
                        SELECT version, saved_at, payload
                        FROM detention_checkpoints
                        WHERE checkpoint_key = :key
                    """),
                    {"key": self.key},
                ).fetchone()
        except SQLAlchemyError as e:
            logger.error(
                f"[{CheckpointErrorCode.READ_FAILED}] Checkpoint read failed | key={self.key} | error={e}"
            )
            raise RuntimeError(f"[{CheckpointErrorCode.READ_FAILED}] Checkpoint read failed: {e}") from e

        if row is None:
            return None

        version, saved_at_raw, payload_raw = row[0], row[1], row[2]

        if int(version) != CHECKPOINT_VERSION:
            self._discard(f"version {version} != {CHECKPOINT_VERSION}")
            return None

        try:
            saved_at = _parse_timestamp(saved_at_raw)
            checkpoint = BatchCheckpoint.from_payload(json.loads(payload_raw), saved_at, int(version))
        except (ValueError, KeyError, TypeError) as e:
            self._discard(f"undecodable payload: {e}")
            return None

        if saved_at is None or self._clock() - saved_at > self.max_age:
            self._discard(f"older than {self.max_age}")
            return None

        logger.info(
            f"[DET-CKPT] Checkpoint loaded | key={self.key} | chunk_index={checkpoint.chunk_index} | "
            f"processed={len(checkpoint.processed_ids)} | failed={len(checkpoint.failed_ids)} | "
            f"correlation_id={checkpoint.job_id}"
        )
        return checkpoint

    def clear(self) -> None:
        """
        Remove the stored checkpoint for this key.

        Raises:
            RuntimeError: DET-CKPT-001 when the delete fails
        """
        try:
            self.ensure_schema()
            with self._engine.begin() as conn:
                conn.execute(
                    text("DELETE FROM detention_checkpoints WHERE checkpoint_key = :key"),
                    {"key": self.key},
                )
        except SQLAlchemyError as e:
            logger.error(
                f"[{CheckpointErrorCode.WRITE_FAILED}] Checkpoint clear failed | key={self.key} | error={e}"
            )
            raise RuntimeError(f"[{CheckpointErrorCode.WRITE_FAILED}] Checkpoint clear failed: {e}") from e
        logger.debug(f"[DET-CKPT] Checkpoint cleared | key={self.key}")

    def _discard(self, reason: str) -> None:
        logger.warning(
            f"[{CheckpointErrorCode.DISCARDED}] Discarding checkpoint | key={self.key} | reason={reason}"
        )
        self.clear()


__all__ = [
    "BatchCheckpoint",
    "CheckpointStore",
    "DetentionJSONEncoder",
    "CHECKPOINT_VERSION",
]
