"""
============================================================================
Detention Adjudicator
Report Writer - Consolidated Per-Order Report
============================================================================

Reliability Level: STANDARD
Decimal Integrity: Amounts are decimal.Decimal, rendered with 2 places
Traceability: One entry per order, in completion order

Every order that enters the pipeline leaves exactly one ReportEntry, whether
it was charged, released, skipped, deferred or failed. The report can be
rendered as CSV (for spreadsheets) or as aligned text (for the terminal).

============================================================================
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
import csv
import io
import logging

# Configure module logger
logger = logging.getLogger(__name__)

ZERO = Decimal("0")

CSV_COLUMNS = ["Order", "Shipper", "Action", "Amount", "Status", "Notes"]


class ReportStatus(Enum):
    """Outcome column of the report."""
    SUCCESS = "Success"
    INFO = "Info"
    SKIPPED = "Skipped"
    FAILED = "Failed"
    PENDING = "Pending"
    TIMEOUT = "Timeout"


@dataclass
class ReportEntry:
    """One row of the batch report."""
    order_id: str
    shipper: str
    action_label: str
    amount: Decimal
    status: ReportStatus
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "shipper": self.shipper,
            "action_label": self.action_label,
            "amount": str(self.amount),
            "status": self.status.value,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReportEntry":
        return cls(
            order_id=str(data["order_id"]),
            shipper=str(data.get("shipper") or ""),
            action_label=str(data.get("action_label") or ""),
            amount=Decimal(str(data.get("amount") or "0")),
            status=ReportStatus(data["status"]),
            notes=str(data.get("notes") or ""),
        )


class BatchReport:
    """
    Ordered collection of report entries.

    A later entry for the same order replaces the earlier one in place, so
    a deferred approval's final outcome overwrites its "Pending" row.
    """

    def __init__(self, entries: Optional[Iterable[ReportEntry]] = None) -> None:
        self._entries: List[ReportEntry] = []
        self._index: Dict[str, int] = {}
        for entry in entries or ():
            self.add(entry)

    def add(self, entry: ReportEntry) -> None:
        position = self._index.get(entry.order_id)
        if position is None:
            self._index[entry.order_id] = len(self._entries)
            self._entries.append(entry)
        else:
            self._entries[position] = entry

    def get(self, order_id: str) -> Optional[ReportEntry]:
        position = self._index.get(order_id)
        return self._entries[position] if position is not None else None

    @property
    def entries(self) -> List[ReportEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def counts(self) -> Dict[str, int]:
        """Number of entries per status, every status present."""
        result = {status.value: 0 for status in ReportStatus}
        for entry in self._entries:
            result[entry.status.value] += 1
        return result

    def total_charged(self) -> Decimal:
        """Sum of amounts actually applied as charges."""
        return sum(
            (e.amount for e in self._entries if e.status is ReportStatus.SUCCESS),
            ZERO,
        )

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self._entries]

    # ------------------------------------------------------------------
    # Serializations
    # ------------------------------------------------------------------

    def to_csv(self) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for e in self._entries:
            writer.writerow([
                e.order_id,
                e.shipper,
                e.action_label,
                f"{e.amount:.2f}",
                e.status.value,
                e.notes,
            ])
        return buffer.getvalue()

    def to_text(self) -> str:
        """Aligned table followed by per-status counts."""
        rows = [CSV_COLUMNS] + [
            [e.order_id, e.shipper, e.action_label, f"${e.amount:,.2f}", e.status.value, e.notes]
            for e in self._entries
        ]
        widths = [max(len(row[i]) for row in rows) for i in range(len(CSV_COLUMNS) - 1)]

        lines: List[str] = []
        for row_number, row in enumerate(rows):
            cells = [cell.ljust(widths[i]) for i, cell in enumerate(row[:-1])]
            lines.append("  ".join(cells + [row[-1]]).rstrip())
            if row_number == 0:
                lines.append("  ".join("-" * w for w in widths) + "  -----")

        counts = self.counts()
        lines.append("")
        lines.append(
            "Totals: " + ", ".join(f"{name}={count}" for name, count in counts.items())
            + f" | charged=${self.total_charged():,.2f}"
        )
        return "\n".join(lines) + "\n"

    def write_csv(self, path: str) -> None:
        with open(path, "w", encoding="utf-8", newline="") as handle:
            handle.write(self.to_csv())
        logger.info(f"[DET-REPORT] CSV report written | path={path} | entries={len(self)}")

    def write_text(self, path: str) -> None:
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(self.to_text())
        logger.info(f"[DET-REPORT] Text report written | path={path} | entries={len(self)}")


__all__ = [
    "BatchReport",
    "ReportEntry",
    "ReportStatus",
    "CSV_COLUMNS",
]
