"""
============================================================================
Detention Adjudicator
Downstream Interfaces
============================================================================

Reliability Level: SOVEREIGN TIER
Side Effects: Implementations perform network I/O

The engine talks to three downstream systems through these contracts only:
- OrderFactsSource: read-only order view
- TimestampFactsSource: execution timestamps per tour
- OrderMutationSink: version-keyed writes to the order

Every implementation raises DetentionError subclasses (app.transport.errors)
so retry and breaker logic can classify failures. A stale version on any
write raises VersionConflictError.

============================================================================
"""

from abc import ABC, abstractmethod
from typing import Dict, List

from app.logic.detention_models import (
    DetentionLine,
    OrderFacts,
    OrderSnapshot,
    TimestampFacts,
)


class OrderFactsSource(ABC):
    """Read-only order view provider."""

    @abstractmethod
    async def get_order(self, order_id: str) -> OrderFacts:
        """Fetch status, shipper, tour linkage, stops and detention lines."""


class TimestampFactsSource(ABC):
    """Execution timestamp provider. Missing data is tolerated by callers."""

    @abstractmethod
    async def get_timestamps(self, tour_id: str) -> Dict[int, TimestampFacts]:
        """Return planned/actual times keyed by stop index."""


class OrderMutationSink(ABC):
    """Version-keyed writes to an order."""

    @abstractmethod
    async def get_snapshot(self, order_id: str) -> OrderSnapshot:
        """Current pricing lines and version."""

    @abstractmethod
    async def update_order(self, order_id: str, version: int, lines: List[DetentionLine]) -> int:
        """Replace the order's detention lines; returns the new version."""

    @abstractmethod
    async def add_pricing_line(self, order_id: str, version: int, line: DetentionLine) -> int:
        """Append one pricing line; returns the new version."""

    @abstractmethod
    async def add_comment(self, order_id: str, version: int, text: str) -> int:
        """Append an audit comment; returns the new version."""


__all__ = [
    "OrderFactsSource",
    "TimestampFactsSource",
    "OrderMutationSink",
]
