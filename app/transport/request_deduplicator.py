"""
Request Deduplicator - Collapse Concurrent Identical Lookups

Reliability Level: L5 High
Input Constraints: Callers supply a stable key (request signature)
Side Effects: None beyond the wrapped call

If a call with the same key is already in flight, later callers await the
same outcome (result or exception) instead of issuing a duplicate request.
The key is released as soon as the call settles, so a later lookup always
hits the downstream again.
"""

from typing import Any, Awaitable, Callable, Dict
import asyncio
import logging

logger = logging.getLogger(__name__)


class RequestDeduplicator:
    """
    Single-flight map of in-flight requests keyed by signature.

    Example Usage:
        dedup = RequestDeduplicator()
        order = await dedup.run(f"GET /orders/{oid}", lambda: api.get_order(oid))
    """

    def __init__(self) -> None:
        self._inflight: Dict[str, "asyncio.Task[Any]"] = {}
        self._collapsed = 0

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    @property
    def collapsed_count(self) -> int:
        """Calls that were served by an already in-flight request."""
        return self._collapsed

    async def run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        task = self._inflight.get(key)
        if task is not None:
            self._collapsed += 1
            logger.debug(f"[DET-DEDUP] Joined in-flight request | key={key}")
            return await asyncio.shield(task)

        task = asyncio.ensure_future(factory())
        self._inflight[key] = task
        task.add_done_callback(lambda _t, k=key: self._release(k, _t))
        return await asyncio.shield(task)

    def _release(self, key: str, task: "asyncio.Task[Any]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Retrieve so an exception nobody awaited is not reported as unhandled
            task.exception()


__all__ = ["RequestDeduplicator"]
