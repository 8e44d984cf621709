"""
Credential Manager - Shared Session Token with Single-Flight Refresh

Reliability Level: L6 Critical
Input Constraints: A TokenSource able to peek and refresh tokens
Side Effects: Network I/O on refresh, credential state management

This module owns the one session credential every downstream call uses:
- Cheapest path first: adopt a fresher token already present in the
  page context (no network)
- Held token inside its lifetime (minus margin): succeed without I/O
- Otherwise refresh once; concurrent callers share that one refresh

The single-flight refresh removes the race where many orders notice an
expiring token at the same moment and each issue their own refresh.

Python 3.8 Compatible - No union type hints (X | None)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional
import asyncio
import logging
import time

from app.observability.metrics import record_credential_refresh

# Configure logging
logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

# Token lifetime in seconds (15 minutes)
DEFAULT_TOKEN_LIFETIME_SECONDS = 900

# Refresh this many seconds before expiry
DEFAULT_REFRESH_MARGIN_SECONDS = 60

# Error codes
ERROR_REFRESH_FAILED = "DET-AUTH-002"
ERROR_PAGE_TOKEN_UNAVAILABLE = "DET-AUTH-003"


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class IssuedToken:
    """A token as handed out by a TokenSource."""
    token: str
    issued_at: float


@dataclass(frozen=True)
class Credential:
    """
    The held session credential.

    Reliability Level: L6 Critical
    Input Constraints: lifetime_seconds must be positive
    Side Effects: None
    """
    token: str
    acquired_at: float
    lifetime_seconds: float

    @property
    def expires_at(self) -> float:
        return self.acquired_at + self.lifetime_seconds

    def remaining(self, now: float) -> float:
        return self.expires_at - now

    def is_valid(self, now: float, margin: float = 0.0) -> bool:
        return self.remaining(now) > margin


class TokenSource(ABC):
    """
    Where tokens come from.

    peek() is the cheap path (e.g. a token already present in the
    browser page / shared context). refresh() performs network I/O.
    """

    @abstractmethod
    async def peek(self) -> Optional[IssuedToken]:
        ...

    @abstractmethod
    async def refresh(self) -> IssuedToken:
        ...


# =============================================================================
# CREDENTIAL MANAGER
# =============================================================================

class CredentialManager:
    """
    Owns the shared credential and serializes its refresh.

    Reliability Level: L6 Critical
    Input Constraints: None
    Side Effects: Calls TokenSource.refresh() at most once per expiry window

    Example Usage:
        manager = CredentialManager(source)
        if await manager.ensure():
            headers = manager.auth_headers()
    """

    def __init__(
        self,
        source: TokenSource,
        lifetime_seconds: float = DEFAULT_TOKEN_LIFETIME_SECONDS,
        refresh_margin_seconds: float = DEFAULT_REFRESH_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time
    ) -> None:
        if lifetime_seconds <= 0:
            raise ValueError("lifetime_seconds must be positive")

        self._source = source
        self._lifetime = lifetime_seconds
        self._margin = refresh_margin_seconds
        self._clock = clock
        self._credential: Optional[Credential] = None
        self._inflight: Optional["asyncio.Future[bool]"] = None
        self._refresh_count = 0
        self.last_error: Optional[str] = None

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    @property
    def token(self) -> Optional[str]:
        return self._credential.token if self._credential else None

    @property
    def refresh_count(self) -> int:
        """Number of underlying refresh calls issued so far."""
        return self._refresh_count

    def auth_headers(self) -> Dict[str, str]:
        if self._credential is None:
            return {}
        return {"Authorization": f"Bearer {self._credential.token}"}

    def invalidate(self) -> None:
        """Drop the held token after the downstream rejected it."""
        if self._credential is not None:
            logger.warning("[DET-AUTH] Credential invalidated after authentication failure")
        self._credential = None

    async def ensure(self) -> bool:
        """
        Make sure a usable credential is held.

        Returns:
            True when a valid token is held after the call, False when the
            refresh failed (the failure is shared with every waiter).
        """
        if await self._adopt_page_token():
            return True

        now = self._clock()
        if self._credential is not None and self._credential.is_valid(now, self._margin):
            return True

        inflight = self._inflight
        if inflight is not None:
            logger.debug("[DET-AUTH] Awaiting in-flight credential refresh")
            return await asyncio.shield(inflight)

        loop = asyncio.get_running_loop()
        future: "asyncio.Future[bool]" = loop.create_future()
        self._inflight = future
        try:
            ok = await self._refresh()
            future.set_result(ok)
        finally:
            if not future.done():
                future.set_result(False)
            self._inflight = None
        return future.result()

    async def _adopt_page_token(self) -> bool:
        try:
            candidate = await self._source.peek()
        except Exception as e:
            logger.debug(f"[{ERROR_PAGE_TOKEN_UNAVAILABLE}] Page token lookup failed: {e}")
            return False

        if candidate is None or not candidate.token:
            return False

        held = self._credential
        if held is not None and candidate.issued_at <= held.acquired_at:
            return False

        fresh = Credential(
            token=candidate.token,
            acquired_at=candidate.issued_at,
            lifetime_seconds=self._lifetime,
        )
        if not fresh.is_valid(self._clock(), self._margin):
            return False

        self._credential = fresh
        logger.info("[DET-AUTH] Adopted fresher token from page context")
        return True

    async def _refresh(self) -> bool:
        self._refresh_count += 1
        try:
            issued = await self._source.refresh()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.last_error = str(e)
            record_credential_refresh("failure")
            logger.error(f"[{ERROR_REFRESH_FAILED}] Credential refresh failed | error={e}")
            return False

        self._credential = Credential(
            token=issued.token,
            acquired_at=issued.issued_at,
            lifetime_seconds=self._lifetime,
        )
        self.last_error = None
        record_credential_refresh("success")
        logger.info(
            f"[DET-AUTH] Credential refreshed | "
            f"expires_in={self._credential.remaining(self._clock()):.0f}s"
        )
        return True


__all__ = [
    "Credential",
    "CredentialManager",
    "IssuedToken",
    "TokenSource",
    "DEFAULT_TOKEN_LIFETIME_SECONDS",
    "DEFAULT_REFRESH_MARGIN_SECONDS",
]
