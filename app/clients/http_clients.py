"""
============================================================================
Detention Adjudicator
HTTP Clients - httpx Implementations of the Downstream Interfaces
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: Base URLs for the order, timestamp and auth services
Side Effects: HTTP calls to downstream systems

These clients do one thing: translate between the wire and the engine's
records. They never retry and never trip breakers; the order processor
wraps every call in the retry loop and the per-dependency breaker.

STATUS MAPPING:
    2xx          -> success
    401 / 403    -> AuthenticationError (credential invalidated upstream)
    404          -> ValidationError (terminal)
    409 / 412    -> VersionConflictError (one refetch-and-retry upstream)
    429          -> RateLimitError (Retry-After honoured)
    5xx          -> NetworkError (retryable)
    other 4xx    -> ValidationError
    bad JSON     -> ParseError

============================================================================
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional
import logging
import time

import httpx

from app.clients.base import OrderFactsSource, OrderMutationSink, TimestampFactsSource
from app.logic.detention_models import (
    DetentionLine,
    OrderFacts,
    OrderSnapshot,
    StopInfo,
    TimestampFacts,
)
from app.transport.credential_manager import CredentialManager, IssuedToken, TokenSource
from app.transport.errors import (
    AuthenticationError,
    NetworkError,
    ParseError,
    RateLimitError,
    ValidationError,
    VersionConflictError,
)

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

DEFAULT_TIMEOUT_SECONDS = 30.0


# ============================================================================
# RESPONSE HANDLING
# ============================================================================

def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def raise_for_downstream_status(response: httpx.Response, dependency: str) -> None:
    """
    Map a non-2xx response onto the error taxonomy.

    Raises:
        DetentionError subclass matching the status code
    """
    status = response.status_code
    if 200 <= status < 300:
        return

    detail = f"{dependency} responded {status} for {response.request.method} {response.request.url.path}"

    if status == 429:
        raise RateLimitError(detail, retry_after=_retry_after_seconds(response))
    if status in (401, 403):
        raise AuthenticationError(detail)
    if status in (409, 412):
        raise VersionConflictError(detail)
    if status >= 500:
        raise NetworkError(detail)
    raise ValidationError(detail)


def _json(response: httpx.Response, dependency: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise ParseError(f"{dependency} returned malformed JSON: {e}") from e


def parse_epoch(value: Any) -> Optional[int]:
    """
    Normalize a wire timestamp to epoch seconds.

    Accepts epoch numbers (seconds or milliseconds), numeric strings and ISO
    8601 strings. Blank values are None.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ParseError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        seconds = int(value)
        return seconds // 1000 if seconds > 10_000_000_000 else seconds

    text = str(value).strip()
    if not text:
        return None
    if text.lstrip("-").isdigit():
        return parse_epoch(int(text))
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as e:
        raise ParseError(f"Invalid timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


def _parse_amount(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ParseError(f"Invalid amount: {value!r}") from e


def _parse_line(data: Dict[str, Any]) -> DetentionLine:
    return DetentionLine(
        line_id=str(data["lineId"]),
        stop_index=int(data["stopIndex"]),
        amount=_parse_amount(data.get("amount")),
        auth_number=data.get("authNumber") or None,
        description=data.get("description") or "Detention",
    )


def _line_payload(line: DetentionLine) -> Dict[str, Any]:
    return {
        "lineId": line.line_id,
        "stopIndex": line.stop_index,
        "amount": str(line.amount),
        "authNumber": line.auth_number,
        "description": line.description,
    }


def _version_from(payload: Any, dependency: str) -> int:
    try:
        return int(payload["version"])
    except (KeyError, TypeError, ValueError) as e:
        raise ParseError(f"{dependency} response carries no version") from e


# ============================================================================
# BASE CLIENT
# ============================================================================

class _HttpClientBase:
    """Shared AsyncClient lifecycle and auth header handling."""

    dependency = "downstream"

    def __init__(
        self,
        base_url: str,
        credentials: Optional[CredentialManager] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._credentials = credentials
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

        logger.info(
            f"[DET-HTTP-INIT] dependency={self.dependency} | base_url={self._base_url} | "
            f"timeout={timeout}s"
        )

    def _headers(self, version: Optional[int] = None) -> Dict[str, str]:
        headers: Dict[str, str] = {"Accept": "application/json"}
        if self._credentials is not None:
            headers.update(self._credentials.auth_headers())
        if version is not None:
            headers["If-Match"] = str(version)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        version: Optional[int] = None,
        json_body: Optional[Dict[str, Any]] = None
    ) -> Any:
        response = await self._client.request(
            method,
            f"{self._base_url}{path}",
            headers=self._headers(version),
            json=json_body,
        )
        raise_for_downstream_status(response, self.dependency)
        if response.status_code == 204 or not response.content:
            return None
        return _json(response, self.dependency)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


# ============================================================================
# ORDER SERVICE
# ============================================================================

class HttpOrderClient(_HttpClientBase, OrderFactsSource, OrderMutationSink):
    """
    Order-management API client: read view plus version-keyed writes.

    Reliability Level: SOVEREIGN TIER
    """

    dependency = "orders"

    async def get_order(self, order_id: str) -> OrderFacts:
        data = await self._request("GET", f"/orders/{order_id}")
        try:
            stops = [
                StopInfo(
                    stop_index=int(s["index"]),
                    stop_type=str(s["stopType"]).upper(),
                    load_type=str(s["loadType"]).upper(),
                    location=s.get("location"),
                )
                for s in data.get("stops", [])
            ]
            lines = [_parse_line(line) for line in data.get("detentionLines", [])]
            return OrderFacts(
                order_id=str(data.get("orderId", order_id)),
                status=str(data.get("status") or ""),
                shipper_name=str(data.get("shipper") or ""),
                tour_id=data.get("tourId") or None,
                stops=stops,
                detention_lines=lines,
                version=int(data.get("version", 0)),
                raw=data,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ParseError(f"Malformed order view for {order_id}: {e}") from e

    async def get_snapshot(self, order_id: str) -> OrderSnapshot:
        data = await self._request("GET", f"/orders/{order_id}/pricing")
        try:
            return OrderSnapshot(
                order_id=order_id,
                version=int(data["version"]),
                pricing_lines=[_parse_line(line) for line in data.get("lines", [])],
                raw=data,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ParseError(f"Malformed pricing snapshot for {order_id}: {e}") from e

    async def update_order(self, order_id: str, version: int, lines: List[DetentionLine]) -> int:
        data = await self._request(
            "PUT",
            f"/orders/{order_id}/detention-lines",
            version=version,
            json_body={"version": version, "lines": [_line_payload(line) for line in lines]},
        )
        return _version_from(data, self.dependency)

    async def add_pricing_line(self, order_id: str, version: int, line: DetentionLine) -> int:
        data = await self._request(
            "POST",
            f"/orders/{order_id}/pricing-lines",
            version=version,
            json_body={"version": version, "line": _line_payload(line)},
        )
        return _version_from(data, self.dependency)

    async def add_comment(self, order_id: str, version: int, text: str) -> int:
        data = await self._request(
            "POST",
            f"/orders/{order_id}/comments",
            version=version,
            json_body={"version": version, "text": text},
        )
        return _version_from(data, self.dependency)


# ============================================================================
# TIMESTAMP SERVICE
# ============================================================================

class HttpTimestampClient(_HttpClientBase, TimestampFactsSource):
    """Execution-tracking API client."""

    dependency = "timestamps"

    async def get_timestamps(self, tour_id: str) -> Dict[int, TimestampFacts]:
        data = await self._request("GET", f"/tours/{tour_id}/stops")
        if data is None:
            return {}
        try:
            return {
                int(s["index"]): TimestampFacts(
                    planned_arrival=parse_epoch(s.get("plannedArrival")),
                    actual_arrival=parse_epoch(s.get("actualArrival")),
                    planned_departure=parse_epoch(s.get("plannedDeparture")),
                    actual_departure=parse_epoch(s.get("actualDeparture")),
                )
                for s in data.get("stops", [])
            }
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ParseError(f"Malformed timestamps for tour {tour_id}: {e}") from e


# ============================================================================
# TOKEN SOURCE
# ============================================================================

class HttpTokenSource(_HttpClientBase, TokenSource):
    """
    Auth service adapter for CredentialManager.

    peek() reads the token the operator's browser session already holds
    (GET /session, 204 when none); a session token without issuedAt is
    ignored. refresh() asks for a new one, stamped now if the auth service
    omits issuedAt.
    """

    dependency = "auth"

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time
    ) -> None:
        super().__init__(base_url, credentials=None, client=client, timeout=timeout)
        self._clock = clock

    def _issued(self, data: Any, stamp_missing: bool) -> Optional[IssuedToken]:
        if not data or not data.get("token"):
            return None
        issued_at = parse_epoch(data.get("issuedAt"))
        if issued_at is None and not stamp_missing:
            # Unknown age: never fresher than the held credential
            return None
        return IssuedToken(
            token=str(data["token"]),
            issued_at=float(issued_at) if issued_at is not None else self._clock(),
        )

    async def peek(self) -> Optional[IssuedToken]:
        return self._issued(await self._request("GET", "/session"), stamp_missing=False)

    async def refresh(self) -> IssuedToken:
        issued = self._issued(await self._request("POST", "/token/refresh"), stamp_missing=True)
        if issued is None:
            raise AuthenticationError("Auth service returned no token")
        return issued


__all__ = [
    "HttpOrderClient",
    "HttpTimestampClient",
    "HttpTokenSource",
    "raise_for_downstream_status",
    "parse_epoch",
]
