# ============================================================================
# Detention Adjudicator
# Clients Module - Downstream Interfaces and httpx Implementations
# ============================================================================

from app.clients.base import OrderFactsSource, OrderMutationSink, TimestampFactsSource
from app.clients.http_clients import (
    HttpOrderClient,
    HttpTimestampClient,
    HttpTokenSource,
    raise_for_downstream_status,
)

__all__ = [
    "OrderFactsSource",
    "OrderMutationSink",
    "TimestampFactsSource",
    "HttpOrderClient",
    "HttpTimestampClient",
    "HttpTokenSource",
    "raise_for_downstream_status",
]
