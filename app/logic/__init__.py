"""
============================================================================
Detention Adjudicator
Logic Layer - Detention Decisions, Breakers and Batch Orchestration
============================================================================

SOVEREIGN TIER INFRASTRUCTURE

This package contains the core business logic for:
- Domain records (OrderRecord, AnalysisResult, BatchJob)
- DetentionAnalyzer: pure per-stop charge decision
- CircuitBreaker: per-dependency failure isolation
- OrderProcessor: per-order fetch / analyze / apply pipeline
- BatchOrchestrator: chunked, resumable, pausable runs

OrderProcessor and BatchOrchestrator are imported from their modules
directly (app.logic.order_processor, app.logic.batch_orchestrator) since
they depend on app.clients, which itself depends on the records below.

============================================================================
"""

from app.logic.detention_models import (
    AnalysisResult,
    BatchJob,
    BatchState,
    Classification,
    DetentionAction,
    DetentionLine,
    OrderFacts,
    OrderRecord,
    OrderSnapshot,
    ProcessedAction,
    StopInfo,
    TimestampFacts,
)
from app.logic.detention_analyzer import analyze, apply_increment, compute_charge
from app.logic.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    CircuitStatus,
)

__all__ = [
    "AnalysisResult",
    "BatchJob",
    "BatchState",
    "Classification",
    "DetentionAction",
    "DetentionLine",
    "OrderFacts",
    "OrderRecord",
    "OrderSnapshot",
    "ProcessedAction",
    "StopInfo",
    "TimestampFacts",
    "analyze",
    "apply_increment",
    "compute_charge",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "CircuitStatus",
]
