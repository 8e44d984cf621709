"""
============================================================================
Detention Adjudicator
FastAPI Application Factory - Operator Surface
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: Shared ApprovalGate / BatchOrchestrator instances
Side Effects: None at import time

The server shares the gate and orchestrator with the batch running in the
same event loop. Operators answer approvals and pause/cancel the run here.

============================================================================
"""

from datetime import datetime, timezone
from typing import Optional
import logging
import os

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.api.approvals import router as approvals_router
from app.logic.batch_orchestrator import BatchOrchestrator
from services.approval_gate import ApprovalGate

# Configure module logger
logger = logging.getLogger(__name__)


def create_app(
    orchestrator: Optional[BatchOrchestrator] = None,
    gate: Optional[ApprovalGate] = None
) -> FastAPI:
    """
    Build the operator API.

    Args:
        orchestrator: Batch to expose under /api/approvals/batch
        gate: Approval gate to expose under /api/approvals
    """
    app = FastAPI(
        title="Detention Adjudicator",
        description=(
            "Operator surface for detention adjudication runs.\n\n"
            "**PRIME DIRECTIVE:** The engine computes. A human confirms. "
            "Nothing is charged twice."
        ),
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.orchestrator = orchestrator
    app.state.approval_gate = gate

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        error_code = "SYS-500"
        logger.error(f"[{error_code}] Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error_code": error_code,
                "message": "Internal server error. This incident has been logged.",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    app.include_router(approvals_router, prefix="/api/approvals")

    @app.get("/health", summary="Health", tags=["System"])
    async def health():
        state = orchestrator.state.value if orchestrator is not None else None
        return {
            "status": "ok",
            "batch_state": state,
            "pending_approvals": len(gate.get_pending()) if gate is not None else 0,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/metrics", summary="Prometheus Metrics", tags=["Observability"])
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app"]
