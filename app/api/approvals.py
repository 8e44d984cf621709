"""
============================================================================
Detention Adjudicator
Approval & Batch Control API Endpoints
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints:
    - Bearer token carries the operator id
    - Money values are serialized as strings (Decimal)
Side Effects:
    - Resolves approval requests on the shared ApprovalGate
    - Pauses / resumes / cancels the running batch

PRIME DIRECTIVE:
    "The engine computes. A human confirms. Nothing is charged twice."

ENDPOINTS:
    GET  /api/approvals/pending               - Open approval requests
    POST /api/approvals/{order_id}/decision   - APPROVE / DECLINE / SKIP
    GET  /api/approvals/batch/status          - Batch progress
    POST /api/approvals/batch/pause           - Pause at next chunk boundary
    POST /api/approvals/batch/resume          - Resume a paused batch
    POST /api/approvals/batch/cancel          - Cancel (irreversible)

ERROR CODES:
    SEC-001: Missing authentication
    APPR-001: Authorization code required
    APPR-002: No pending approval for order
    APPR-003: Approval already resolved
    APPR-004: Unknown decision
    DET-STATE-001: No batch attached / invalid transition

============================================================================
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field

from app.logic.batch_orchestrator import BatchOrchestrator
from services.approval_gate import ApprovalGate
from services.approval_models import ApprovalDecision, ApprovalErrorCode, DecisionChannel

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# Router Configuration
# ============================================================================

router = APIRouter()

_ERROR_STATUS = {
    ApprovalErrorCode.AUTH_CODE_REQUIRED: 422,
    ApprovalErrorCode.NOT_PENDING: 404,
    ApprovalErrorCode.ALREADY_RESOLVED: 409,
    ApprovalErrorCode.UNKNOWN_DECISION: 422,
}


def _error(status_code: int, error_code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={
            "error_code": error_code,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


# ============================================================================
# Dependencies
# ============================================================================

def get_current_operator(
    authorization: Optional[str] = Header(None, description="Bearer token")
) -> str:
    """
    Extract the operator id from "Authorization: Bearer <operator_id>".

    Raises:
        HTTPException: 401 SEC-001 if the header is missing or malformed
    """
    if not authorization or not authorization.startswith("Bearer "):
        logger.warning("[SEC-001] Missing or malformed Authorization header")
        raise _error(401, "SEC-001", "Authorization header required. Use: Bearer <operator_id>")

    operator_id = authorization[7:].strip()
    if not operator_id:
        raise _error(401, "SEC-001", "Empty operator ID in Bearer token")
    return operator_id


def get_approval_gate(request: Request) -> ApprovalGate:
    gate = getattr(request.app.state, "approval_gate", None)
    if gate is None:
        raise _error(503, "DET-STATE-001", "Approval gate is not attached")
    return gate


def get_orchestrator(request: Request) -> BatchOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise _error(503, "DET-STATE-001", "No batch is attached to this server")
    return orchestrator


# ============================================================================
# Request/Response Models
# ============================================================================

class StopLineResponse(BaseModel):
    stop_index: int
    charge: str = Field(description="Charge as string (Decimal)")
    breakdown: str
    chargeable_minutes: int
    hit_max: bool


class PendingApprovalResponse(BaseModel):
    """One open approval request."""
    request_id: str
    order_id: str
    shipper: str
    total: str = Field(description="Pending total as string (Decimal)")
    stops: List[StopLineResponse]
    auth_number_required: bool
    requested_at: str
    expires_at: str
    seconds_remaining: int


class DecisionRequest(BaseModel):
    """Operator decision body."""
    decision: str = Field(..., description="APPROVE, DECLINE or SKIP", min_length=1)
    auth_code: Optional[str] = Field(default=None, description="Authorization number")
    reason: Optional[str] = Field(default=None, description="Optional operator comment")


class DecisionResponse(BaseModel):
    order_id: str
    outcome: str
    decided_by: str
    decided_at: str


class BatchControlResponse(BaseModel):
    changed: bool
    state: str


# ============================================================================
# Approval Endpoints
# ============================================================================

@router.get(
    "/pending",
    response_model=List[PendingApprovalResponse],
    summary="Get Pending Approvals",
    tags=["Approvals"]
)
async def get_pending_approvals(
    operator_id: str = Depends(get_current_operator),
    gate: ApprovalGate = Depends(get_approval_gate)
) -> List[PendingApprovalResponse]:
    """Open approval requests, oldest first."""
    now = datetime.now(timezone.utc)
    result = []
    for req in gate.get_pending():
        data = req.to_dict()
        data["seconds_remaining"] = max(0, int((req.expires_at - now).total_seconds()))
        result.append(PendingApprovalResponse(**data))

    logger.info(f"[APPR-API] GET /pending returned {len(result)} | operator={operator_id}")
    return result


@router.post(
    "/{order_id}/decision",
    response_model=DecisionResponse,
    summary="Decide Pending Approval",
    responses={
        401: {"description": "Missing authentication (SEC-001)"},
        404: {"description": "No pending approval (APPR-002)"},
        409: {"description": "Already resolved (APPR-003)"},
        422: {"description": "Auth code required (APPR-001) or unknown decision (APPR-004)"},
    },
    tags=["Approvals"]
)
async def decide(
    order_id: str,
    body: DecisionRequest,
    operator_id: str = Depends(get_current_operator),
    gate: ApprovalGate = Depends(get_approval_gate)
) -> DecisionResponse:
    """Submit APPROVE / DECLINE / SKIP for one order."""
    try:
        decision = ApprovalDecision.parse(
            body.decision,
            auth_code=body.auth_code,
            operator_id=operator_id,
            channel=DecisionChannel.WEB,
        )
    except ValueError as e:
        raise _error(422, ApprovalErrorCode.UNKNOWN_DECISION, str(e))

    if body.reason:
        decision = ApprovalDecision(
            decision_type=decision.decision_type,
            auth_code=decision.auth_code,
            operator_id=decision.operator_id,
            channel=decision.channel,
            reason=body.reason,
        )

    result = gate.submit_decision(order_id, decision)
    if not result.accepted:
        logger.warning(
            f"[{result.error_code}] Decision refused | order_id={order_id} | operator={operator_id}"
        )
        raise _error(_ERROR_STATUS.get(result.error_code, 400), result.error_code, result.message)

    logger.info(
        f"[APPR-API] Decision accepted | order_id={order_id} | outcome={decision.outcome.value} | "
        f"operator={operator_id}"
    )
    return DecisionResponse(
        order_id=order_id,
        outcome=decision.outcome.value,
        decided_by=operator_id,
        decided_at=datetime.now(timezone.utc).isoformat(),
    )


# ============================================================================
# Batch Control Endpoints
# ============================================================================

@router.get("/batch/status", summary="Batch Status", tags=["Batch"])
async def batch_status(
    operator_id: str = Depends(get_current_operator),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    return orchestrator.status()


@router.post("/batch/pause", response_model=BatchControlResponse, tags=["Batch"])
async def pause_batch(
    operator_id: str = Depends(get_current_operator),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator)
) -> BatchControlResponse:
    changed = orchestrator.pause()
    logger.info(f"[APPR-API] Pause requested | changed={changed} | operator={operator_id}")
    return BatchControlResponse(changed=changed, state=orchestrator.state.value)


@router.post("/batch/resume", response_model=BatchControlResponse, tags=["Batch"])
async def resume_batch(
    operator_id: str = Depends(get_current_operator),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator)
) -> BatchControlResponse:
    changed = orchestrator.resume()
    logger.info(f"[APPR-API] Resume requested | changed={changed} | operator={operator_id}")
    return BatchControlResponse(changed=changed, state=orchestrator.state.value)


@router.post("/batch/cancel", response_model=BatchControlResponse, tags=["Batch"])
async def cancel_batch(
    operator_id: str = Depends(get_current_operator),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator)
) -> BatchControlResponse:
    changed = orchestrator.cancel()
    logger.warning(f"[APPR-API] Cancel requested | changed={changed} | operator={operator_id}")
    return BatchControlResponse(changed=changed, state=orchestrator.state.value)
