# ============================================================================
# Detention Adjudicator
# API Module - Approval and Batch Control Endpoints
# ============================================================================

from app.api.approvals import router as approvals_router

__all__ = ["approvals_router"]
