"""Dispute REST API routes.

Routes:
    POST   /api/v1/disputes                — Open a dispute against a booking
    GET    /api/v1/disputes                — List disputes
    GET    /api/v1/disputes/{id}           — Get dispute details
    POST   /api/v1/disputes/{id}/resolve   — Resolve (full / partial / no refund)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from session_clearinghouse.api.deps import get_orchestrator
from session_clearinghouse.domain.enums import DisputeStatus
from session_clearinghouse.domain.models import Resolution
from session_clearinghouse.logging_config import get_logger
from session_clearinghouse.orchestration.workflow import WorkflowOrchestrator
from session_clearinghouse.schemas.marketplace import (
    DisputeResponse,
    OpenDisputeRequest,
    ResolveDisputeRequest,
)

router = APIRouter(prefix="/api/v1/disputes", tags=["Disputes"])
logger = get_logger(__name__)


@router.post(
    "",
    response_model=DisputeResponse,
    status_code=201,
    summary="Open a dispute",
)
async def open_dispute(
    request: OpenDisputeRequest,
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> DisputeResponse:
    """Allowed only for COMPLETED or DISPUTED bookings whose escrow is still PENDING."""
    dispute = await workflow.open_dispute(
        booking_id=request.booking_id,
        reason=request.reason,
        evidence_ref=request.evidence_ref,
        raised_by=request.raised_by,
    )
    return DisputeResponse.model_validate(dispute)


@router.get(
    "",
    response_model=list[DisputeResponse],
    summary="List disputes",
)
async def list_disputes(
    status: DisputeStatus | None = Query(default=None),
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> list[DisputeResponse]:
    disputes = await workflow.resolver.list_disputes(status=status)
    return [DisputeResponse.model_validate(d) for d in disputes]


@router.get(
    "/{dispute_id}",
    response_model=DisputeResponse,
    summary="Get dispute details",
)
async def get_dispute(
    dispute_id: str,
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> DisputeResponse:
    return DisputeResponse.model_validate(await workflow.resolver.get_dispute(dispute_id))


@router.post(
    "/{dispute_id}/resolve",
    response_model=DisputeResponse,
    summary="Resolve a dispute",
)
async def resolve_dispute(
    dispute_id: str,
    request: ResolveDisputeRequest,
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> DisputeResponse:
    """Refunds or releases the escrow, then closes the dispute and the booking."""
    dispute = await workflow.resolve_dispute(
        dispute_id,
        Resolution(type=request.resolution, pct=request.pct),
        notes=request.notes,
        resolved_by=request.resolved_by,
    )
    logger.info("api.dispute_resolved", dispute_id=dispute_id)
    return DisputeResponse.model_validate(dispute)
