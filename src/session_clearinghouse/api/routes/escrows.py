"""Escrow REST API routes (read-only; money only moves through the workflow).

Routes:
    GET    /api/v1/escrows              — List escrows (status/booking/payer/payee filter)
    GET    /api/v1/escrows/{id}         — Get escrow details
    GET    /api/v1/escrows/{id}/events  — Get audit trail
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from session_clearinghouse.api.deps import get_orchestrator
from session_clearinghouse.domain.enums import EscrowStatus
from session_clearinghouse.orchestration.workflow import WorkflowOrchestrator
from session_clearinghouse.schemas.marketplace import EscrowResponse, EventResponse

router = APIRouter(prefix="/api/v1/escrows", tags=["Escrows"])


@router.get(
    "",
    response_model=list[EscrowResponse],
    summary="List escrows",
)
async def list_escrows(
    status: EscrowStatus | None = Query(default=None),
    booking_id: str | None = Query(default=None),
    payer: str | None = Query(default=None),
    payee: str | None = Query(default=None),
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> list[EscrowResponse]:
    escrows = await workflow.escrows.list_escrows(
        status=status, booking_id=booking_id, payer_identity=payer, payee_identity=payee
    )
    return [EscrowResponse.model_validate(e) for e in escrows]


@router.get(
    "/{escrow_id}",
    response_model=EscrowResponse,
    summary="Get escrow details",
)
async def get_escrow(
    escrow_id: str,
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> EscrowResponse:
    return EscrowResponse.model_validate(await workflow.escrows.get_escrow(escrow_id))


@router.get(
    "/{escrow_id}/events",
    response_model=list[EventResponse],
    summary="Get escrow audit trail",
)
async def get_escrow_events(
    escrow_id: str,
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> list[EventResponse]:
    await workflow.escrows.get_escrow(escrow_id)
    events = await workflow.audit_trail(escrow_id)
    return [EventResponse.model_validate(e) for e in events]
