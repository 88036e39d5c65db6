"""Booking workflow REST API routes.

Routes:
    POST   /api/v1/bookings                      — Book + fund a service
    GET    /api/v1/bookings                      — List bookings (provider/client filter)
    GET    /api/v1/bookings/{id}                 — Workflow snapshot
    GET    /api/v1/bookings/{id}/events          — Get audit trail
    POST   /api/v1/bookings/{id}/session         — Record session delivery
    POST   /api/v1/bookings/{id}/settle          — Quality gate -> release or dispute
    POST   /api/v1/bookings/{id}/retry-funding   — Retry a timed-out funding transfer
    POST   /api/v1/bookings/{id}/cancel          — Cancel an unfunded booking
    POST   /api/v1/bookings/{id}/resume          — Complete whatever step a crash left undone
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from session_clearinghouse.api.deps import get_orchestrator
from session_clearinghouse.domain.enums import BookingStatus
from session_clearinghouse.logging_config import get_logger
from session_clearinghouse.orchestration.workflow import WorkflowOrchestrator
from session_clearinghouse.schemas.marketplace import (
    BookingResponse,
    BookServiceRequest,
    CancelBookingRequest,
    EventResponse,
    RecordSessionRequest,
    SettleRequest,
    WorkflowStateResponse,
)

router = APIRouter(prefix="/api/v1/bookings", tags=["Bookings"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Book
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=WorkflowStateResponse,
    status_code=201,
    summary="Book a service and fund its escrow",
)
async def book_service(
    request: BookServiceRequest,
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> WorkflowStateResponse:
    """Claims the service (409 if taken) and funds the escrow (402 if rejected)."""
    state = await workflow.book_service(
        service_id=request.service_id,
        client_identity=request.client_identity,
        notes=request.notes,
    )
    return WorkflowStateResponse.from_state(state)


@router.get(
    "",
    response_model=list[BookingResponse],
    summary="List bookings",
)
async def list_bookings(
    provider: str | None = Query(default=None),
    client: str | None = Query(default=None),
    status: BookingStatus | None = Query(default=None),
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> list[BookingResponse]:
    bookings = await workflow.coordinator.list_bookings(
        provider_identity=provider, client_identity=client, status=status
    )
    return [BookingResponse.model_validate(b) for b in bookings]


@router.get(
    "/{booking_id}",
    response_model=WorkflowStateResponse,
    summary="Get booking workflow snapshot",
)
async def get_booking(
    booking_id: str,
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> WorkflowStateResponse:
    return WorkflowStateResponse.from_state(await workflow.snapshot(booking_id))


@router.get(
    "/{booking_id}/events",
    response_model=list[EventResponse],
    summary="Get booking audit trail",
)
async def get_booking_events(
    booking_id: str,
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> list[EventResponse]:
    await workflow.coordinator.get_booking(booking_id)
    events = await workflow.audit_trail(booking_id)
    return [EventResponse.model_validate(e) for e in events]


# ---------------------------------------------------------------------------
# Delivery and Settlement
# ---------------------------------------------------------------------------


@router.post(
    "/{booking_id}/session",
    response_model=BookingResponse,
    summary="Record session delivery",
)
async def record_session(
    booking_id: str,
    request: RecordSessionRequest,
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> BookingResponse:
    booking = await workflow.record_session(
        booking_id, session_ref=request.session_ref, transcript=request.transcript
    )
    return BookingResponse.model_validate(booking)


@router.post(
    "/{booking_id}/settle",
    response_model=WorkflowStateResponse,
    summary="Run the quality gate",
)
async def settle(
    booking_id: str,
    request: SettleRequest | None = None,
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> WorkflowStateResponse:
    """Passing verdict releases the escrow; failing verdict marks the booking DISPUTED."""
    threshold = request.threshold if request is not None else None
    state = await workflow.settle(booking_id, threshold=threshold)
    logger.info("api.settled", booking_id=booking_id, next_step=state["next_step"])
    return WorkflowStateResponse.from_state(state)


# ---------------------------------------------------------------------------
# Recovery and Manual Intervention
# ---------------------------------------------------------------------------


@router.post(
    "/{booking_id}/retry-funding",
    response_model=WorkflowStateResponse,
    summary="Retry a funding transfer whose outcome was unknown",
)
async def retry_funding(
    booking_id: str,
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> WorkflowStateResponse:
    return WorkflowStateResponse.from_state(await workflow.retry_funding(booking_id))


@router.post(
    "/{booking_id}/cancel",
    response_model=BookingResponse,
    summary="Cancel a booking whose funding failed",
)
async def cancel_booking(
    booking_id: str,
    request: CancelBookingRequest,
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> BookingResponse:
    booking = await workflow.cancel_booking(booking_id, reason=request.reason)
    return BookingResponse.model_validate(booking)


@router.post(
    "/{booking_id}/resume",
    response_model=WorkflowStateResponse,
    summary="Resume an interrupted workflow",
)
async def resume(
    booking_id: str,
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> WorkflowStateResponse:
    return WorkflowStateResponse.from_state(await workflow.resume(booking_id))
