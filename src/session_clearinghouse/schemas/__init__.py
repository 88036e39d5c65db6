"""Pydantic API schemas."""

from session_clearinghouse.schemas.marketplace import (
    BookingResponse,
    BookServiceRequest,
    CancelBookingRequest,
    CreateServiceRequest,
    DisputeResponse,
    EscrowResponse,
    EventResponse,
    HealthResponse,
    OpenDisputeRequest,
    RecordSessionRequest,
    ResolveDisputeRequest,
    ServiceResponse,
    SettleRequest,
    WorkflowStateResponse,
)

__all__ = [
    "BookingResponse",
    "BookServiceRequest",
    "CancelBookingRequest",
    "CreateServiceRequest",
    "DisputeResponse",
    "EscrowResponse",
    "EventResponse",
    "HealthResponse",
    "OpenDisputeRequest",
    "RecordSessionRequest",
    "ResolveDisputeRequest",
    "ServiceResponse",
    "SettleRequest",
    "WorkflowStateResponse",
]
