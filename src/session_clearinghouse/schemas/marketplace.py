"""Pydantic schemas for the marketplace API.

These schemas define the request/response shapes for the REST API. They are
separate from the domain records so the wire format can evolve without
touching what is persisted in the ledger.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, model_validator

from session_clearinghouse.domain.enums import ResolutionType

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateServiceRequest(BaseModel):
    """Request body for listing a new service."""

    provider_identity: str = Field(
        ...,
        min_length=1,
        description="Payout address of the provider",
        examples=["0x742d35Cc6634C0532925a3b844Bc9e7595f2bD18"],
    )
    title: str = Field(..., min_length=1, max_length=200, examples=["1:1 Python mentoring"])
    description: str = Field(default="", max_length=5000)
    service_type: str = Field(default="general", max_length=100, examples=["mentoring"])
    price: Decimal = Field(
        ...,
        gt=0,
        decimal_places=6,
        description="Price in the settlement token (USDC)",
        examples=[50],
    )
    window_start: AwareDatetime
    window_end: AwareDatetime


class BookServiceRequest(BaseModel):
    """Request body for booking (and funding) a service."""

    service_id: str = Field(..., min_length=1)
    client_identity: str = Field(
        ...,
        min_length=1,
        description="Address of the client paying into escrow",
    )
    notes: str | None = Field(default=None, max_length=2000)


class RecordSessionRequest(BaseModel):
    """Request body for recording a delivered session."""

    session_ref: str = Field(
        ...,
        min_length=1,
        description="Reference to the delivered session, e.g. a meeting id",
        examples=["meeting-42"],
    )
    transcript: str | None = Field(
        default=None,
        max_length=500_000,
        description="Optional transcript for the LLM quality judge",
    )


class SettleRequest(BaseModel):
    """Request body for running the quality gate."""

    threshold: float | None = Field(
        default=None,
        ge=0,
        le=100,
        description="Overrides the configured quality threshold for this call",
    )


class CancelBookingRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class OpenDisputeRequest(BaseModel):
    """Request body for opening a dispute against a completed booking."""

    booking_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=2000)
    evidence_ref: str | None = Field(default=None, max_length=2000)
    raised_by: str | None = None


class ResolveDisputeRequest(BaseModel):
    """Request body for resolving a dispute."""

    resolution: ResolutionType
    pct: Decimal | None = Field(
        default=None,
        gt=0,
        le=100,
        description="Refund percentage; required for PARTIAL_REFUND",
    )
    notes: str | None = Field(default=None, max_length=5000)
    resolved_by: str | None = None

    @model_validator(mode="after")
    def _pct_matches_resolution(self) -> ResolveDisputeRequest:
        if self.resolution == ResolutionType.PARTIAL_REFUND and self.pct is None:
            raise ValueError("pct is required for PARTIAL_REFUND")
        return self


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class ServiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider_identity: str
    title: str
    description: str
    service_type: str
    price: Decimal
    window_start: datetime
    window_end: datetime
    status: str
    claimed_by: str | None
    created_at: datetime
    updated_at: datetime


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    service_id: str
    client_identity: str
    provider_identity: str
    price: Decimal
    status: str
    escrow_id: str | None
    session_ref: str | None
    notes: str | None
    completion_notes: str | None
    quality_score: float | None
    quality_passed: bool | None
    created_at: datetime
    updated_at: datetime


class TransferReceiptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    reference: str
    idempotency_key: str
    from_identity: str
    to_identity: str
    amount: Decimal
    executed_at: datetime


class EscrowResponse(BaseModel):
    """Response schema for an escrow."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    amount: Decimal
    payer_identity: str
    custodian_identity: str
    payee_identity: str
    status: str
    funding_receipt: TransferReceiptResponse | None
    settlement_receipt: TransferReceiptResponse | None
    remainder_receipt: TransferReceiptResponse | None
    settled_amount: Decimal | None
    settled_by: str | None
    reason: str | None
    failure_reason: str | None
    created_at: datetime
    updated_at: datetime


class ResolutionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    type: str
    pct: Decimal | None


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    escrow_id: str
    reason: str
    evidence_ref: str | None
    status: str
    resolution: ResolutionResponse | None
    resolution_notes: str | None
    created_at: datetime
    resolved_at: datetime | None


class QualityVerdictResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    session_ref: str
    score: float
    passed: bool
    reasoning: str


class WorkflowStateResponse(BaseModel):
    """Everything known about one booking, plus the step it is waiting on."""

    service: ServiceResponse
    booking: BookingResponse
    escrow: EscrowResponse | None = None
    dispute: DisputeResponse | None = None
    verdict: QualityVerdictResponse | None = None
    next_step: str

    @classmethod
    def from_state(cls, state: Mapping[str, Any]) -> WorkflowStateResponse:
        """Build from an orchestrator WorkflowState of domain records."""

        def _maybe(schema: type[BaseModel], record: Any) -> Any:
            return schema.model_validate(record) if record is not None else None

        return cls(
            service=ServiceResponse.model_validate(state["service"]),
            booking=BookingResponse.model_validate(state["booking"]),
            escrow=_maybe(EscrowResponse, state.get("escrow")),
            dispute=_maybe(DisputeResponse, state.get("dispute")),
            verdict=_maybe(QualityVerdictResponse, state.get("verdict")),
            next_step=state["next_step"],
        )


class EventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    entity_id: str
    event_type: str
    from_status: str | None
    to_status: str | None
    actor: str
    payload: dict[str, Any]
    created_at: datetime


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    ledger: str = "unknown"
    payment_rail: str = "unknown"
    quality_oracle: str = "unknown"
