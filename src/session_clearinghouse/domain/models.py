"""Typed ledger records.

Every entity is immutable-by-replacement: a mutation builds a new version with
model_copy(update=...) and writes it under the same key with a conditional
write on the status and version it was read at. Records are validated once at the ledger boundary (model_validate) and
never re-parsed by hand at read sites.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from session_clearinghouse.domain.enums import (
    BookingStatus,
    ClaimStatus,
    DisputeStatus,
    EscrowStatus,
    EventType,
    ResolutionType,
    ServiceStatus,
    TransferPhase,
)

# Fixed namespace so escrow and dispute ids derived from a booking id are
# identical in every process.
_DERIVED_ID_NAMESPACE = uuid.UUID("6f1c7a4e-3b2d-5e8f-9a10-c4d5e6f7a8b9")


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def escrow_id_for(booking_id: str) -> str:
    """The one escrow id a booking can ever have."""
    return str(uuid.uuid5(_DERIVED_ID_NAMESPACE, f"escrow:{booking_id}"))


def dispute_id_for(booking_id: str) -> str:
    """The one dispute id a booking can ever have."""
    return str(uuid.uuid5(_DERIVED_ID_NAMESPACE, f"dispute:{booking_id}"))


def idempotency_key(escrow_id: str, phase: TransferPhase) -> str:
    """Payment rail idempotency key, e.g. '<escrow-id>:release'."""
    return f"{escrow_id}:{phase.value}"


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class _VersionedRecord(_Record):
    """A record that is rewritten in place. The repository bumps version on every replace."""

    version: int = 0


# ---------------------------------------------------------------------------
# Marketplace records
# ---------------------------------------------------------------------------


class Service(_VersionedRecord):
    """A provider's bookable service slot."""

    id: str
    provider_identity: str
    title: str
    description: str = ""
    service_type: str = "general"
    price: Decimal
    window_start: datetime
    window_end: datetime
    status: ServiceStatus = ServiceStatus.AVAILABLE
    claimed_by: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ServiceFilter(BaseModel):
    """Optional criteria for ListServices. Unset fields match everything."""

    service_type: str | None = None
    provider_identity: str | None = None
    min_price: Decimal | None = None
    max_price: Decimal | None = None
    starts_after: datetime | None = None
    ends_before: datetime | None = None

    def matches(self, service: Service) -> bool:
        if self.service_type is not None and service.service_type != self.service_type:
            return False
        if (
            self.provider_identity is not None
            and service.provider_identity != self.provider_identity
        ):
            return False
        if self.min_price is not None and service.price < self.min_price:
            return False
        if self.max_price is not None and service.price > self.max_price:
            return False
        if self.starts_after is not None and service.window_start < self.starts_after:
            return False
        return self.ends_before is None or service.window_end <= self.ends_before


class Booking(_VersionedRecord):
    """A client's claim on a service.

    provider_identity and price are a snapshot of the service at booking time,
    so settlement never depends on the service record changing later.
    """

    id: str
    service_id: str
    client_identity: str
    provider_identity: str
    price: Decimal
    status: BookingStatus = BookingStatus.CONFIRMED
    escrow_id: str | None = None
    session_ref: str | None = None
    notes: str | None = None
    completion_notes: str | None = None
    quality_score: float | None = None
    quality_passed: bool | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Money records
# ---------------------------------------------------------------------------


class TransferReceipt(_Record):
    """Proof that the payment rail executed a transfer."""

    reference: str
    idempotency_key: str
    from_identity: str
    to_identity: str
    amount: Decimal
    executed_at: datetime = Field(default_factory=utcnow)


class Escrow(_VersionedRecord):
    id: str
    booking_id: str
    amount: Decimal
    payer_identity: str
    custodian_identity: str
    payee_identity: str
    status: EscrowStatus = EscrowStatus.PENDING
    funding_receipt: TransferReceipt | None = None
    settlement_receipt: TransferReceipt | None = None
    remainder_receipt: TransferReceipt | None = None
    settled_amount: Decimal | None = None
    settled_by: str | None = None
    reason: str | None = None
    failure_reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_funded(self) -> bool:
        return self.funding_receipt is not None


class SettlementClaim(_VersionedRecord):
    """Cross-process lock on the one release/refund an escrow may ever see."""

    escrow_id: str
    phase: TransferPhase
    amount: Decimal
    status: ClaimStatus = ClaimStatus.HELD
    settled_by: str | None = None
    claimed_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Quality and disputes
# ---------------------------------------------------------------------------


class QualityVerdict(_Record):
    """Advisory output of the quality oracle. Score is on a 0-100 scale."""

    session_ref: str
    score: float = Field(ge=0.0, le=100.0)
    passed: bool
    reasoning: str = ""

    def clears(self, threshold: float) -> bool:
        """A verdict releases funds only if the oracle passed it AND it meets the threshold."""
        return self.passed and self.score >= threshold


class Resolution(_Record):
    type: ResolutionType
    pct: Decimal | None = None

    @property
    def refund_pct(self) -> Decimal | None:
        """Percentage of the escrow returned to the payer, None for NoRefund."""
        if self.type == ResolutionType.FULL_REFUND:
            return Decimal(100)
        if self.type == ResolutionType.PARTIAL_REFUND:
            return self.pct
        return None


class Dispute(_VersionedRecord):
    id: str
    booking_id: str
    escrow_id: str
    reason: str
    evidence_ref: str | None = None
    status: DisputeStatus = DisputeStatus.OPEN
    resolution: Resolution | None = None
    resolution_notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: datetime | None = None


class LedgerEvent(_Record):
    """Append-only audit record of a single state transition."""

    id: str = Field(default_factory=new_id)
    entity_id: str
    event_type: EventType
    from_status: str | None = None
    to_status: str | None = None
    actor: str = "system"
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
