"""Domain layer — pure business logic with zero framework dependencies."""

from session_clearinghouse.domain.enums import (
    BookingOutcome,
    BookingStatus,
    DisputeStatus,
    EscrowStatus,
    EventType,
    ResolutionType,
    ServiceStatus,
)
from session_clearinghouse.domain.exceptions import (
    AlreadyResolvedError,
    ClearinghouseError,
    ConflictError,
    EntityNotFoundError,
    EscrowNotPendingError,
    FundingFailedError,
    InvalidStateError,
    ServiceUnavailableError,
    ValidationError,
)
from session_clearinghouse.domain.models import (
    Booking,
    Dispute,
    Escrow,
    QualityVerdict,
    Resolution,
    Service,
    ServiceFilter,
    TransferReceipt,
)
from session_clearinghouse.domain.protocols import LedgerStore, PaymentRail, QualityOracle
from session_clearinghouse.domain.state_machine import (
    BookingStateMachine,
    DisputeStateMachine,
    EscrowStateMachine,
    ServiceStateMachine,
    validate_transition,
)

__all__ = [
    "BookingOutcome",
    "BookingStatus",
    "DisputeStatus",
    "EscrowStatus",
    "EventType",
    "ResolutionType",
    "ServiceStatus",
    "AlreadyResolvedError",
    "ClearinghouseError",
    "ConflictError",
    "EntityNotFoundError",
    "EscrowNotPendingError",
    "FundingFailedError",
    "InvalidStateError",
    "ServiceUnavailableError",
    "ValidationError",
    "Booking",
    "Dispute",
    "Escrow",
    "QualityVerdict",
    "Resolution",
    "Service",
    "ServiceFilter",
    "TransferReceipt",
    "LedgerStore",
    "PaymentRail",
    "QualityOracle",
    "BookingStateMachine",
    "DisputeStateMachine",
    "EscrowStateMachine",
    "ServiceStateMachine",
    "validate_transition",
]
