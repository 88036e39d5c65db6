"""Domain enumerations for the Session Clearinghouse.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no Redis, no FastAPI imports).
"""

import enum


class ServiceStatus(enum.StrEnum):
    """Lifecycle states of a service listing.

    CANCELLED is terminal; the record is retained for audit.
    """

    AVAILABLE = "AVAILABLE"
    BOOKED = "BOOKED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class BookingStatus(enum.StrEnum):
    """Lifecycle states of a booking.

    Status only moves forward through the BookingStateMachine table.
    DISPUTED is a side branch reachable from CONFIRMED and COMPLETED.
    """

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    DISPUTED = "DISPUTED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class EscrowStatus(enum.StrEnum):
    """Lifecycle states of an escrow.

    PENDING transitions exactly once into one of the terminal states.
    A funding rejection lands in CANCELLED.
    """

    PENDING = "PENDING"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class DisputeStatus(enum.StrEnum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


class ResolutionType(enum.StrEnum):
    """How a dispute is settled against the linked escrow."""

    FULL_REFUND = "FULL_REFUND"
    PARTIAL_REFUND = "PARTIAL_REFUND"
    NO_REFUND = "NO_REFUND"


class BookingOutcome(enum.StrEnum):
    """Outcome reported when a booking's delivery is closed out."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class TransferPhase(enum.StrEnum):
    """Phase tag appended to the escrow id to form a transfer idempotency key."""

    FUND = "fund"
    RELEASE = "release"
    REFUND = "refund"
    REMAINDER = "remainder"


class ClaimStatus(enum.StrEnum):
    """State of a settlement claim record.

    HELD blocks the other settlement phase. VOID means the rail definitively
    rejected the transfer and the escrow may be settled again.
    """

    HELD = "HELD"
    VOID = "VOID"


class EventType(enum.StrEnum):
    """Types of audit events recorded in the event log.

    Every state transition produces exactly one event.
    This is the append-only forensic trail for disputes.
    """

    # Service events
    SERVICE_CREATED = "SERVICE_CREATED"
    SERVICE_BOOKED = "SERVICE_BOOKED"
    SERVICE_COMPLETED = "SERVICE_COMPLETED"
    SERVICE_CANCELLED = "SERVICE_CANCELLED"

    # Booking events
    BOOKING_CONFIRMED = "BOOKING_CONFIRMED"
    ESCROW_ATTACHED = "ESCROW_ATTACHED"
    SESSION_DELIVERED = "SESSION_DELIVERED"
    BOOKING_COMPLETED = "BOOKING_COMPLETED"
    BOOKING_DISPUTED = "BOOKING_DISPUTED"
    BOOKING_REFUNDED = "BOOKING_REFUNDED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"

    # Escrow events
    ESCROW_OPENED = "ESCROW_OPENED"
    ESCROW_FUNDED = "ESCROW_FUNDED"
    ESCROW_FUNDING_FAILED = "ESCROW_FUNDING_FAILED"
    ESCROW_RELEASED = "ESCROW_RELEASED"
    ESCROW_REFUNDED = "ESCROW_REFUNDED"

    # Dispute events
    DISPUTE_OPENED = "DISPUTE_OPENED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"
