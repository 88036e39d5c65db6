"""Booking Coordinator — owns the Booking lifecycle.

Ordering rule: the service is claimed (Registry.mark_booked) BEFORE the
booking record is written. Two concurrent bookings of one service therefore
produce exactly one Booking and one ServiceUnavailableError, and a crash
between the two writes leaves a BOOKED service with no booking, which a later
attempt sees and refuses cleanly.

escrow_id and session_ref are write-once fields: setting them again to the
same value is a no-op, to a different value a ConflictError. Every write is
conditional on the version read, so a concurrent writer never silently
overwrites one of them with a stale copy.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from session_clearinghouse.domain.enums import (
    BookingOutcome,
    BookingStatus,
    EventType,
    ServiceStatus,
)
from session_clearinghouse.domain.exceptions import (
    ConflictError,
    EntityNotFoundError,
    InvalidStateError,
    ServiceUnavailableError,
    ValidationError,
)
from session_clearinghouse.domain.models import Booking, new_id, utcnow
from session_clearinghouse.domain.state_machine import BookingStateMachine, guard_transition
from session_clearinghouse.infrastructure.ledger.repositories import BookingRepository
from session_clearinghouse.logging_config import get_logger

if TYPE_CHECKING:
    from session_clearinghouse.domain.models import QualityVerdict, Service
    from session_clearinghouse.domain.protocols import LedgerStore
    from session_clearinghouse.services.event_log import EventLog
    from session_clearinghouse.services.service_registry import ServiceRegistry

logger = get_logger(__name__)

_SET_ONCE_ATTEMPTS = 3


class BookingCoordinator:
    """Manages bookings and binds each one to exactly one service."""

    def __init__(self, store: LedgerStore, registry: ServiceRegistry, events: EventLog) -> None:
        self._repo = BookingRepository(store)
        self._registry = registry
        self._events = events

    # ------------------------------------------------------------------
    # Booking Creation
    # ------------------------------------------------------------------

    async def create_booking(
        self,
        service_id: str,
        client_identity: str,
        notes: str | None = None,
    ) -> Booking:
        """Claim the service, then persist a CONFIRMED booking for it."""
        if not client_identity:
            raise ValidationError("client_identity is required", field="client_identity")

        booking_id = new_id()
        try:
            service = await self._registry.mark_booked(service_id, claimed_by=booking_id)
        except (ConflictError, EntityNotFoundError) as exc:
            current = getattr(exc, "current_status", None)
            logger.info("booking.service_unavailable", service_id=service_id, status=current)
            raise ServiceUnavailableError(service_id, current) from exc

        # No separate approval step: PENDING -> CONFIRMED happens before the first write
        status = BookingStatus(
            guard_transition(BookingStateMachine, booking_id, BookingStatus.PENDING, "confirm")
        )
        booking = Booking(
            id=booking_id,
            service_id=service.id,
            client_identity=client_identity,
            provider_identity=service.provider_identity,
            price=service.price,
            status=status,
            notes=notes,
        )
        ok, existing = await self._repo.save_new(booking)
        if not ok:
            raise ConflictError(booking_id, existing.status if existing else None)

        await self._events.record(
            booking_id,
            EventType.BOOKING_CONFIRMED,
            from_status=BookingStatus.PENDING,
            to_status=status,
            actor=client_identity,
            service_id=service.id,
            price=str(service.price),
        )
        logger.info(
            "booking.confirmed",
            booking_id=booking_id,
            service_id=service.id,
            client=client_identity,
        )
        return booking

    async def attach_escrow(self, booking_id: str, escrow_id: str) -> Booking:
        """Set escrow_id once. Re-attaching the same escrow is a no-op."""
        updated, written = await self._set_once(booking_id, "escrow_id", escrow_id)
        if written:
            await self._events.record(
                booking_id,
                EventType.ESCROW_ATTACHED,
                to_status=updated.status,
                escrow_id=escrow_id,
            )
            logger.info("booking.escrow_attached", booking_id=booking_id, escrow_id=escrow_id)
        return updated

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def record_session_delivery(self, booking_id: str, session_ref: str) -> Booking:
        """Attach the delivered session reference to a CONFIRMED booking."""
        if not session_ref:
            raise ValidationError("session_ref is required", field="session_ref")

        updated, written = await self._set_once(
            booking_id,
            "session_ref",
            session_ref,
            required_status=BookingStatus.CONFIRMED,
            operation="record_session_delivery",
        )
        if written:
            await self._events.record(
                booking_id,
                EventType.SESSION_DELIVERED,
                to_status=updated.status,
                session_ref=session_ref,
            )
            logger.info("booking.session_recorded", booking_id=booking_id, session_ref=session_ref)
        return updated

    async def complete_booking(
        self,
        booking_id: str,
        outcome: BookingOutcome,
        notes: str | None = None,
        verdict: QualityVerdict | None = None,
    ) -> Booking:
        """CONFIRMED -> COMPLETED (success) or DISPUTED (failure); the service completes either way."""
        booking = await self._get_or_raise(booking_id)
        event_name = "complete" if outcome == BookingOutcome.SUCCESS else "dispute"
        if booking.status != BookingStatus.CONFIRMED:
            raise InvalidStateError(booking_id, booking.status, event_name)

        new_status = BookingStatus(
            guard_transition(BookingStateMachine, booking_id, booking.status, event_name)
        )
        fields: dict = {"completion_notes": notes}
        if verdict is not None:
            fields.update(
                quality_score=verdict.score,
                quality_passed=outcome == BookingOutcome.SUCCESS,
            )
        updated = await self._write(booking, new_status, **fields)

        event_type = (
            EventType.BOOKING_COMPLETED
            if outcome == BookingOutcome.SUCCESS
            else EventType.BOOKING_DISPUTED
        )
        await self._events.record(
            booking_id,
            event_type,
            from_status=booking.status,
            to_status=new_status,
            outcome=outcome.value,
            quality_score=verdict.score if verdict else None,
        )
        logger.info("booking.completed", booking_id=booking_id, outcome=outcome.value)

        await self.ensure_service_completed(updated)
        return updated

    async def ensure_service_completed(self, booking: Booking) -> Service:
        """Complete the booking's service unless that already happened."""
        service = await self._registry.get_service(booking.service_id)
        if service.status == ServiceStatus.COMPLETED:
            return service
        return await self._registry.mark_completed(booking.service_id)

    # ------------------------------------------------------------------
    # Disputes (called by the Dispute Resolver)
    # ------------------------------------------------------------------

    async def mark_disputed(self, booking_id: str, reason: str | None = None) -> Booking:
        """CONFIRMED/COMPLETED/DISPUTED -> DISPUTED."""
        booking = await self._get_or_raise(booking_id)
        new_status = BookingStatus(
            guard_transition(BookingStateMachine, booking_id, booking.status, "dispute")
        )
        updated = await self._write(booking, new_status)
        if booking.status != new_status:
            await self._events.record(
                booking_id,
                EventType.BOOKING_DISPUTED,
                from_status=booking.status,
                to_status=new_status,
                reason=reason,
            )
        logger.info("booking.disputed", booking_id=booking_id, previous=booking.status)
        return updated

    async def apply_resolution(self, booking_id: str, refunded: bool) -> Booking:
        """DISPUTED -> REFUNDED (refund) or COMPLETED (provider keeps the funds).

        Re-applying an outcome that already landed is a no-op.
        """
        booking = await self._get_or_raise(booking_id)
        target = BookingStatus.REFUNDED if refunded else BookingStatus.COMPLETED
        if booking.status == target:
            return booking

        event_name = "refund" if refunded else "resolve_for_provider"
        new_status = BookingStatus(
            guard_transition(BookingStateMachine, booking_id, booking.status, event_name)
        )
        updated = await self._write(booking, new_status)
        await self._events.record(
            booking_id,
            EventType.BOOKING_REFUNDED if refunded else EventType.BOOKING_COMPLETED,
            from_status=booking.status,
            to_status=new_status,
        )
        logger.info("booking.resolved", booking_id=booking_id, status=new_status)
        return updated

    # ------------------------------------------------------------------
    # Manual intervention
    # ------------------------------------------------------------------

    async def cancel_booking(self, booking_id: str, reason: str) -> Booking:
        """PENDING/CONFIRMED -> CANCELLED, and the claimed service with it.

        The caller checks that no money is held for the booking.
        """
        booking = await self._get_or_raise(booking_id)
        new_status = BookingStatus(
            guard_transition(BookingStateMachine, booking_id, booking.status, "cancel")
        )
        updated = await self._write(booking, new_status, completion_notes=reason)
        await self._events.record(
            booking_id,
            EventType.BOOKING_CANCELLED,
            from_status=booking.status,
            to_status=new_status,
            reason=reason,
        )

        service = await self._registry.get_service(booking.service_id)
        if service.status != ServiceStatus.CANCELLED:
            await self._registry.mark_cancelled(booking.service_id, reason=reason)

        logger.info("booking.cancelled", booking_id=booking_id, reason=reason)
        return updated

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_booking(self, booking_id: str) -> Booking:
        return await self._get_or_raise(booking_id)

    async def list_bookings(
        self,
        provider_identity: str | None = None,
        client_identity: str | None = None,
        status: BookingStatus | None = None,
    ) -> list[Booking]:
        """Bookings for a provider and/or client, oldest first."""
        bookings = [
            b
            for b in await self._repo.list_all()
            if (provider_identity is None or b.provider_identity == provider_identity)
            and (client_identity is None or b.client_identity == client_identity)
            and (status is None or b.status == status)
        ]
        return sorted(bookings, key=lambda b: (b.created_at, b.id))

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_or_raise(self, booking_id: str) -> Booking:
        booking = await self._repo.get(booking_id)
        if booking is None:
            raise EntityNotFoundError("booking", booking_id)
        return booking

    async def _set_once(
        self,
        booking_id: str,
        field: str,
        value: str,
        required_status: BookingStatus | None = None,
        operation: str = "set",
    ) -> tuple[Booking, bool]:
        """Write a write-once field, re-reading after every lost write.

        Returns (booking, True) if this call wrote the value, (booking, False)
        if it was already set to the same value.
        """
        for _ in range(_SET_ONCE_ATTEMPTS):
            booking = await self._get_or_raise(booking_id)
            if required_status is not None and booking.status != required_status:
                raise InvalidStateError(booking_id, booking.status, operation)
            existing = getattr(booking, field)
            if existing == value:
                return booking, False
            if existing is not None:
                raise ConflictError(
                    booking_id,
                    booking.status,
                    message=f"Booking {booking_id} already has {field} {existing}",
                )
            try:
                return await self._write(booking, booking.status, **{field: value}), True
            except ConflictError:
                logger.info("booking.write_retry", booking_id=booking_id, field=field)

        raise ConflictError(
            booking_id, None, message=f"Booking {booking_id} kept changing while setting {field}"
        )

    async def _write(self, booking: Booking, new_status: BookingStatus, **fields) -> Booking:
        """Conditional write on the status and version the caller read."""
        updated = booking.model_copy(
            update={"status": new_status, "updated_at": utcnow(), **fields}
        )
        ok, current = await self._repo.replace(updated, booking.id, booking.status)
        if not ok:
            raise ConflictError(booking.id, current.status if current else None)
        return current
