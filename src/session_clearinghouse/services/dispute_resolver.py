"""Dispute Resolver — drives a disputed Booking/Escrow pair to its outcome.

Resolution -> escrow action:
    FULL_REFUND          -> EscrowManager.refund(100)
    PARTIAL_REFUND(pct)  -> EscrowManager.refund(pct)
    NO_REFUND            -> EscrowManager.release()

Order on resolve: money first, then the dispute record, then the booking.
A crash after the escrow settled is recovered by calling resolve() again: the
escrow reports EscrowNotPendingError, but its settled_by names this dispute,
so the remaining writes are completed instead of failing.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from session_clearinghouse.domain.enums import (
    BookingStatus,
    DisputeStatus,
    EscrowStatus,
    EventType,
    ResolutionType,
)
from session_clearinghouse.domain.exceptions import (
    AlreadyResolvedError,
    ConflictError,
    EntityNotFoundError,
    EscrowNotPendingError,
    InvalidStateError,
    ValidationError,
)
from session_clearinghouse.domain.models import Dispute, Resolution, dispute_id_for, utcnow
from session_clearinghouse.domain.state_machine import DisputeStateMachine, guard_transition
from session_clearinghouse.infrastructure.ledger.repositories import DisputeRepository
from session_clearinghouse.logging_config import get_logger

if TYPE_CHECKING:
    from session_clearinghouse.domain.models import Escrow
    from session_clearinghouse.domain.protocols import LedgerStore
    from session_clearinghouse.services.booking_coordinator import BookingCoordinator
    from session_clearinghouse.services.escrow_manager import EscrowManager
    from session_clearinghouse.services.event_log import EventLog

logger = get_logger(__name__)

_DISPUTABLE = (BookingStatus.COMPLETED, BookingStatus.DISPUTED)


class DisputeResolver:
    """Opens disputes against completed bookings and settles them."""

    def __init__(
        self,
        store: LedgerStore,
        coordinator: BookingCoordinator,
        escrow_manager: EscrowManager,
        events: EventLog,
    ) -> None:
        self._repo = DisputeRepository(store)
        self._coordinator = coordinator
        self._escrows = escrow_manager
        self._events = events

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    async def open_dispute(
        self,
        booking_id: str,
        reason: str,
        evidence_ref: str | None = None,
        raised_by: str | None = None,
    ) -> Dispute:
        """Open the booking's one dispute. The booking becomes DISPUTED.

        Raises:
            InvalidStateError: Booking is not COMPLETED or DISPUTED.
            EscrowNotPendingError: The money has already been settled.
            ConflictError: A dispute was already opened for this booking.
        """
        if not reason:
            raise ValidationError("reason is required", field="reason")

        booking = await self._coordinator.get_booking(booking_id)
        if booking.status not in _DISPUTABLE:
            raise InvalidStateError(booking_id, booking.status, "open_dispute")

        escrow = await self._escrows.find_for_booking(booking_id)
        if escrow is None:
            raise InvalidStateError(booking_id, f"{booking.status} (no escrow)", "open_dispute")
        if escrow.status != EscrowStatus.PENDING:
            raise EscrowNotPendingError(escrow.id, escrow.status, "open_dispute")

        dispute_id = dispute_id_for(booking_id)
        existing = await self._repo.get(dispute_id)
        if existing is not None:
            raise ConflictError(
                dispute_id,
                existing.status,
                message=f"Booking {booking_id} already has dispute {dispute_id}",
            )

        await self._coordinator.mark_disputed(booking_id, reason=reason)

        dispute = Dispute(
            id=dispute_id,
            booking_id=booking_id,
            escrow_id=escrow.id,
            reason=reason,
            evidence_ref=evidence_ref,
        )
        ok, current = await self._repo.save_new(dispute)
        if not ok:
            raise ConflictError(dispute_id, current.status if current else None)

        await self._events.record(
            dispute_id,
            EventType.DISPUTE_OPENED,
            to_status=DisputeStatus.OPEN,
            actor=raised_by or booking.client_identity,
            booking_id=booking_id,
            reason=reason,
            evidence_ref=evidence_ref,
        )
        logger.info("dispute.opened", dispute_id=dispute_id, booking_id=booking_id)
        return dispute

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(
        self,
        dispute_id: str,
        resolution: Resolution,
        notes: str | None = None,
        resolved_by: str | None = None,
    ) -> Dispute:
        """Settle the escrow per the resolution, then close the dispute and the booking."""
        dispute = await self._get_or_raise(dispute_id)
        if dispute.status == DisputeStatus.RESOLVED:
            raise AlreadyResolvedError(dispute_id)

        resolution = self._validated(resolution)
        refund_pct = resolution.refund_pct
        reason = notes or f"dispute {dispute_id}: {resolution.type.value.lower()}"

        try:
            if refund_pct is None:
                await self._escrows.release(dispute.escrow_id, reason, settled_by=dispute_id)
            else:
                await self._escrows.refund(
                    dispute.escrow_id, refund_pct, reason, settled_by=dispute_id
                )
        except EscrowNotPendingError:
            escrow = await self._escrows.get_escrow(dispute.escrow_id)
            if not self._settled_by_this(escrow, dispute_id, refund_pct):
                raise
            logger.info("dispute.escrow_already_settled", dispute_id=dispute_id)

        new_status = DisputeStatus(
            guard_transition(DisputeStateMachine, dispute_id, dispute.status, "resolve")
        )
        resolved = dispute.model_copy(
            update={
                "status": new_status,
                "resolution": resolution,
                "resolution_notes": notes,
                "resolved_at": utcnow(),
            }
        )
        ok, written = await self._repo.replace(resolved, dispute_id, dispute.status)
        if not ok:
            raise AlreadyResolvedError(dispute_id)

        await self._coordinator.apply_resolution(dispute.booking_id, refunded=refund_pct is not None)

        await self._events.record(
            dispute_id,
            EventType.DISPUTE_RESOLVED,
            from_status=dispute.status,
            to_status=new_status,
            actor=resolved_by or "operator",
            resolution=resolution.type.value,
            pct=str(refund_pct) if refund_pct is not None else None,
        )
        logger.info(
            "dispute.resolved",
            dispute_id=dispute_id,
            resolution=resolution.type.value,
            pct=str(refund_pct) if refund_pct is not None else None,
        )
        return written

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_dispute(self, dispute_id: str) -> Dispute:
        return await self._get_or_raise(dispute_id)

    async def find_for_booking(self, booking_id: str) -> Dispute | None:
        return await self._repo.get(dispute_id_for(booking_id))

    async def list_disputes(self, status: DisputeStatus | None = None) -> list[Dispute]:
        disputes = [d for d in await self._repo.list_all() if status is None or d.status == status]
        return sorted(disputes, key=lambda d: (d.created_at, d.id))

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_or_raise(self, dispute_id: str) -> Dispute:
        dispute = await self._repo.get(dispute_id)
        if dispute is None:
            raise EntityNotFoundError("dispute", dispute_id)
        return dispute

    @staticmethod
    def _validated(resolution: Resolution) -> Resolution:
        if resolution.type != ResolutionType.PARTIAL_REFUND:
            return resolution.model_copy(update={"pct": None})
        if resolution.pct is None:
            raise ValidationError("PARTIAL_REFUND requires pct", field="pct")
        try:
            pct = Decimal(str(resolution.pct))
        except InvalidOperation as exc:
            raise ValidationError("pct is not a number", field="pct") from exc
        if pct <= 0 or pct > 100:
            raise ValidationError("pct must be > 0 and <= 100", field="pct")
        return resolution

    @staticmethod
    def _settled_by_this(escrow: Escrow, dispute_id: str, refund_pct: Decimal | None) -> bool:
        """True if an earlier attempt of this same resolution already settled the escrow."""
        expected = EscrowStatus.RELEASED if refund_pct is None else EscrowStatus.REFUNDED
        return escrow.settled_by == dispute_id and escrow.status == expected
