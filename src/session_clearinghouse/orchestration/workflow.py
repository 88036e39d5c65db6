"""Session Workflow — the caller-facing sequence over the four services.

    list -> book (claim + fund escrow) -> [session delivered] -> record session
         -> quality check -> release  OR  dispute -> resolve

The orchestrator holds no state of its own. Every step is a durable
transition recorded by the service that owns the entity, so after a crash
resume() re-reads the entities and performs the next missing step instead of
replaying from scratch.

Usage:
    from session_clearinghouse.orchestration.workflow import build_orchestrator

    workflow = build_orchestrator(store, rail, oracle, settings)
    state = await workflow.book_service(service_id, client_identity="0x...")
    await workflow.record_session(state["booking"].id, session_ref="meeting-42")
    state = await workflow.settle(state["booking"].id)
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, TypedDict

from session_clearinghouse.domain.enums import (
    BookingOutcome,
    BookingStatus,
    DisputeStatus,
    EscrowStatus,
    ServiceStatus,
)
from session_clearinghouse.domain.exceptions import (
    EntityNotFoundError,
    FundingFailedError,
    InvalidStateError,
    OracleTimeoutError,
    TransferTimeoutError,
    ValidationError,
)
from session_clearinghouse.domain.models import escrow_id_for
from session_clearinghouse.logging_config import get_logger
from session_clearinghouse.services import (
    BookingCoordinator,
    DisputeResolver,
    EscrowManager,
    EventLog,
    ServiceRegistry,
)

if TYPE_CHECKING:
    from datetime import datetime
    from decimal import Decimal

    from session_clearinghouse.config import Settings
    from session_clearinghouse.domain.models import (
        Booking,
        Dispute,
        Escrow,
        LedgerEvent,
        QualityVerdict,
        Resolution,
        Service,
        ServiceFilter,
    )
    from session_clearinghouse.domain.protocols import LedgerStore, PaymentRail, QualityOracle
    from session_clearinghouse.infrastructure.quality import LedgerTranscriptSource

logger = get_logger(__name__)

# settled_by marker for releases triggered by a passing quality verdict
QUALITY_GATE = "quality-gate"


class WorkflowState(TypedDict, total=False):
    """Snapshot of one booking's workflow, read fresh from the ledger."""

    service: Service
    booking: Booking
    escrow: Escrow | None
    dispute: Dispute | None
    verdict: QualityVerdict
    next_step: str


class WorkflowOrchestrator:
    """Façade exposing the marketplace operations to the API and the simulation."""

    def __init__(
        self,
        registry: ServiceRegistry,
        coordinator: BookingCoordinator,
        escrow_manager: EscrowManager,
        resolver: DisputeResolver,
        oracle: QualityOracle,
        events: EventLog,
        custodian_identity: str,
        quality_threshold: float = 70.0,
        oracle_timeout: float | None = 60.0,
        auto_open_dispute: bool = False,
        transcripts: LedgerTranscriptSource | None = None,
    ) -> None:
        self.registry = registry
        self.coordinator = coordinator
        self.escrows = escrow_manager
        self.resolver = resolver
        self.events = events
        self._oracle = oracle
        self._custodian = custodian_identity
        self._threshold = quality_threshold
        self._oracle_timeout = oracle_timeout
        self._auto_open_dispute = auto_open_dispute
        self._transcripts = transcripts

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    async def create_service(
        self,
        provider_identity: str,
        title: str,
        price: Decimal | str | int,
        window_start: datetime,
        window_end: datetime,
        description: str = "",
        service_type: str = "general",
    ) -> Service:
        return await self.registry.create_service(
            provider_identity=provider_identity,
            title=title,
            price=price,
            window_start=window_start,
            window_end=window_end,
            description=description,
            service_type=service_type,
        )

    async def list_services(self, criteria: ServiceFilter | None = None) -> list[Service]:
        return await self.registry.list_services(criteria)

    # ------------------------------------------------------------------
    # Booking and Funding
    # ------------------------------------------------------------------

    async def book_service(
        self,
        service_id: str,
        client_identity: str,
        notes: str | None = None,
    ) -> WorkflowState:
        """Claim the service, open and fund its escrow, bind the escrow to the booking.

        Raises:
            ServiceUnavailableError: Someone else holds the service.
            FundingFailedError: The funding transfer was rejected. The booking
                stays CONFIRMED but unfunded; do not deliver the session.
            TransferTimeoutError: Funding outcome unknown; call retry_funding().
        """
        booking = await self.coordinator.create_booking(service_id, client_identity, notes)
        await self._open_escrow(booking)
        return await self.snapshot(booking.id)

    async def retry_funding(self, booking_id: str) -> WorkflowState:
        """Re-issue a funding transfer that timed out, with its original idempotency key."""
        booking = await self.coordinator.get_booking(booking_id)
        escrow = await self.escrows.find_for_booking(booking_id)
        if escrow is None:
            raise EntityNotFoundError("escrow", escrow_id_for(booking_id))
        escrow = await self.escrows.retry_funding(escrow.id)
        await self.coordinator.attach_escrow(booking.id, escrow.id)
        return await self.snapshot(booking_id)

    async def cancel_booking(self, booking_id: str, reason: str) -> Booking:
        """Manual intervention for a booking whose funding failed.

        Refused while an escrow may hold money: a PENDING escrow, funded or
        with an unknown funding outcome, must be settled instead.
        """
        escrow = await self.escrows.find_for_booking(booking_id)
        if escrow is not None and escrow.status != EscrowStatus.CANCELLED:
            raise InvalidStateError(booking_id, f"escrow {escrow.status}", "cancel_booking")
        return await self.coordinator.cancel_booking(booking_id, reason)

    # ------------------------------------------------------------------
    # Delivery and Quality Gate
    # ------------------------------------------------------------------

    async def record_session(
        self,
        booking_id: str,
        session_ref: str,
        transcript: str | None = None,
    ) -> Booking:
        """Record that the session took place. Only a funded booking may be delivered."""
        escrow = await self.escrows.find_for_booking(booking_id)
        if escrow is None or escrow.status != EscrowStatus.PENDING or not escrow.is_funded:
            state = escrow.status if escrow else "no escrow"
            raise InvalidStateError(booking_id, f"unfunded ({state})", "record_session")

        if transcript and self._transcripts is not None:
            await self._transcripts.save(session_ref, transcript)
        return await self.coordinator.record_session_delivery(booking_id, session_ref)

    async def settle(self, booking_id: str, threshold: float | None = None) -> WorkflowState:
        """Ask the quality oracle about the session, then release or route to dispute.

        Args:
            booking_id: A CONFIRMED booking with a recorded session.
            threshold: Per-call override of the configured quality threshold (0-100).

        Raises:
            OracleTimeoutError / OracleError: No verdict; nothing was changed.
        """
        threshold = self._threshold if threshold is None else threshold
        if not 0 <= threshold <= 100:
            raise ValidationError("threshold must be between 0 and 100", field="threshold")

        booking = await self.coordinator.get_booking(booking_id)
        if booking.status != BookingStatus.CONFIRMED:
            raise InvalidStateError(booking_id, booking.status, "settle")
        if not booking.session_ref:
            raise InvalidStateError(booking_id, f"{booking.status} (no session)", "settle")
        escrow = await self.escrows.find_for_booking(booking_id)
        if escrow is None or escrow.status != EscrowStatus.PENDING or not escrow.is_funded:
            raise InvalidStateError(booking_id, "unfunded", "settle")

        verdict = await self._evaluate(booking.session_ref)

        if verdict.clears(threshold):
            logger.info(
                "workflow.quality_passed",
                booking_id=booking_id,
                score=verdict.score,
                threshold=threshold,
            )
            await self.coordinator.complete_booking(
                booking_id, BookingOutcome.SUCCESS, notes=verdict.reasoning, verdict=verdict
            )
            await self.escrows.release(
                escrow.id,
                reason=f"quality score {verdict.score:g} >= {threshold:g}",
                settled_by=QUALITY_GATE,
            )
        else:
            logger.info(
                "workflow.quality_failed",
                booking_id=booking_id,
                score=verdict.score,
                threshold=threshold,
            )
            await self.coordinator.complete_booking(
                booking_id, BookingOutcome.FAILURE, notes=verdict.reasoning, verdict=verdict
            )
            if self._auto_open_dispute:
                await self.resolver.open_dispute(
                    booking_id,
                    reason=f"quality score {verdict.score:g} below {threshold:g}",
                    evidence_ref=booking.session_ref,
                    raised_by=QUALITY_GATE,
                )

        state = await self.snapshot(booking_id)
        state["verdict"] = verdict
        return state

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def open_dispute(
        self,
        booking_id: str,
        reason: str,
        evidence_ref: str | None = None,
        raised_by: str | None = None,
    ) -> Dispute:
        return await self.resolver.open_dispute(booking_id, reason, evidence_ref, raised_by)

    async def resolve_dispute(
        self,
        dispute_id: str,
        resolution: Resolution,
        notes: str | None = None,
        resolved_by: str | None = None,
    ) -> Dispute:
        return await self.resolver.resolve(dispute_id, resolution, notes, resolved_by)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def resume(self, booking_id: str) -> WorkflowState:
        """Perform whatever durable step a crash left undone, then return the snapshot.

        Steps taken, in order, only when their precondition holds:
            - open the escrow of a CONFIRMED booking that never got one
            - bind an existing escrow to its booking
            - retry a funding transfer whose outcome was unknown
            - complete the service of a completed or disputed booking
            - release a quality-passed booking's escrow
            - land a resolved dispute's outcome on its booking
        """
        booking = await self.coordinator.get_booking(booking_id)
        if booking.status == BookingStatus.CANCELLED:
            return await self.snapshot(booking_id)

        escrow = await self.escrows.find_for_booking(booking_id)
        if escrow is None and booking.status == BookingStatus.CONFIRMED:
            logger.info("workflow.resume.open_escrow", booking_id=booking_id)
            escrow = await self._open_escrow(booking)
        elif escrow is not None and booking.escrow_id is None:
            logger.info("workflow.resume.attach_escrow", booking_id=booking_id)
            booking = await self.coordinator.attach_escrow(booking_id, escrow.id)

        if escrow is not None and escrow.status == EscrowStatus.PENDING and not escrow.is_funded:
            logger.info("workflow.resume.retry_funding", booking_id=booking_id)
            escrow = await self.escrows.retry_funding(escrow.id)

        if booking.status in (BookingStatus.COMPLETED, BookingStatus.DISPUTED):
            service = await self.registry.get_service(booking.service_id)
            if service.status == ServiceStatus.BOOKED:
                logger.info("workflow.resume.complete_service", booking_id=booking_id)
                await self.coordinator.ensure_service_completed(booking)

        dispute = await self.resolver.find_for_booking(booking_id)
        if (
            booking.status == BookingStatus.COMPLETED
            and booking.quality_passed
            and dispute is None
            and escrow is not None
            and escrow.status == EscrowStatus.PENDING
            and escrow.is_funded
        ):
            logger.info("workflow.resume.release", booking_id=booking_id)
            await self.escrows.release(
                escrow.id,
                reason=f"quality score {booking.quality_score:g} (resumed)",
                settled_by=QUALITY_GATE,
            )

        if (
            dispute is not None
            and dispute.status == DisputeStatus.RESOLVED
            and dispute.resolution is not None
            and booking.status == BookingStatus.DISPUTED
        ):
            logger.info("workflow.resume.apply_resolution", booking_id=booking_id)
            await self.coordinator.apply_resolution(
                booking_id, refunded=dispute.resolution.refund_pct is not None
            )

        return await self.snapshot(booking_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def snapshot(self, booking_id: str) -> WorkflowState:
        """Read every entity of the booking and name the next step."""
        booking = await self.coordinator.get_booking(booking_id)
        service = await self.registry.get_service(booking.service_id)
        escrow = await self.escrows.find_for_booking(booking_id)
        dispute = await self.resolver.find_for_booking(booking_id)
        return WorkflowState(
            service=service,
            booking=booking,
            escrow=escrow,
            dispute=dispute,
            next_step=_next_step(booking, escrow, dispute),
        )

    async def audit_trail(self, entity_id: str) -> list[LedgerEvent]:
        return await self.events.list_for(entity_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _open_escrow(self, booking: Booking) -> Escrow:
        try:
            escrow = await self.escrows.open_escrow(
                booking_id=booking.id,
                amount=booking.price,
                payer_identity=booking.client_identity,
                custodian_identity=self._custodian,
                payee_identity=booking.provider_identity,
            )
        except (FundingFailedError, TransferTimeoutError):
            # The escrow record exists either way; the booking must point at it
            await self.coordinator.attach_escrow(booking.id, escrow_id_for(booking.id))
            raise
        await self.coordinator.attach_escrow(booking.id, escrow.id)
        return escrow

    async def _evaluate(self, session_ref: str) -> QualityVerdict:
        try:
            return await asyncio.wait_for(
                self._oracle.evaluate(session_ref), timeout=self._oracle_timeout
            )
        except TimeoutError as exc:
            logger.warning("workflow.oracle_timeout", session_ref=session_ref)
            raise OracleTimeoutError(session_ref, self._oracle_timeout) from exc


def _next_step(booking: Booking, escrow: Escrow | None, dispute: Dispute | None) -> str:
    if booking.status == BookingStatus.CANCELLED:
        return "cancelled"
    if escrow is None:
        return "open_escrow"
    if escrow.status == EscrowStatus.CANCELLED:
        return "cancel_booking"
    if escrow.status == EscrowStatus.PENDING and not escrow.is_funded:
        return "retry_funding"
    if booking.status == BookingStatus.CONFIRMED:
        return "settle" if booking.session_ref else "record_session"
    if dispute is not None and dispute.status == DisputeStatus.OPEN:
        return "resolve_dispute"
    if booking.status == BookingStatus.DISPUTED:
        return "resume" if dispute is not None else "open_dispute"
    if escrow.status == EscrowStatus.PENDING:
        return "release"
    return "done"


def build_orchestrator(
    store: LedgerStore,
    rail: PaymentRail,
    oracle: QualityOracle,
    settings: Settings,
    transcripts: LedgerTranscriptSource | None = None,
) -> WorkflowOrchestrator:
    """Wire the four services over one ledger store."""
    events = EventLog(store)
    registry = ServiceRegistry(store, events)
    coordinator = BookingCoordinator(store, registry, events)
    escrow_manager = EscrowManager(
        store,
        rail,
        events,
        transfer_timeout=settings.payment_timeout_seconds,
        quantum=settings.settlement_quantum,
        remainder_to_payee=settings.partial_refund_remainder == "payee",
    )
    resolver = DisputeResolver(store, coordinator, escrow_manager, events)
    return WorkflowOrchestrator(
        registry=registry,
        coordinator=coordinator,
        escrow_manager=escrow_manager,
        resolver=resolver,
        oracle=oracle,
        events=events,
        custodian_identity=settings.custodian_identity,
        quality_threshold=settings.quality_threshold,
        oracle_timeout=settings.oracle_timeout_seconds,
        auto_open_dispute=settings.auto_open_dispute_on_quality_failure,
        transcripts=transcripts,
    )
