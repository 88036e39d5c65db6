"""Tests for the Dispute Resolver."""

from __future__ import annotations

from decimal import Decimal

import pytest

from session_clearinghouse.domain.enums import (
    BookingOutcome,
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
from session_clearinghouse.domain.models import Resolution, dispute_id_for
from session_clearinghouse.infrastructure.payment import SimulatedPaymentRail
from session_clearinghouse.infrastructure.quality import MockQualityOracle
from session_clearinghouse.orchestration import WorkflowOrchestrator

CLIENT = "0xclient"


async def _booked(workflow: WorkflowOrchestrator, data: dict) -> str:
    service = await workflow.create_service(**data)
    state = await workflow.book_service(service.id, CLIENT)
    return state["booking"].id


async def _failed_quality(
    workflow: WorkflowOrchestrator, oracle: MockQualityOracle, data: dict
) -> str:
    """A funded booking whose session failed the quality gate (booking DISPUTED)."""
    booking_id = await _booked(workflow, data)
    await workflow.record_session(booking_id, f"meeting-{booking_id}")
    oracle.set_verdict(f"meeting-{booking_id}", score=40, passed=False)
    await workflow.settle(booking_id)
    return booking_id


class TestOpenDispute:
    @pytest.mark.asyncio
    async def test_open_after_quality_failure(
        self,
        orchestrator: WorkflowOrchestrator,
        oracle: MockQualityOracle,
        sample_service_data: dict,
    ) -> None:
        booking_id = await _failed_quality(orchestrator, oracle, sample_service_data)

        dispute = await orchestrator.open_dispute(
            booking_id, reason="session cut short", evidence_ref="recording-1"
        )

        assert dispute.id == dispute_id_for(booking_id)
        assert dispute.status == DisputeStatus.OPEN
        assert dispute.evidence_ref == "recording-1"
        booking = await orchestrator.coordinator.get_booking(booking_id)
        assert booking.status == BookingStatus.DISPUTED

    @pytest.mark.asyncio
    async def test_open_from_completed_with_pending_escrow(
        self, orchestrator: WorkflowOrchestrator, sample_service_data: dict
    ) -> None:
        booking_id = await _booked(orchestrator, sample_service_data)
        await orchestrator.coordinator.complete_booking(booking_id, BookingOutcome.SUCCESS)

        await orchestrator.open_dispute(booking_id, reason="client unhappy", raised_by=CLIENT)

        booking = await orchestrator.coordinator.get_booking(booking_id)
        assert booking.status == BookingStatus.DISPUTED
        trail = await orchestrator.audit_trail(dispute_id_for(booking_id))
        assert trail[0].event_type == EventType.DISPUTE_OPENED
        assert trail[0].actor == CLIENT

    @pytest.mark.asyncio
    async def test_confirmed_booking_cannot_be_disputed(
        self, orchestrator: WorkflowOrchestrator, sample_service_data: dict
    ) -> None:
        booking_id = await _booked(orchestrator, sample_service_data)

        with pytest.raises(InvalidStateError):
            await orchestrator.open_dispute(booking_id, reason="too early")

    @pytest.mark.asyncio
    async def test_settled_escrow_cannot_be_disputed(
        self, orchestrator: WorkflowOrchestrator, sample_service_data: dict
    ) -> None:
        booking_id = await _booked(orchestrator, sample_service_data)
        await orchestrator.record_session(booking_id, "meeting-ok")
        await orchestrator.settle(booking_id)

        with pytest.raises(EscrowNotPendingError):
            await orchestrator.open_dispute(booking_id, reason="changed my mind")

    @pytest.mark.asyncio
    async def test_one_dispute_per_booking(
        self,
        orchestrator: WorkflowOrchestrator,
        oracle: MockQualityOracle,
        sample_service_data: dict,
    ) -> None:
        booking_id = await _failed_quality(orchestrator, oracle, sample_service_data)
        await orchestrator.open_dispute(booking_id, reason="first")

        with pytest.raises(ConflictError):
            await orchestrator.open_dispute(booking_id, reason="second")

    @pytest.mark.asyncio
    async def test_reason_required(
        self,
        orchestrator: WorkflowOrchestrator,
        oracle: MockQualityOracle,
        sample_service_data: dict,
    ) -> None:
        booking_id = await _failed_quality(orchestrator, oracle, sample_service_data)

        with pytest.raises(ValidationError):
            await orchestrator.open_dispute(booking_id, reason="")


class TestResolve:
    @pytest.mark.asyncio
    async def test_full_refund(
        self,
        orchestrator: WorkflowOrchestrator,
        oracle: MockQualityOracle,
        rail: SimulatedPaymentRail,
        sample_service_data: dict,
    ) -> None:
        booking_id = await _failed_quality(orchestrator, oracle, sample_service_data)
        dispute = await orchestrator.open_dispute(booking_id, reason="no show")

        resolved = await orchestrator.resolve_dispute(
            dispute.id, Resolution(type=ResolutionType.FULL_REFUND), resolved_by="ops"
        )

        assert resolved.status == DisputeStatus.RESOLVED
        assert resolved.resolved_at is not None
        escrow = await orchestrator.escrows.get_escrow(dispute.escrow_id)
        assert escrow.status == EscrowStatus.REFUNDED
        assert escrow.settled_amount == Decimal("50")
        assert escrow.settled_by == dispute.id
        assert rail.transfers[-1].to_identity == CLIENT
        booking = await orchestrator.coordinator.get_booking(booking_id)
        assert booking.status == BookingStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_partial_refund(
        self,
        orchestrator: WorkflowOrchestrator,
        oracle: MockQualityOracle,
        sample_service_data: dict,
    ) -> None:
        booking_id = await _failed_quality(orchestrator, oracle, sample_service_data)
        dispute = await orchestrator.open_dispute(booking_id, reason="late start")

        await orchestrator.resolve_dispute(
            dispute.id, Resolution(type=ResolutionType.PARTIAL_REFUND, pct=Decimal("40"))
        )

        escrow = await orchestrator.escrows.get_escrow(dispute.escrow_id)
        assert escrow.status == EscrowStatus.REFUNDED
        assert escrow.settled_amount == Decimal("20")
        booking = await orchestrator.coordinator.get_booking(booking_id)
        assert booking.status == BookingStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_no_refund_pays_provider(
        self,
        orchestrator: WorkflowOrchestrator,
        oracle: MockQualityOracle,
        rail: SimulatedPaymentRail,
        sample_service_data: dict,
    ) -> None:
        booking_id = await _failed_quality(orchestrator, oracle, sample_service_data)
        dispute = await orchestrator.open_dispute(booking_id, reason="unfair score")

        await orchestrator.resolve_dispute(dispute.id, Resolution(type=ResolutionType.NO_REFUND))

        escrow = await orchestrator.escrows.get_escrow(dispute.escrow_id)
        assert escrow.status == EscrowStatus.RELEASED
        assert rail.transfers[-1].to_identity == sample_service_data["provider_identity"]
        booking = await orchestrator.coordinator.get_booking(booking_id)
        assert booking.status == BookingStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_second_resolve_rejected(
        self,
        orchestrator: WorkflowOrchestrator,
        oracle: MockQualityOracle,
        rail: SimulatedPaymentRail,
        sample_service_data: dict,
    ) -> None:
        booking_id = await _failed_quality(orchestrator, oracle, sample_service_data)
        dispute = await orchestrator.open_dispute(booking_id, reason="no show")
        await orchestrator.resolve_dispute(dispute.id, Resolution(type=ResolutionType.FULL_REFUND))
        transfers = len(rail.transfers)

        with pytest.raises(AlreadyResolvedError):
            await orchestrator.resolve_dispute(
                dispute.id, Resolution(type=ResolutionType.NO_REFUND)
            )

        assert len(rail.transfers) == transfers

    @pytest.mark.asyncio
    async def test_escrow_settled_elsewhere(
        self,
        orchestrator: WorkflowOrchestrator,
        oracle: MockQualityOracle,
        sample_service_data: dict,
    ) -> None:
        booking_id = await _failed_quality(orchestrator, oracle, sample_service_data)
        dispute = await orchestrator.open_dispute(booking_id, reason="no show")
        await orchestrator.escrows.release(dispute.escrow_id, reason="operator override")

        with pytest.raises(EscrowNotPendingError):
            await orchestrator.resolve_dispute(
                dispute.id, Resolution(type=ResolutionType.FULL_REFUND)
            )

        assert (await orchestrator.resolver.get_dispute(dispute.id)).status == DisputeStatus.OPEN

    @pytest.mark.asyncio
    async def test_retry_after_partial_write_completes(
        self,
        orchestrator: WorkflowOrchestrator,
        oracle: MockQualityOracle,
        sample_service_data: dict,
    ) -> None:
        booking_id = await _failed_quality(orchestrator, oracle, sample_service_data)
        dispute = await orchestrator.open_dispute(booking_id, reason="no show")
        # Money moved under this dispute's name, but the dispute record was never closed
        await orchestrator.escrows.refund(
            dispute.escrow_id, 100, reason="crashed mid-resolve", settled_by=dispute.id
        )

        resolved = await orchestrator.resolve_dispute(
            dispute.id, Resolution(type=ResolutionType.FULL_REFUND)
        )

        assert resolved.status == DisputeStatus.RESOLVED
        booking = await orchestrator.coordinator.get_booking(booking_id)
        assert booking.status == BookingStatus.REFUNDED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pct", [None, Decimal("0"), Decimal("150")])
    async def test_partial_refund_needs_valid_pct(
        self,
        orchestrator: WorkflowOrchestrator,
        oracle: MockQualityOracle,
        sample_service_data: dict,
        pct,
    ) -> None:
        booking_id = await _failed_quality(orchestrator, oracle, sample_service_data)
        dispute = await orchestrator.open_dispute(booking_id, reason="late")

        with pytest.raises(ValidationError):
            await orchestrator.resolve_dispute(
                dispute.id, Resolution(type=ResolutionType.PARTIAL_REFUND, pct=pct)
            )

        escrow = await orchestrator.escrows.get_escrow(dispute.escrow_id)
        assert escrow.status == EscrowStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_dispute(self, orchestrator: WorkflowOrchestrator) -> None:
        with pytest.raises(EntityNotFoundError):
            await orchestrator.resolve_dispute(
                "missing", Resolution(type=ResolutionType.FULL_REFUND)
            )


class TestListDisputes:
    @pytest.mark.asyncio
    async def test_filters_by_status(
        self,
        orchestrator: WorkflowOrchestrator,
        oracle: MockQualityOracle,
        sample_service_data: dict,
    ) -> None:
        first = await _failed_quality(orchestrator, oracle, sample_service_data)
        second = await _failed_quality(orchestrator, oracle, sample_service_data)
        d1 = await orchestrator.open_dispute(first, reason="a")
        d2 = await orchestrator.open_dispute(second, reason="b")
        await orchestrator.resolve_dispute(d1.id, Resolution(type=ResolutionType.NO_REFUND))

        open_ = await orchestrator.resolver.list_disputes(status=DisputeStatus.OPEN)
        assert [d.id for d in open_] == [d2.id]
        assert len(await orchestrator.resolver.list_disputes()) == 2
