"""Tests for the Escrow Manager.

These tests verify that:
    1. Funding moves payer -> custodian under the "<id>:fund" key.
    2. An escrow leaves PENDING exactly once (release XOR refund).
    3. Rejections and timeouts are surfaced, never silently retried.
    4. Retries reuse the same idempotency key, so money moves once.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from session_clearinghouse.domain.enums import EscrowStatus, EventType
from session_clearinghouse.domain.exceptions import (
    ConflictError,
    EscrowNotPendingError,
    FundingFailedError,
    InvalidStateError,
    TransferError,
    TransferTimeoutError,
    ValidationError,
)
from session_clearinghouse.domain.models import escrow_id_for
from session_clearinghouse.infrastructure.ledger import InMemoryLedgerStore
from session_clearinghouse.infrastructure.payment import SimulatedPaymentRail
from session_clearinghouse.services import EscrowManager, EventLog

PAYER = "0xpayer"
CUSTODIAN = "0xcustodian"
PAYEE = "0xpayee"


async def _open(manager: EscrowManager, booking_id: str = "booking-1", amount: str = "50"):
    return await manager.open_escrow(
        booking_id=booking_id,
        amount=Decimal(amount),
        payer_identity=PAYER,
        custodian_identity=CUSTODIAN,
        payee_identity=PAYEE,
    )


def _manager(rail: SimulatedPaymentRail, **kwargs) -> EscrowManager:
    store = InMemoryLedgerStore()
    return EscrowManager(store, rail, EventLog(store), **kwargs)


class TestOpenEscrow:
    @pytest.mark.asyncio
    async def test_funds_into_custody(
        self, escrow_manager: EscrowManager, rail: SimulatedPaymentRail
    ) -> None:
        escrow = await _open(escrow_manager)

        assert escrow.id == escrow_id_for("booking-1")
        assert escrow.status == EscrowStatus.PENDING
        assert escrow.is_funded
        transfer = rail.transfers[0]
        assert (transfer.from_identity, transfer.to_identity) == (PAYER, CUSTODIAN)
        assert transfer.amount == Decimal("50")
        assert transfer.idempotency_key == f"{escrow.id}:fund"

    @pytest.mark.asyncio
    async def test_one_escrow_per_booking(self, escrow_manager: EscrowManager) -> None:
        await _open(escrow_manager)

        with pytest.raises(ConflictError):
            await _open(escrow_manager)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-1", "1.0000001"])
    async def test_rejects_bad_amount(self, escrow_manager: EscrowManager, amount: str) -> None:
        with pytest.raises(ValidationError):
            await _open(escrow_manager, amount=amount)

    @pytest.mark.asyncio
    async def test_funding_rejected(
        self, escrow_manager: EscrowManager, rail: SimulatedPaymentRail
    ) -> None:
        rail.reject_keys.add(f"{escrow_id_for('booking-1')}:fund")

        with pytest.raises(FundingFailedError) as exc_info:
            await _open(escrow_manager)

        assert exc_info.value.booking_id == "booking-1"
        escrow = await escrow_manager.get_escrow(escrow_id_for("booking-1"))
        assert escrow.status == EscrowStatus.CANCELLED
        assert escrow.failure_reason
        assert not escrow.is_funded

    @pytest.mark.asyncio
    async def test_rejected_funding_is_not_retried(
        self, escrow_manager: EscrowManager, rail: SimulatedPaymentRail
    ) -> None:
        rail.reject_all = True
        with pytest.raises(FundingFailedError):
            await _open(escrow_manager)

        with pytest.raises(EscrowNotPendingError):
            await escrow_manager.retry_funding(escrow_id_for("booking-1"))


class TestFundingTimeout:
    @pytest.mark.asyncio
    async def test_timeout_is_unknown_then_retry_funds_once(self) -> None:
        rail = SimulatedPaymentRail(delay=1.0)
        manager = _manager(rail, transfer_timeout=0.05)

        with pytest.raises(TransferTimeoutError) as exc_info:
            await _open(manager)

        escrow_id = escrow_id_for("booking-1")
        assert exc_info.value.idempotency_key == f"{escrow_id}:fund"
        escrow = await manager.get_escrow(escrow_id)
        assert escrow.status == EscrowStatus.PENDING
        assert not escrow.is_funded

        # Money cannot move out of an escrow whose funding is unknown
        with pytest.raises(InvalidStateError):
            await manager.release(escrow_id, reason="too early")

        rail.delay = 0.0
        funded = await manager.retry_funding(escrow_id)
        assert funded.is_funded
        assert len(rail.transfers) == 1

        # A funded escrow is returned unchanged
        assert (await manager.retry_funding(escrow_id)).funding_receipt == funded.funding_receipt

    @pytest.mark.asyncio
    async def test_concurrent_retries_record_funding_once(
        self, yielding_store: InMemoryLedgerStore
    ) -> None:
        rail = SimulatedPaymentRail(delay=1.0)
        events = EventLog(yielding_store)
        manager = EscrowManager(yielding_store, rail, events, transfer_timeout=0.05)
        with pytest.raises(TransferTimeoutError):
            await _open(manager)
        escrow_id = escrow_id_for("booking-1")

        rail.delay = 0.0
        first, second = await asyncio.gather(
            manager.retry_funding(escrow_id), manager.retry_funding(escrow_id)
        )

        assert first.funding_receipt is not None
        assert first.funding_receipt == second.funding_receipt
        assert len(rail.transfers) == 1
        funded = [
            e for e in await events.list_for(escrow_id) if e.event_type == EventType.ESCROW_FUNDED
        ]
        assert len(funded) == 1


class TestRelease:
    @pytest.mark.asyncio
    async def test_pays_payee_in_full(
        self, escrow_manager: EscrowManager, rail: SimulatedPaymentRail
    ) -> None:
        escrow = await _open(escrow_manager)

        released = await escrow_manager.release(escrow.id, reason="quality ok", settled_by="gate")

        assert released.status == EscrowStatus.RELEASED
        assert released.settled_amount == Decimal("50")
        assert released.settled_by == "gate"
        assert released.settlement_receipt.to_identity == PAYEE
        assert rail.transfers[-1].idempotency_key == f"{escrow.id}:release"

    @pytest.mark.asyncio
    async def test_rail_rejection_keeps_escrow_pending(
        self, escrow_manager: EscrowManager, rail: SimulatedPaymentRail
    ) -> None:
        escrow = await _open(escrow_manager)
        rail.reject_keys.add(f"{escrow.id}:release")

        with pytest.raises(TransferError):
            await escrow_manager.release(escrow.id, reason="quality ok")

        assert (await escrow_manager.get_escrow(escrow.id)).status == EscrowStatus.PENDING

        # The voided claim lets the other phase settle
        refunded = await escrow_manager.refund(escrow.id, 100, reason="provider unpaid")
        assert refunded.status == EscrowStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_timeout_then_retry_moves_money_once(self) -> None:
        rail = SimulatedPaymentRail()
        manager = _manager(rail, transfer_timeout=0.05)
        escrow = await _open(manager)

        rail.delay = 1.0
        with pytest.raises(TransferTimeoutError):
            await manager.release(escrow.id, reason="quality ok")

        # Outcome unknown: the other phase must not run
        rail.delay = 0.0
        with pytest.raises(EscrowNotPendingError):
            await manager.refund(escrow.id, 100, reason="client asked")

        released = await manager.release(escrow.id, reason="quality ok")
        assert released.status == EscrowStatus.RELEASED
        release_keys = [t for t in rail.transfers if t.idempotency_key.endswith(":release")]
        assert len(release_keys) == 1


class TestRefund:
    @pytest.mark.asyncio
    async def test_full_refund(
        self, escrow_manager: EscrowManager, rail: SimulatedPaymentRail
    ) -> None:
        escrow = await _open(escrow_manager)

        refunded = await escrow_manager.refund(escrow.id, 100, reason="no show")

        assert refunded.status == EscrowStatus.REFUNDED
        assert refunded.settled_amount == Decimal("50")
        assert refunded.settlement_receipt.to_identity == PAYER
        assert refunded.remainder_receipt is None

    @pytest.mark.asyncio
    async def test_partial_refund_forty_percent(self, escrow_manager: EscrowManager) -> None:
        escrow = await _open(escrow_manager)

        refunded = await escrow_manager.refund(escrow.id, Decimal("40"), reason="late start")

        assert refunded.settled_amount == Decimal("20")
        assert refunded.settlement_receipt.amount == Decimal("20")
        # Default policy: the remainder stays with the custodian
        assert refunded.remainder_receipt is None

    @pytest.mark.asyncio
    async def test_partial_refund_remainder_to_payee(self) -> None:
        rail = SimulatedPaymentRail()
        manager = _manager(rail, remainder_to_payee=True)
        escrow = await _open(manager)

        refunded = await manager.refund(escrow.id, 40, reason="late start")

        assert refunded.remainder_receipt.to_identity == PAYEE
        assert refunded.remainder_receipt.amount == Decimal("30")
        assert rail.transfers[-1].idempotency_key == f"{escrow.id}:remainder"

    @pytest.mark.asyncio
    async def test_refund_rounds_down_to_token_unit(self, escrow_manager: EscrowManager) -> None:
        escrow = await _open(escrow_manager, amount="10.000001")

        refunded = await escrow_manager.refund(escrow.id, 50, reason="half")

        assert refunded.settled_amount == Decimal("5.000000")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pct", [0, -10, 101, "abc"])
    async def test_rejects_bad_pct(self, escrow_manager: EscrowManager, pct) -> None:
        escrow = await _open(escrow_manager)

        with pytest.raises(ValidationError):
            await escrow_manager.refund(escrow.id, pct, reason="bad")


class TestTerminality:
    @pytest.mark.asyncio
    async def test_second_settlement_has_no_effect(
        self, escrow_manager: EscrowManager, rail: SimulatedPaymentRail
    ) -> None:
        escrow = await _open(escrow_manager)
        await escrow_manager.release(escrow.id, reason="ok")

        with pytest.raises(EscrowNotPendingError):
            await escrow_manager.refund(escrow.id, 100, reason="too late")
        with pytest.raises(InvalidStateError):
            await escrow_manager.release(escrow.id, reason="again")

        final = await escrow_manager.get_escrow(escrow.id)
        assert final.status == EscrowStatus.RELEASED
        assert len(rail.transfers) == 2  # fund + release

    @pytest.mark.parametrize("store", ["memory", "yielding"], indirect=True)
    @pytest.mark.asyncio
    async def test_concurrent_release_and_refund(
        self, escrow_manager: EscrowManager, rail: SimulatedPaymentRail
    ) -> None:
        escrow = await _open(escrow_manager)

        results = await asyncio.gather(
            escrow_manager.release(escrow.id, reason="gate"),
            escrow_manager.refund(escrow.id, 100, reason="operator"),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, BaseException)]
        failures = [r for r in results if isinstance(r, BaseException)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], InvalidStateError)
        assert len(rail.transfers) == 2

    @pytest.mark.parametrize("store", ["memory", "yielding"], indirect=True)
    @pytest.mark.asyncio
    async def test_concurrent_releases_pay_once(
        self, escrow_manager: EscrowManager, rail: SimulatedPaymentRail
    ) -> None:
        escrow = await _open(escrow_manager)

        results = await asyncio.gather(
            *(escrow_manager.release(escrow.id, reason="gate") for _ in range(3)),
            return_exceptions=True,
        )

        assert sum(1 for r in results if not isinstance(r, BaseException)) == 1
        assert all(
            isinstance(r, InvalidStateError) for r in results if isinstance(r, BaseException)
        )
        assert len(rail.transfers) == 2


class TestReadsAndAudit:
    @pytest.mark.asyncio
    async def test_list_escrows_filters(self, escrow_manager: EscrowManager) -> None:
        first = await _open(escrow_manager, booking_id="b-1")
        await _open(escrow_manager, booking_id="b-2")
        await escrow_manager.release(first.id, reason="ok")

        released = await escrow_manager.list_escrows(status=EscrowStatus.RELEASED)
        assert [e.id for e in released] == [first.id]
        assert len(await escrow_manager.list_escrows(payer_identity=PAYER)) == 2
        assert len(await escrow_manager.list_escrows(booking_id="b-2")) == 1

    @pytest.mark.asyncio
    async def test_find_for_booking(self, escrow_manager: EscrowManager) -> None:
        assert await escrow_manager.find_for_booking("b-1") is None
        escrow = await _open(escrow_manager, booking_id="b-1")
        assert (await escrow_manager.find_for_booking("b-1")).id == escrow.id

    @pytest.mark.asyncio
    async def test_audit_trail(self, escrow_manager: EscrowManager, events: EventLog) -> None:
        escrow = await _open(escrow_manager)
        await escrow_manager.release(escrow.id, reason="ok")

        kinds = {e.event_type for e in await events.list_for(escrow.id)}
        assert kinds == {
            EventType.ESCROW_OPENED,
            EventType.ESCROW_FUNDED,
            EventType.ESCROW_RELEASED,
        }
