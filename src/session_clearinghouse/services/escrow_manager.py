"""Escrow Manager — owns the Escrow lifecycle and every movement of money.

Funding:    payer -> custodian, key "<escrow-id>:fund"
Release:    custodian -> payee, key "<escrow-id>:release"
Refund:     custodian -> payer, key "<escrow-id>:refund"
Remainder:  custodian -> payee, key "<escrow-id>:remainder" (partial refunds,
            only when settings.partial_refund_remainder == "payee")

An escrow leaves PENDING exactly once. Release and refund are serialized by a
settlement claim (settlement/<escrow-id>) taken with a conditional write
BEFORE any money moves:

    - no claim / VOID claim   -> take it, proceed
    - HELD, same phase+amount -> re-entry (retry after a timeout); the rail
                                 dedups on the idempotency key
    - HELD, anything else     -> EscrowNotPendingError, nothing moves

A definite rail rejection voids the claim and the escrow stays PENDING. A
timeout keeps the claim: the outcome is unknown, so only the identical call
may retry.
"""

from __future__ import annotations

import asyncio
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import TYPE_CHECKING

from session_clearinghouse.domain.enums import (
    ClaimStatus,
    EscrowStatus,
    EventType,
    TransferPhase,
)
from session_clearinghouse.domain.exceptions import (
    ConflictError,
    EntityNotFoundError,
    EscrowNotPendingError,
    FundingFailedError,
    InvalidStateError,
    TransferError,
    TransferTimeoutError,
    ValidationError,
)
from session_clearinghouse.domain.models import (
    Escrow,
    SettlementClaim,
    escrow_id_for,
    idempotency_key,
    utcnow,
)
from session_clearinghouse.domain.state_machine import EscrowStateMachine, guard_transition
from session_clearinghouse.infrastructure.ledger.repositories import (
    EscrowRepository,
    SettlementClaimRepository,
)
from session_clearinghouse.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from session_clearinghouse.domain.models import TransferReceipt
    from session_clearinghouse.domain.protocols import LedgerStore, PaymentRail
    from session_clearinghouse.services.event_log import EventLog

logger = get_logger(__name__)

HUNDRED = Decimal(100)
_WRITE_ATTEMPTS = 3


class EscrowManager:
    """Opens, funds, releases and refunds escrows."""

    def __init__(
        self,
        store: LedgerStore,
        rail: PaymentRail,
        events: EventLog,
        transfer_timeout: float | None = 30.0,
        quantum: Decimal = Decimal("0.000001"),
        remainder_to_payee: bool = False,
    ) -> None:
        self._repo = EscrowRepository(store)
        self._claims = SettlementClaimRepository(store)
        self._rail = rail
        self._events = events
        self._transfer_timeout = transfer_timeout
        self._quantum = quantum
        self._remainder_to_payee = remainder_to_payee

    # ------------------------------------------------------------------
    # Opening and Funding
    # ------------------------------------------------------------------

    async def open_escrow(
        self,
        booking_id: str,
        amount: Decimal,
        payer_identity: str,
        custodian_identity: str,
        payee_identity: str,
    ) -> Escrow:
        """Persist the booking's one escrow in PENDING, then fund it payer -> custodian.

        Raises:
            ConflictError: The booking already has an escrow.
            FundingFailedError: The rail rejected the funding transfer.
            TransferTimeoutError: Funding outcome unknown; see retry_funding().
        """
        amount = self._validate_amount(amount)
        for name, identity in (
            ("payer_identity", payer_identity),
            ("custodian_identity", custodian_identity),
            ("payee_identity", payee_identity),
        ):
            if not identity:
                raise ValidationError(f"{name} is required", field=name)

        escrow = Escrow(
            id=escrow_id_for(booking_id),
            booking_id=booking_id,
            amount=amount,
            payer_identity=payer_identity,
            custodian_identity=custodian_identity,
            payee_identity=payee_identity,
        )
        ok, existing = await self._repo.save_new(escrow)
        if not ok:
            raise ConflictError(
                escrow.id,
                existing.status if existing else None,
                message=f"Booking {booking_id} already has escrow {escrow.id}",
            )

        await self._events.record(
            escrow.id,
            EventType.ESCROW_OPENED,
            to_status=EscrowStatus.PENDING,
            actor=payer_identity,
            booking_id=booking_id,
            amount=str(amount),
        )
        logger.info("escrow.opened", escrow_id=escrow.id, booking_id=booking_id, amount=str(amount))
        return await self._fund(escrow)

    async def retry_funding(self, escrow_id: str) -> Escrow:
        """Re-issue the funding transfer after a timeout, with the same idempotency key.

        A funded escrow is returned unchanged. An escrow whose funding was
        definitively rejected is CANCELLED and is not retried.
        """
        escrow = await self._get_or_raise(escrow_id)
        if escrow.status != EscrowStatus.PENDING:
            raise EscrowNotPendingError(escrow_id, escrow.status, "retry_funding")
        if escrow.is_funded:
            return escrow
        logger.info("escrow.funding_retry", escrow_id=escrow_id)
        return await self._fund(escrow)

    async def _fund(self, escrow: Escrow) -> Escrow:
        key = idempotency_key(escrow.id, TransferPhase.FUND)
        try:
            receipt = await self._transfer(
                escrow.payer_identity, escrow.custodian_identity, escrow.amount, key
            )
        except TransferTimeoutError:
            logger.warning("escrow.funding_unknown", escrow_id=escrow.id, idempotency_key=key)
            raise
        except TransferError as exc:
            await self._record_funding_rejected(escrow, exc)
            raise FundingFailedError(escrow.id, escrow.booking_id, exc.message) from exc

        funded, written = await self._write_latest(
            escrow,
            EscrowStatus.PENDING,
            lambda latest: latest.funding_receipt == receipt,
            funding_receipt=receipt,
        )
        if not written:
            return funded
        await self._events.record(
            escrow.id,
            EventType.ESCROW_FUNDED,
            from_status=EscrowStatus.PENDING,
            to_status=EscrowStatus.PENDING,
            tx_hash=receipt.reference,
        )
        logger.info("escrow.funded", escrow_id=escrow.id, tx_hash=receipt.reference)
        return funded

    async def _record_funding_rejected(self, escrow: Escrow, exc: TransferError) -> None:
        new_status = EscrowStatus(
            guard_transition(EscrowStateMachine, escrow.id, escrow.status, "funding_rejected")
        )
        await self._write(escrow, new_status, failure_reason=exc.message)
        await self._events.record(
            escrow.id,
            EventType.ESCROW_FUNDING_FAILED,
            from_status=escrow.status,
            to_status=new_status,
            reason=exc.message,
        )
        logger.warning("escrow.funding_failed", escrow_id=escrow.id, reason=exc.message)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def release(self, escrow_id: str, reason: str, settled_by: str | None = None) -> Escrow:
        """Pay the full amount custodian -> payee. PENDING -> RELEASED."""
        escrow = await self._settleable_or_raise(escrow_id, "release")
        return await self._settle(
            escrow, TransferPhase.RELEASE, escrow.amount, reason, settled_by
        )

    async def refund(
        self,
        escrow_id: str,
        pct: Decimal | int | str,
        reason: str,
        settled_by: str | None = None,
    ) -> Escrow:
        """Return pct% of the amount custodian -> payer. PENDING -> REFUNDED.

        0 < pct <= 100. The refunded amount is rounded down to the token's
        smallest unit, so a refund never exceeds what is held.
        """
        try:
            pct = Decimal(str(pct))
        except InvalidOperation as exc:
            raise ValidationError(f"pct is not a number: {pct!r}", field="pct") from exc
        if not pct.is_finite() or pct <= 0 or pct > HUNDRED:
            raise ValidationError("pct must be > 0 and <= 100", field="pct")

        escrow = await self._settleable_or_raise(escrow_id, "refund")
        refund_amount = (escrow.amount * pct / HUNDRED).quantize(
            self._quantum, rounding=ROUND_DOWN
        )
        return await self._settle(escrow, TransferPhase.REFUND, refund_amount, reason, settled_by)

    async def _settle(
        self,
        escrow: Escrow,
        phase: TransferPhase,
        amount: Decimal,
        reason: str,
        settled_by: str | None,
    ) -> Escrow:
        event_name = phase.value
        new_status = EscrowStatus(
            guard_transition(EscrowStateMachine, escrow.id, escrow.status, event_name)
        )
        await self._take_claim(escrow.id, phase, amount, settled_by)

        if phase == TransferPhase.RELEASE:
            to_identity = escrow.payee_identity
        else:
            to_identity = escrow.payer_identity
        key = idempotency_key(escrow.id, phase)

        try:
            receipt = await self._transfer(escrow.custodian_identity, to_identity, amount, key)
        except TransferTimeoutError:
            logger.warning(
                f"escrow.{phase.value}_unknown", escrow_id=escrow.id, idempotency_key=key
            )
            raise
        except TransferError:
            await self._void_claim(escrow.id)
            logger.warning(f"escrow.{phase.value}_rejected", escrow_id=escrow.id)
            raise

        remainder_receipt = None
        remainder = escrow.amount - amount
        if phase == TransferPhase.REFUND and remainder > 0 and self._remainder_to_payee:
            # Refund already moved; the claim stays HELD so only this call can retry
            remainder_receipt = await self._transfer(
                escrow.custodian_identity,
                escrow.payee_identity,
                remainder,
                idempotency_key(escrow.id, TransferPhase.REMAINDER),
            )

        settled, _ = await self._write_latest(
            escrow,
            new_status,
            lambda latest: False,
            settlement_receipt=receipt,
            remainder_receipt=remainder_receipt,
            settled_amount=amount,
            settled_by=settled_by,
            reason=reason,
        )
        event_type = (
            EventType.ESCROW_RELEASED
            if phase == TransferPhase.RELEASE
            else EventType.ESCROW_REFUNDED
        )
        await self._events.record(
            escrow.id,
            event_type,
            from_status=escrow.status,
            to_status=new_status,
            actor=settled_by or "system",
            amount=str(amount),
            tx_hash=receipt.reference,
            reason=reason,
        )
        logger.info(
            f"escrow.{new_status.lower()}",
            escrow_id=escrow.id,
            amount=str(amount),
            tx_hash=receipt.reference,
        )
        return settled

    # ------------------------------------------------------------------
    # Settlement claims
    # ------------------------------------------------------------------

    async def _take_claim(
        self,
        escrow_id: str,
        phase: TransferPhase,
        amount: Decimal,
        settled_by: str | None,
    ) -> None:
        claim = SettlementClaim(
            escrow_id=escrow_id, phase=phase, amount=amount, settled_by=settled_by
        )
        current = await self._claims.get(escrow_id)

        if current is None:
            ok, current = await self._claims.create(claim, escrow_id)
            if ok:
                return
        elif current.status == ClaimStatus.VOID:
            ok, current = await self._claims.replace(
                claim.model_copy(update={"version": current.version}), escrow_id, ClaimStatus.VOID
            )
            if ok:
                return

        if (
            current is not None
            and current.status == ClaimStatus.HELD
            and current.phase == phase
            and current.amount == amount
        ):
            logger.info("escrow.claim_reentered", escrow_id=escrow_id, phase=phase.value)
            return

        held = f"{current.phase.value} in progress" if current else "claim contended"
        logger.info("escrow.claim_refused", escrow_id=escrow_id, phase=phase.value, held=held)
        raise EscrowNotPendingError(escrow_id, held, phase.value)

    async def _void_claim(self, escrow_id: str) -> None:
        claim = await self._claims.get(escrow_id)
        if claim is None or claim.status != ClaimStatus.HELD:
            return
        await self._claims.replace(
            claim.model_copy(update={"status": ClaimStatus.VOID}), escrow_id, ClaimStatus.HELD
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_escrow(self, escrow_id: str) -> Escrow:
        return await self._get_or_raise(escrow_id)

    async def find_for_booking(self, booking_id: str) -> Escrow | None:
        """The booking's escrow, found by its derived id even if never attached."""
        return await self._repo.get(escrow_id_for(booking_id))

    async def list_escrows(
        self,
        status: EscrowStatus | None = None,
        booking_id: str | None = None,
        payer_identity: str | None = None,
        payee_identity: str | None = None,
    ) -> list[Escrow]:
        escrows = [
            e
            for e in await self._repo.list_all()
            if (status is None or e.status == status)
            and (booking_id is None or e.booking_id == booking_id)
            and (payer_identity is None or e.payer_identity == payer_identity)
            and (payee_identity is None or e.payee_identity == payee_identity)
        ]
        return sorted(escrows, key=lambda e: (e.created_at, e.id))

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _validate_amount(self, amount: Decimal | int | str) -> Decimal:
        try:
            amount = Decimal(str(amount))
        except InvalidOperation as exc:
            raise ValidationError(f"amount is not a number: {amount!r}", field="amount") from exc
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("amount must be greater than zero", field="amount")
        if amount != amount.quantize(self._quantum, rounding=ROUND_DOWN):
            raise ValidationError(
                f"amount has more precision than the settlement token ({self._quantum})",
                field="amount",
            )
        return amount

    async def _get_or_raise(self, escrow_id: str) -> Escrow:
        escrow = await self._repo.get(escrow_id)
        if escrow is None:
            raise EntityNotFoundError("escrow", escrow_id)
        return escrow

    async def _settleable_or_raise(self, escrow_id: str, attempted: str) -> Escrow:
        escrow = await self._get_or_raise(escrow_id)
        if escrow.status != EscrowStatus.PENDING:
            raise EscrowNotPendingError(escrow_id, escrow.status, attempted)
        if not escrow.is_funded:
            raise InvalidStateError(escrow_id, "PENDING (unfunded)", attempted)
        return escrow

    async def _transfer(
        self,
        from_identity: str,
        to_identity: str,
        amount: Decimal,
        key: str,
    ) -> TransferReceipt:
        """Call the rail under the configured timeout. A timeout is an unknown outcome."""
        try:
            return await asyncio.wait_for(
                self._rail.transfer(from_identity, to_identity, amount, key),
                timeout=self._transfer_timeout,
            )
        except TimeoutError as exc:
            raise TransferTimeoutError(key, self._transfer_timeout) from exc

    async def _write(self, escrow: Escrow, new_status: EscrowStatus, **fields) -> Escrow:
        """Conditional write on the status and version read.

        A lost race surfaces as EscrowNotPendingError once the escrow has left
        PENDING, and as ConflictError while it is still PENDING.
        """
        updated = escrow.model_copy(
            update={"status": new_status, "updated_at": utcnow(), **fields}
        )
        ok, current = await self._repo.replace(updated, escrow.id, escrow.status)
        if not ok:
            current_status = current.status if current else "MISSING"
            if current is not None and current.status == EscrowStatus.PENDING:
                raise ConflictError(escrow.id, current_status)
            raise EscrowNotPendingError(escrow.id, current_status, new_status.lower())
        return current

    async def _write_latest(
        self,
        escrow: Escrow,
        new_status: EscrowStatus,
        done: Callable[[Escrow], bool],
        **fields,
    ) -> tuple[Escrow, bool]:
        """_write, re-applied to the latest PENDING record after a lost race.

        Only for writes this caller alone may make (funding under its
        idempotency key, settlement under a held claim). Stops early once
        done(latest) shows another caller already recorded the same outcome.

        Returns (escrow, True) if this call wrote, (latest, False) otherwise.
        """
        for _ in range(_WRITE_ATTEMPTS):
            try:
                return await self._write(escrow, new_status, **fields), True
            except ConflictError:
                escrow = await self._get_or_raise(escrow.id)
                if done(escrow):
                    return escrow, False
                logger.info("escrow.write_retry", escrow_id=escrow.id, version=escrow.version)
        raise ConflictError(
            escrow.id, escrow.status, message=f"Escrow {escrow.id} kept changing during write"
        )
