"""Simulated Payment Rail.

Generates fake transaction hashes instead of real on-chain transfers, while
honouring the same idempotency contract as the real rail: one transfer per
key, and a repeated key returns the original receipt.

Failure injection for tests and the simulation:
    rail.reject_keys.add("<escrow-id>:fund")   # definite rejection
    rail.delay = 5.0                           # slow rail, trips caller timeouts
"""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING

from session_clearinghouse.domain.exceptions import TransferError
from session_clearinghouse.domain.models import TransferReceipt
from session_clearinghouse.logging_config import get_logger

if TYPE_CHECKING:
    from decimal import Decimal

logger = get_logger(__name__)


class SimulatedPaymentRail:
    """In-process PaymentRail with deterministic idempotency."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.reject_keys: set[str] = set()
        self.reject_all = False
        self._receipts: dict[str, TransferReceipt] = {}
        # Every executed transfer in order; a replayed key is not appended again
        self.transfers: list[TransferReceipt] = []

    async def transfer(
        self,
        from_identity: str,
        to_identity: str,
        amount: Decimal,
        idempotency_key: str,
    ) -> TransferReceipt:
        existing = self._receipts.get(idempotency_key)
        if existing is not None:
            if (existing.from_identity, existing.to_identity, existing.amount) != (
                from_identity,
                to_identity,
                amount,
            ):
                raise TransferError(
                    "Idempotency key reused with different transfer parameters",
                    idempotency_key=idempotency_key,
                )
            logger.info("payment.transfer_replayed", idempotency_key=idempotency_key)
            return existing

        if self.delay:
            await asyncio.sleep(self.delay)
            # A concurrent call for the same key may have finished while this one slept
            if idempotency_key in self._receipts:
                return await self.transfer(from_identity, to_identity, amount, idempotency_key)

        if self.reject_all or idempotency_key in self.reject_keys:
            logger.warning(
                "payment.transfer_rejected",
                idempotency_key=idempotency_key,
                simulated=True,
            )
            raise TransferError("Simulated rail rejected the transfer", idempotency_key)

        receipt = TransferReceipt(
            reference="0x" + uuid.uuid4().hex + uuid.uuid4().hex,
            idempotency_key=idempotency_key,
            from_identity=from_identity,
            to_identity=to_identity,
            amount=amount,
        )
        self._receipts[idempotency_key] = receipt
        self.transfers.append(receipt)
        logger.info(
            "payment.transfer_simulated",
            tx_hash=receipt.reference,
            amount=str(amount),
            from_wallet=from_identity,
            to_wallet=to_identity,
            idempotency_key=idempotency_key,
        )
        return receipt
