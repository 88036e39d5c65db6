"""Coinbase AgentKit Payment Rail — real ERC-20 (USDC) transfers on Base.

The rail signs from CDP server wallets via CdpEvmWalletProvider. AgentKit
itself has no idempotency keys, so this rail keeps its own journal in the
ledger (transfer/<idempotency_key>), shared by every process:

    IN_FLIGHT  written with a conditional insert BEFORE anything is sent.
               Only the writer of this entry may send.
    EXECUTED   the send returned a transaction hash; holds the receipt.
    FAILED     AgentKit definitively refused; the key may be sent again.

A call that finds EXECUTED returns the stored receipt. A call that finds
IN_FLIGHT (another process sending, or a crash mid-send) raises
TransferTimeoutError: the outcome is unknown until someone reconciles the
entry against the chain. Inside one process, concurrent calls for a key
join the running send instead.

coinbase_agentkit is imported lazily so the package works without the
`agentkit` extra installed.
"""

from __future__ import annotations

import asyncio
import re
from typing import TYPE_CHECKING, Any

from session_clearinghouse.domain.exceptions import TransferError, TransferTimeoutError
from session_clearinghouse.domain.models import TransferReceipt, utcnow
from session_clearinghouse.logging_config import get_logger

if TYPE_CHECKING:
    from decimal import Decimal

    from session_clearinghouse.config import Settings
    from session_clearinghouse.domain.protocols import LedgerStore

logger = get_logger(__name__)

_TX_HASH = re.compile(r"0x[0-9a-fA-F]{64}")

IN_FLIGHT = "IN_FLIGHT"
EXECUTED = "EXECUTED"
FAILED = "FAILED"


class AgentKitPaymentRail:
    """PaymentRail backed by Coinbase AgentKit ERC-20 transfers."""

    def __init__(self, settings: Settings, journal: LedgerStore) -> None:
        self._settings = settings
        self._journal = journal
        self._inflight: dict[str, asyncio.Future[TransferReceipt]] = {}

    @staticmethod
    def _journal_key(idempotency_key: str) -> str:
        return f"transfer/{idempotency_key}"

    async def transfer(
        self,
        from_identity: str,
        to_identity: str,
        amount: Decimal,
        idempotency_key: str,
    ) -> TransferReceipt:
        task = self._inflight.get(idempotency_key)
        if task is None:
            task = asyncio.ensure_future(
                self._execute(from_identity, to_identity, amount, idempotency_key)
            )
            self._inflight[idempotency_key] = task
            task.add_done_callback(lambda _: self._inflight.pop(idempotency_key, None))
        # shield: the caller's wait_for may give up, the on-chain transfer may not
        return await asyncio.shield(task)

    async def _execute(
        self,
        from_identity: str,
        to_identity: str,
        amount: Decimal,
        idempotency_key: str,
    ) -> TransferReceipt:
        key = self._journal_key(idempotency_key)
        pending = {
            "status": IN_FLIGHT,
            "idempotency_key": idempotency_key,
            "from_identity": from_identity,
            "to_identity": to_identity,
            "amount": str(amount),
            "started_at": utcnow().isoformat(),
        }
        replayed = await self._reserve(key, pending)
        if replayed is not None:
            if (replayed.from_identity, replayed.to_identity, replayed.amount) != (
                from_identity,
                to_identity,
                amount,
            ):
                raise TransferError(
                    f"Idempotency key {idempotency_key} reused with different transfer parameters",
                    idempotency_key,
                )
            logger.info("payment.transfer_replayed", idempotency_key=idempotency_key)
            return replayed

        logger.info(
            "payment.transfer_started",
            amount=str(amount),
            from_wallet=from_identity,
            to_wallet=to_identity,
            idempotency_key=idempotency_key,
        )
        try:
            result = await asyncio.to_thread(
                self._send_erc20, from_identity, to_identity, amount
            )
        except TransferError as exc:
            await self._finish(key, pending, FAILED, reason=exc.message)
            raise TransferError(exc.message, idempotency_key) from exc
        except Exception as exc:
            # The transaction may have been broadcast; the entry stays IN_FLIGHT
            logger.exception("payment.transfer_unknown", idempotency_key=idempotency_key)
            raise TransferTimeoutError(
                idempotency_key,
                None,
                message=f"AgentKit transfer outcome unknown (key: {idempotency_key}): {exc}",
            ) from exc

        match = _TX_HASH.search(result or "")
        if match is None:
            logger.warning(
                "payment.transfer_rejected",
                idempotency_key=idempotency_key,
                result=result,
            )
            await self._finish(key, pending, FAILED, reason=str(result))
            raise TransferError(f"AgentKit returned no transaction: {result}", idempotency_key)

        receipt = TransferReceipt(
            reference=match.group(0),
            idempotency_key=idempotency_key,
            from_identity=from_identity,
            to_identity=to_identity,
            amount=amount,
        )
        await self._finish(key, pending, EXECUTED, **receipt.model_dump(mode="json"))
        logger.info("payment.transfer_complete", tx_hash=receipt.reference)
        return receipt

    async def _reserve(self, key: str, pending: dict[str, Any]) -> TransferReceipt | None:
        """Take the journal entry for a send.

        Returns None when this call now owns an IN_FLIGHT entry, or the stored
        receipt when the key already executed.

        Raises:
            TransferTimeoutError: Another send for the key is in flight.
        """
        current = await self._journal.get(key)
        if current is None:
            ok, current = await self._journal.put_if_status(key, None, pending)
            if ok:
                return None
        elif current.get("status") == FAILED:
            ok, current = await self._journal.put_if_status(key, FAILED, pending)
            if ok:
                return None

        if current is not None and current.get("status") == EXECUTED:
            return TransferReceipt.model_validate(current)

        idempotency_key = pending["idempotency_key"]
        logger.warning(
            "payment.transfer_in_flight",
            idempotency_key=idempotency_key,
            started_at=current.get("started_at") if current else None,
        )
        raise TransferTimeoutError(
            idempotency_key,
            None,
            message=f"Transfer {idempotency_key} is already in flight; outcome unknown",
        )

    async def _finish(
        self, key: str, pending: dict[str, Any], status: str, **fields: Any
    ) -> None:
        ok, current = await self._journal.put_if_status(
            key, IN_FLIGHT, {**pending, **fields, "status": status}
        )
        if not ok:
            # Only the owner of IN_FLIGHT writes here; anything else is an operator edit
            logger.error(
                "payment.journal_conflict",
                key=key,
                wanted=status,
                found=current.get("status") if current else None,
            )

    def _send_erc20(self, from_identity: str, to_identity: str, amount: Decimal) -> str:
        """Blocking AgentKit call. Runs in a worker thread.

        Failures before the transfer is submitted raise TransferError. Failures
        from the transfer call itself propagate as-is: the outcome is unknown.
        """
        try:
            from coinbase_agentkit import (
                AgentKit,
                AgentKitConfig,
                CdpEvmWalletProvider,
                CdpEvmWalletProviderConfig,
                erc20_action_provider,
                wallet_action_provider,
            )

            settings = self._settings
            wallet_provider = CdpEvmWalletProvider(CdpEvmWalletProviderConfig(
                api_key_id=settings.cdp_api_key_id,
                api_key_secret=settings.cdp_api_key_secret,
                wallet_secret=settings.cdp_wallet_secret,
                network_id=settings.cdp_network_id,
                address=from_identity,
            ))

            AgentKit(AgentKitConfig(
                wallet_provider=wallet_provider,
                action_providers=[
                    erc20_action_provider(),
                    wallet_action_provider(),
                ],
            ))
        except Exception as exc:
            raise TransferError(f"AgentKit wallet setup failed: {exc}") from exc

        return erc20_action_provider().transfer(
            wallet_provider,
            {
                "to": to_identity,
                "amount": str(amount),
                "contract_address": settings.settlement_token_address,
            },
        )
