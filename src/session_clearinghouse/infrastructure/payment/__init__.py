"""Payment Rail backends.

Two rails:
    - SimulatedPaymentRail:  fake tx hashes, in-process idempotency, failure injection
    - AgentKitPaymentRail:   Coinbase AgentKit ERC-20 transfers with a ledger receipt journal
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from session_clearinghouse.infrastructure.payment.agentkit import AgentKitPaymentRail
from session_clearinghouse.infrastructure.payment.simulated import SimulatedPaymentRail

if TYPE_CHECKING:
    from session_clearinghouse.config import Settings
    from session_clearinghouse.domain.protocols import LedgerStore, PaymentRail


def create_payment_rail(settings: Settings, store: LedgerStore) -> PaymentRail:
    """Build the configured payment rail."""
    if settings.payment_rail == "agentkit":
        return AgentKitPaymentRail(settings, journal=store)
    return SimulatedPaymentRail()


__all__ = ["AgentKitPaymentRail", "SimulatedPaymentRail", "create_payment_rail"]
