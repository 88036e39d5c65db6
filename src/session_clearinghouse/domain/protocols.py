"""Collaborator Protocols.

The three external services the core depends on. These are Protocols
(structural subtyping) so concrete backends don't need to inherit from a
base class — they just need to match the shape.

The domain layer has ZERO imports from Redis, Coinbase AgentKit, LiteLLM,
or any external service.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from decimal import Decimal

    from session_clearinghouse.domain.models import QualityVerdict, TransferReceipt


@runtime_checkable
class LedgerStore(Protocol):
    """Durable key/value persistence for records.

    Values are JSON-compatible dicts. Conditional writes compare the stored
    record's "status" field and, when asked, its "version" field.

    Concrete implementations:
        - infrastructure/ledger/memory.py       (single process, tests)
        - infrastructure/ledger/redis_store.py  (Lua compare-and-set)
    """

    async def get(self, key: str) -> dict[str, Any] | None:
        """Return the stored record, or None if the key does not exist."""
        ...

    async def put_if_status(
        self,
        key: str,
        expected_status: str | None,
        value: dict[str, Any],
        expected_version: int | None = None,
    ) -> tuple[bool, dict[str, Any] | None]:
        """Atomically write value if the stored status equals expected_status.

        expected_status=None means the key must not exist yet. When
        expected_version is given the stored "version" (0 if absent) must
        equal it too.

        Returns:
            (True, value) when written, (False, current record or None) otherwise.
        """
        ...

    async def list_by_prefix(self, prefix: str) -> list[tuple[str, dict[str, Any]]]:
        """Return (key, record) pairs under prefix, sorted by key."""
        ...


@runtime_checkable
class PaymentRail(Protocol):
    """Executes value transfers between client, custodian and provider.

    Concrete implementations:
        - infrastructure/payment/simulated.py  (deterministic, in-process)
        - infrastructure/payment/agentkit.py   (Coinbase AgentKit, ERC-20)
    """

    async def transfer(
        self,
        from_identity: str,
        to_identity: str,
        amount: Decimal,
        idempotency_key: str,
    ) -> TransferReceipt:
        """Move amount once per idempotency key.

        A repeated call with the same key returns the original receipt
        without moving funds again.

        Raises:
            TransferError: If the rail definitively rejected the transfer.
        """
        ...


@runtime_checkable
class QualityOracle(Protocol):
    """Scores a delivered session.

    Concrete implementations:
        - infrastructure/quality/mock.py      (configurable verdicts)
        - infrastructure/quality/semantic.py  (LiteLLM transcript judge)
    """

    async def evaluate(self, session_ref: str) -> QualityVerdict:
        """Return a 0-100 score and a pass/fail verdict for the session.

        Raises:
            OracleError: If no verdict could be produced.
        """
        ...
