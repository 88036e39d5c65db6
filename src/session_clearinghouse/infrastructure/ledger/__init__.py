"""Ledger Store backends and typed repositories."""

from __future__ import annotations

from typing import TYPE_CHECKING

from session_clearinghouse.infrastructure.ledger.memory import InMemoryLedgerStore
from session_clearinghouse.infrastructure.ledger.redis_store import RedisLedgerStore

if TYPE_CHECKING:
    from session_clearinghouse.config import Settings
    from session_clearinghouse.domain.protocols import LedgerStore


async def create_ledger_store(settings: Settings) -> LedgerStore:
    """Build the configured ledger backend. Called during app startup."""
    if settings.ledger_backend == "redis":
        return await RedisLedgerStore.connect(settings.redis_url, settings.ledger_namespace)
    return InMemoryLedgerStore()


__all__ = ["InMemoryLedgerStore", "RedisLedgerStore", "create_ledger_store"]
