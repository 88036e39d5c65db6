"""In-process Ledger Store.

Holds serialized records in a dict guarded by an asyncio.Lock, so conditional
writes are atomic among coroutines of one event loop. Used by tests, the
simulation, and single-process development servers. Multi-process deployments
use RedisLedgerStore instead.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from session_clearinghouse.logging_config import get_logger

logger = get_logger(__name__)


class InMemoryLedgerStore:
    """Dict-backed LedgerStore. Records are stored as JSON text, never shared by reference."""

    def __init__(self) -> None:
        self._records: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> dict[str, Any] | None:
        raw = self._records.get(key)
        return json.loads(raw) if raw is not None else None

    async def put_if_status(
        self,
        key: str,
        expected_status: str | None,
        value: dict[str, Any],
        expected_version: int | None = None,
    ) -> tuple[bool, dict[str, Any] | None]:
        encoded = json.dumps(value)
        async with self._lock:
            raw = self._records.get(key)
            current = json.loads(raw) if raw is not None else None

            if expected_status is None:
                matches = current is None
            else:
                matches = (
                    current is not None
                    and current.get("status") == expected_status
                    and (expected_version is None or current.get("version", 0) == expected_version)
                )

            if not matches:
                logger.debug(
                    "ledger.cas_rejected",
                    key=key,
                    expected=expected_status,
                    expected_version=expected_version,
                    actual=current.get("status") if current else None,
                    actual_version=current.get("version") if current else None,
                )
                return False, current

            self._records[key] = encoded
        return True, json.loads(encoded)

    async def list_by_prefix(self, prefix: str) -> list[tuple[str, dict[str, Any]]]:
        # Snapshot the keys first so concurrent writers can't mutate mid-iteration
        keys = sorted(k for k in list(self._records) if k.startswith(prefix))
        return [(k, json.loads(self._records[k])) for k in keys]

    async def close(self) -> None:
        """No-op; present so backends share a lifecycle."""
