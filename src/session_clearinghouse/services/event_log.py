"""Audit Event Log — append-only forensic trail.

Every state transition made by a service is recorded here right after its
conditional write succeeds. The dispute desk reads this trail when deciding
a resolution.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from session_clearinghouse.domain.models import LedgerEvent
from session_clearinghouse.infrastructure.ledger.repositories import EventRepository

if TYPE_CHECKING:
    from enum import StrEnum

    from session_clearinghouse.domain.enums import EventType
    from session_clearinghouse.domain.protocols import LedgerStore


class EventLog:
    def __init__(self, store: LedgerStore) -> None:
        self._repo = EventRepository(store)

    async def record(
        self,
        entity_id: str,
        event_type: EventType,
        from_status: StrEnum | str | None = None,
        to_status: StrEnum | str | None = None,
        actor: str = "system",
        **payload: Any,
    ) -> LedgerEvent:
        """Append one event. Payload values must be JSON-serializable."""
        event = LedgerEvent(
            entity_id=entity_id,
            event_type=event_type,
            from_status=str(from_status) if from_status is not None else None,
            to_status=str(to_status) if to_status is not None else None,
            actor=actor,
            payload=payload,
        )
        return await self._repo.append(event)

    async def list_for(self, entity_id: str) -> list[LedgerEvent]:
        """Get audit trail for one entity, oldest first."""
        return await self._repo.list_for(entity_id)
