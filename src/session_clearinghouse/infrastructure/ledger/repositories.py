"""Typed repositories over the Ledger Store.

Repositories own the key layout (service/<id>, booking/<id>, ...) and turn
raw store dicts into validated records exactly once. They never decide
whether a transition is legal; that is the calling service's job, done
through the state machines before any write.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Generic, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from session_clearinghouse.domain.exceptions import LedgerError
from session_clearinghouse.domain.models import (
    Booking,
    Dispute,
    Escrow,
    LedgerEvent,
    Service,
    SettlementClaim,
)

if TYPE_CHECKING:
    from session_clearinghouse.domain.protocols import LedgerStore

RecordT = TypeVar("RecordT", bound=BaseModel)


class EntityRepository(Generic[RecordT]):
    """Data access for one record type under one key namespace."""

    namespace: str = ""
    model: type[RecordT]

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    def key(self, record_id: str) -> str:
        return f"{self.namespace}/{record_id}"

    def _parse(self, key: str, raw: dict | None) -> RecordT | None:
        if raw is None:
            return None
        try:
            return self.model.model_validate(raw)
        except PydanticValidationError as exc:
            raise LedgerError(f"Malformed {self.namespace} record: {exc}", key=key) from exc

    async def get(self, record_id: str) -> RecordT | None:
        """Fetch a record by id."""
        key = self.key(record_id)
        return self._parse(key, await self._store.get(key))

    async def create(self, record: RecordT, record_id: str) -> tuple[bool, RecordT | None]:
        """Insert a record whose key must not exist yet.

        Returns (True, record) on insert, (False, existing) if the id was taken.
        """
        key = self.key(record_id)
        ok, current = await self._store.put_if_status(key, None, record.model_dump(mode="json"))
        return ok, self._parse(key, current)

    async def replace(
        self,
        record: RecordT,
        record_id: str,
        expected_status: str,
    ) -> tuple[bool, RecordT | None]:
        """Write the next version of a record read at record.version.

        The write lands only if the stored status still equals expected_status
        and nobody else has written since the read. Returns (True, written
        record with version bumped) or (False, current) when another writer
        got there first.
        """
        key = self.key(record_id)
        bumped = record.model_copy(update={"version": record.version + 1})
        ok, current = await self._store.put_if_status(
            key,
            str(expected_status),
            bumped.model_dump(mode="json"),
            expected_version=record.version,
        )
        return ok, self._parse(key, current)

    async def list_all(self, prefix: str = "") -> list[RecordT]:
        """Fetch every record in this namespace, ordered by key."""
        rows = await self._store.list_by_prefix(f"{self.namespace}/{prefix}")
        return [self._parse(key, raw) for key, raw in rows]


class ServiceRepository(EntityRepository[Service]):
    namespace = "service"
    model = Service

    async def save_new(self, service: Service) -> tuple[bool, Service | None]:
        return await self.create(service, service.id)


class BookingRepository(EntityRepository[Booking]):
    namespace = "booking"
    model = Booking

    async def save_new(self, booking: Booking) -> tuple[bool, Booking | None]:
        return await self.create(booking, booking.id)


class EscrowRepository(EntityRepository[Escrow]):
    namespace = "escrow"
    model = Escrow

    async def save_new(self, escrow: Escrow) -> tuple[bool, Escrow | None]:
        return await self.create(escrow, escrow.id)


class DisputeRepository(EntityRepository[Dispute]):
    namespace = "dispute"
    model = Dispute

    async def save_new(self, dispute: Dispute) -> tuple[bool, Dispute | None]:
        return await self.create(dispute, dispute.id)


class SettlementClaimRepository(EntityRepository[SettlementClaim]):
    """settlement/<escrow_id>: at most one HELD claim per escrow."""

    namespace = "settlement"
    model = SettlementClaim


class EventRepository(EntityRepository[LedgerEvent]):
    """Append-only audit trail: event/<entity_id>/<sortable-ts>-<event_id>."""

    namespace = "event"
    model = LedgerEvent

    async def append(self, event: LedgerEvent) -> LedgerEvent:
        """Insert an event. Keys are unique, so a collision is a store fault."""
        stamp = event.created_at.strftime("%Y%m%dT%H%M%S%f")
        record_id = f"{event.entity_id}/{stamp}-{event.id}"
        ok, _ = await self.create(event, record_id)
        if not ok:
            raise LedgerError("Event key collision", key=self.key(record_id))
        return event

    async def list_for(self, entity_id: str) -> list[LedgerEvent]:
        """Fetch all events for an entity, in chronological order."""
        return await self.list_all(prefix=f"{entity_id}/")
