"""Service Registry — owns the Service listing lifecycle.

MarkBooked is the compare-and-swap point behind "at most one booking per
service": the AVAILABLE -> BOOKED write is conditional on the stored status
still being AVAILABLE, so of any number of concurrent claimers exactly one
wins, whichever process they run in.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from session_clearinghouse.domain.enums import EventType, ServiceStatus
from session_clearinghouse.domain.exceptions import (
    ConflictError,
    EntityNotFoundError,
    ValidationError,
)
from session_clearinghouse.domain.models import Service, ServiceFilter, new_id, utcnow
from session_clearinghouse.domain.state_machine import ServiceStateMachine, guard_transition
from session_clearinghouse.infrastructure.ledger.repositories import ServiceRepository
from session_clearinghouse.logging_config import get_logger

if TYPE_CHECKING:
    from datetime import datetime

    from session_clearinghouse.domain.protocols import LedgerStore
    from session_clearinghouse.services.event_log import EventLog

logger = get_logger(__name__)


class ServiceRegistry:
    """Manages service listings: create, list, and the forward-only status moves."""

    def __init__(self, store: LedgerStore, events: EventLog) -> None:
        self._repo = ServiceRepository(store)
        self._events = events

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_service(
        self,
        provider_identity: str,
        title: str,
        price: Decimal | str | int,
        window_start: datetime,
        window_end: datetime,
        description: str = "",
        service_type: str = "general",
    ) -> Service:
        """Create a new service listing in AVAILABLE state."""
        if not provider_identity:
            raise ValidationError("provider_identity is required", field="provider_identity")
        if not title:
            raise ValidationError("title is required", field="title")
        try:
            price = Decimal(str(price))
        except InvalidOperation as exc:
            raise ValidationError(f"price is not a number: {price!r}", field="price") from exc
        if not price.is_finite() or price <= 0:
            raise ValidationError("price must be greater than zero", field="price")
        if window_start.tzinfo is None or window_end.tzinfo is None:
            raise ValidationError("window timestamps must be timezone-aware", field="window")
        if window_end <= window_start:
            raise ValidationError("window end must be after window start", field="window")

        service = Service(
            id=new_id(),
            provider_identity=provider_identity,
            title=title,
            description=description,
            service_type=service_type,
            price=price,
            window_start=window_start,
            window_end=window_end,
        )
        ok, existing = await self._repo.save_new(service)
        if not ok:
            raise ConflictError(service.id, existing.status if existing else None)

        await self._events.record(
            service.id,
            EventType.SERVICE_CREATED,
            to_status=ServiceStatus.AVAILABLE,
            actor=provider_identity,
            price=str(price),
            title=title,
        )
        logger.info("service.created", service_id=service.id, price=str(price))
        return service

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_service(self, service_id: str) -> Service:
        return await self._get_or_raise(service_id)

    async def list_services(self, criteria: ServiceFilter | None = None) -> list[Service]:
        """Return AVAILABLE services matching the filter, oldest first.

        Ties on created_at break on id, so a fixed store snapshot always yields
        the same order.
        """
        criteria = criteria or ServiceFilter()
        services = [
            s
            for s in await self._repo.list_all()
            if s.status == ServiceStatus.AVAILABLE and criteria.matches(s)
        ]
        return sorted(services, key=lambda s: (s.created_at, s.id))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def mark_booked(self, service_id: str, claimed_by: str | None = None) -> Service:
        """Claim an AVAILABLE service. Raises ConflictError if anyone else got there first."""
        service = await self._get_or_raise(service_id)
        if service.status != ServiceStatus.AVAILABLE:
            raise ConflictError(service_id, service.status)

        new_status = ServiceStatus(
            guard_transition(ServiceStateMachine, service_id, service.status, "book")
        )
        updated = service.model_copy(
            update={"status": new_status, "claimed_by": claimed_by, "updated_at": utcnow()}
        )
        ok, current = await self._repo.replace(updated, service_id, service.status)
        if not ok:
            logger.info("service.claim_lost", service_id=service_id, claimed_by=claimed_by)
            raise ConflictError(service_id, current.status if current else None)

        await self._events.record(
            service_id,
            EventType.SERVICE_BOOKED,
            from_status=service.status,
            to_status=new_status,
            claimed_by=claimed_by,
        )
        logger.info("service.booked", service_id=service_id, claimed_by=claimed_by)
        return current

    async def mark_completed(self, service_id: str) -> Service:
        """BOOKED -> COMPLETED. Raises InvalidStateError from any other status."""
        return await self._transition(service_id, "complete", EventType.SERVICE_COMPLETED)

    async def mark_cancelled(self, service_id: str, reason: str | None = None) -> Service:
        """AVAILABLE/BOOKED -> CANCELLED. Raises InvalidStateError once terminal."""
        return await self._transition(
            service_id, "cancel", EventType.SERVICE_CANCELLED, reason=reason
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_or_raise(self, service_id: str) -> Service:
        service = await self._repo.get(service_id)
        if service is None:
            raise EntityNotFoundError("service", service_id)
        return service

    async def _transition(
        self,
        service_id: str,
        event_name: str,
        event_type: EventType,
        **payload: str | None,
    ) -> Service:
        service = await self._get_or_raise(service_id)
        new_status = ServiceStatus(
            guard_transition(ServiceStateMachine, service_id, service.status, event_name)
        )

        updated = service.model_copy(update={"status": new_status, "updated_at": utcnow()})
        ok, current = await self._repo.replace(updated, service_id, service.status)
        if not ok:
            raise ConflictError(service_id, current.status if current else None)

        await self._events.record(
            service_id, event_type, from_status=service.status, to_status=new_status, **payload
        )
        logger.info(f"service.{new_status.lower()}", service_id=service_id)
        return current
