"""Application services — one owner per entity type."""

from session_clearinghouse.services.booking_coordinator import BookingCoordinator
from session_clearinghouse.services.dispute_resolver import DisputeResolver
from session_clearinghouse.services.escrow_manager import EscrowManager
from session_clearinghouse.services.event_log import EventLog
from session_clearinghouse.services.service_registry import ServiceRegistry

__all__ = [
    "BookingCoordinator",
    "DisputeResolver",
    "EscrowManager",
    "EventLog",
    "ServiceRegistry",
]
