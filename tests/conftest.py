"""Shared test fixtures for the Session Clearinghouse test suite.

Provides:
    - An in-memory ledger, simulated payment rail and mock quality oracle
    - YieldingLedgerStore, a ledger that suspends at every call, for race tests
    - A fully wired WorkflowOrchestrator over them
    - Factory helpers for service windows and listed services
    - Async test support via pytest-asyncio
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, time, timedelta
from decimal import Decimal
from typing import Any

import pytest

from session_clearinghouse.config import Settings
from session_clearinghouse.infrastructure.ledger import InMemoryLedgerStore
from session_clearinghouse.infrastructure.payment import SimulatedPaymentRail
from session_clearinghouse.infrastructure.quality import MockQualityOracle
from session_clearinghouse.orchestration import WorkflowOrchestrator, build_orchestrator
from session_clearinghouse.services import (
    BookingCoordinator,
    DisputeResolver,
    EscrowManager,
    EventLog,
    ServiceRegistry,
)

PROVIDER = "0x" + "P" * 40
CLIENT = "0x" + "C" * 40
CUSTODIAN = "0x" + "A" * 40


def tomorrow_window(start_hour: int = 10, hours: int = 1) -> tuple[datetime, datetime]:
    """Return (start, end) for a slot tomorrow, e.g. 10:00-11:00 UTC."""
    day = datetime.now(UTC).date() + timedelta(days=1)
    start = datetime.combine(day, time(hour=start_hour), tzinfo=UTC)
    return start, start + timedelta(hours=hours)


class YieldingLedgerStore(InMemoryLedgerStore):
    """InMemoryLedgerStore that suspends on entry to every call.

    Coroutines gathered over it interleave at each ledger access, as they do
    against a networked store. The plain in-memory store never suspends, so
    gathered coroutines over it run one after another.
    """

    async def get(self, key: str) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        return await super().get(key)

    async def put_if_status(
        self,
        key: str,
        expected_status: str | None,
        value: dict[str, Any],
        expected_version: int | None = None,
    ) -> tuple[bool, dict[str, Any] | None]:
        await asyncio.sleep(0)
        return await super().put_if_status(key, expected_status, value, expected_version)

    async def list_by_prefix(self, prefix: str) -> list[tuple[str, dict[str, Any]]]:
        await asyncio.sleep(0)
        return await super().list_by_prefix(prefix)


# ---------------------------------------------------------------------------
# Infrastructure Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        custodian_identity=CUSTODIAN,
        quality_threshold=70.0,
        payment_timeout_seconds=1.0,
        oracle_timeout_seconds=1.0,
    )


@pytest.fixture
def store(request: pytest.FixtureRequest) -> InMemoryLedgerStore:
    """In-memory ledger shared by every service fixture.

    Race tests parametrize it indirectly with "yielding" so the services
    under test interleave:

        @pytest.mark.parametrize("store", ["memory", "yielding"], indirect=True)
    """
    if getattr(request, "param", "memory") == "yielding":
        return YieldingLedgerStore()
    return InMemoryLedgerStore()


@pytest.fixture
def yielding_store() -> YieldingLedgerStore:
    return YieldingLedgerStore()


@pytest.fixture
def rail() -> SimulatedPaymentRail:
    return SimulatedPaymentRail()


@pytest.fixture
def oracle() -> MockQualityOracle:
    return MockQualityOracle()


# ---------------------------------------------------------------------------
# Service Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def events(store: InMemoryLedgerStore) -> EventLog:
    return EventLog(store)


@pytest.fixture
def registry(store: InMemoryLedgerStore, events: EventLog) -> ServiceRegistry:
    return ServiceRegistry(store, events)


@pytest.fixture
def coordinator(
    store: InMemoryLedgerStore, registry: ServiceRegistry, events: EventLog
) -> BookingCoordinator:
    return BookingCoordinator(store, registry, events)


@pytest.fixture
def escrow_manager(
    store: InMemoryLedgerStore, rail: SimulatedPaymentRail, events: EventLog
) -> EscrowManager:
    return EscrowManager(store, rail, events, transfer_timeout=1.0)


@pytest.fixture
def resolver(
    store: InMemoryLedgerStore,
    coordinator: BookingCoordinator,
    escrow_manager: EscrowManager,
    events: EventLog,
) -> DisputeResolver:
    return DisputeResolver(store, coordinator, escrow_manager, events)


@pytest.fixture
def orchestrator(
    store: InMemoryLedgerStore,
    rail: SimulatedPaymentRail,
    oracle: MockQualityOracle,
    settings: Settings,
) -> WorkflowOrchestrator:
    return build_orchestrator(store, rail, oracle, settings)


# ---------------------------------------------------------------------------
# Domain Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def window() -> tuple[datetime, datetime]:
    """Tomorrow 10:00-11:00 UTC."""
    return tomorrow_window()


@pytest.fixture
def sample_service_data() -> dict:
    """Return valid CreateService arguments: price 50, tomorrow 10:00-11:00."""
    start, end = tomorrow_window()
    return {
        "provider_identity": PROVIDER,
        "title": "1:1 Python mentoring",
        "price": Decimal("50"),
        "window_start": start,
        "window_end": end,
        "service_type": "mentoring",
    }
