#!/usr/bin/env python3
"""Session Clearinghouse — End-to-End Simulation.

Simulates four scenarios with ProviderBot and ClientBot agents:

    Scenario A: Book and Fund
        - Provider lists a session (price 50, tomorrow 10:00-11:00)
        - Client books it -> Service BOOKED, Booking CONFIRMED, Escrow PENDING + funded

    Scenario B: Quality Pass
        - Session recorded, oracle scores it 85 (threshold 70)
        - Escrow RELEASED to provider, Booking + Service COMPLETED

    Scenario C: Quality Fail and Dispute
        - Oracle scores the session 40 -> Booking DISPUTED
        - Client opens a dispute, operator resolves FULL_REFUND -> Escrow REFUNDED

    Scenario D: Booking Race
        - Two clients book the same session at once
        - Exactly one booking, the other gets ServiceUnavailableError

Everything runs in-process over the in-memory ledger, the simulated payment
rail and the mock quality oracle. No network, no Redis, no wallet.

Usage:
    uv run python simulation.py
    uv run python simulation.py --scenario C
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta
from decimal import Decimal

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from session_clearinghouse.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from session_clearinghouse.config import Settings  # noqa: E402
from session_clearinghouse.domain.enums import ResolutionType  # noqa: E402
from session_clearinghouse.domain.exceptions import ServiceUnavailableError  # noqa: E402
from session_clearinghouse.domain.models import Resolution  # noqa: E402
from session_clearinghouse.infrastructure.ledger import InMemoryLedgerStore  # noqa: E402
from session_clearinghouse.infrastructure.payment import SimulatedPaymentRail  # noqa: E402
from session_clearinghouse.infrastructure.quality import MockQualityOracle  # noqa: E402
from session_clearinghouse.orchestration import (  # noqa: E402
    WorkflowOrchestrator,
    WorkflowState,
    build_orchestrator,
)


def build_world() -> tuple[WorkflowOrchestrator, MockQualityOracle]:
    """Fresh in-memory marketplace per scenario."""
    oracle = MockQualityOracle()
    settings = Settings(_env_file=None, quality_threshold=70.0)
    workflow = build_orchestrator(InMemoryLedgerStore(), SimulatedPaymentRail(), oracle, settings)
    return workflow, oracle


def tomorrow_at(hour: int) -> datetime:
    day = datetime.now(UTC).date() + timedelta(days=1)
    return datetime.combine(day, time(hour=hour), tzinfo=UTC)


# ---------------------------------------------------------------------------
# Bot Agents
# ---------------------------------------------------------------------------
@dataclass
class ProviderBot:
    """Simulated provider agent that lists sessions."""

    wallet: str = "0x" + "P" * 40

    async def list_session(self, workflow: WorkflowOrchestrator, title: str) -> str:
        service = await workflow.create_service(
            provider_identity=self.wallet,
            title=title,
            price=Decimal("50"),
            window_start=tomorrow_at(10),
            window_end=tomorrow_at(11),
            service_type="mentoring",
        )
        logger.info("🟢 PROVIDER: Session listed", service_id=service.id, status=service.status)
        return service.id


@dataclass
class ClientBot:
    """Simulated client agent that books, attends and disputes sessions."""

    wallet: str = "0x" + "C" * 40

    async def book(self, workflow: WorkflowOrchestrator, service_id: str) -> WorkflowState:
        state = await workflow.book_service(service_id, client_identity=self.wallet)
        logger.info(
            "🔵 CLIENT: Session booked",
            booking_id=state["booking"].id,
            escrow_id=state["escrow"].id,
            funding_tx=state["escrow"].funding_receipt.reference[:16] + "...",
        )
        return state

    async def attend(self, workflow: WorkflowOrchestrator, booking_id: str, ref: str) -> None:
        await workflow.record_session(booking_id, session_ref=ref)
        logger.info("🔵 CLIENT: Session attended", booking_id=booking_id, session_ref=ref)

    async def dispute(self, workflow: WorkflowOrchestrator, booking_id: str, reason: str) -> str:
        dispute = await workflow.open_dispute(booking_id, reason=reason, raised_by=self.wallet)
        logger.info("🔵 CLIENT: Dispute opened", dispute_id=dispute.id)
        return dispute.id


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


def print_state(state: WorkflowState) -> None:
    """Pretty-print a workflow snapshot."""
    print(f"  Service: {state['service'].status}")
    print(f"  Booking: {state['booking'].status}")
    escrow = state.get("escrow")
    if escrow is not None:
        print(f"  Escrow:  {escrow.status} (amount {escrow.amount})")
        if escrow.settlement_receipt is not None:
            receipt = escrow.settlement_receipt
            print(f"  Settled: {receipt.amount} -> {receipt.to_identity[:10]}...")
    verdict = state.get("verdict")
    if verdict is not None:
        icon = "✅" if verdict.passed else "❌"
        print(f"  {icon} Quality: {verdict.score:g}/100")
    print(f"  Next step: {state['next_step']}")


async def print_audit_trail(workflow: WorkflowOrchestrator, entity_id: str) -> None:
    section("Audit Trail")
    for event in await workflow.audit_trail(entity_id):
        transition = f"{event.from_status or '-'} -> {event.to_status or '-'}"
        print(f"  {event.created_at:%H:%M:%S} {event.event_type:<22} {transition}")


# ===========================================================================
# Scenarios
# ===========================================================================
async def scenario_a_book_and_fund() -> None:
    banner("SCENARIO A: Book and Fund")
    workflow, _ = build_world()
    provider, client = ProviderBot(), ClientBot()

    service_id = await provider.list_session(workflow, "1:1 Python mentoring")
    state = await client.book(workflow, service_id)
    print_state(state)
    await print_audit_trail(workflow, state["escrow"].id)


async def scenario_b_quality_pass() -> None:
    banner("SCENARIO B: Quality Pass -> Release")
    workflow, oracle = build_world()
    provider, client = ProviderBot(), ClientBot()

    service_id = await provider.list_session(workflow, "Architecture review")
    state = await client.book(workflow, service_id)
    booking_id = state["booking"].id

    oracle.set_verdict("meeting-b", score=85, passed=True)
    await client.attend(workflow, booking_id, "meeting-b")

    section("Quality Gate")
    state = await workflow.settle(booking_id)
    print_state(state)
    await print_audit_trail(workflow, booking_id)


async def scenario_c_quality_fail_and_dispute() -> None:
    banner("SCENARIO C: Quality Fail -> Dispute -> Full Refund")
    workflow, oracle = build_world()
    provider, client = ProviderBot(), ClientBot()

    service_id = await provider.list_session(workflow, "Career coaching")
    state = await client.book(workflow, service_id)
    booking_id = state["booking"].id

    oracle.set_verdict("meeting-c", score=40, passed=False)
    await client.attend(workflow, booking_id, "meeting-c")

    section("Quality Gate")
    state = await workflow.settle(booking_id)
    print_state(state)

    section("Dispute")
    dispute_id = await client.dispute(workflow, booking_id, "Provider left after ten minutes")
    await workflow.resolve_dispute(
        dispute_id,
        Resolution(type=ResolutionType.FULL_REFUND),
        notes="Recording confirms early exit",
        resolved_by="operator",
    )
    print_state(await workflow.snapshot(booking_id))
    await print_audit_trail(workflow, booking_id)


async def scenario_d_booking_race() -> None:
    banner("SCENARIO D: Two Clients, One Session")
    workflow, _ = build_world()
    provider = ProviderBot()
    alice, bob = ClientBot(wallet="0x" + "A1" * 20), ClientBot(wallet="0x" + "B2" * 20)

    service_id = await provider.list_session(workflow, "Office hours")
    results = await asyncio.gather(
        alice.book(workflow, service_id),
        bob.book(workflow, service_id),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, BaseException)]
    losers = [r for r in results if isinstance(r, ServiceUnavailableError)]
    print(f"  Bookings created: {len(winners)}")
    print(f"  ServiceUnavailableError: {len(losers)}")
    for result in results:
        if isinstance(result, BaseException) and not isinstance(result, ServiceUnavailableError):
            raise result
    print_state(winners[0])


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    "A": scenario_a_book_and_fund,
    "B": scenario_b_quality_pass,
    "C": scenario_c_quality_fail_and_dispute,
    "D": scenario_d_booking_race,
}


async def run_all() -> None:
    """Run all scenarios sequentially."""
    print("\n" + "🚀" * 35)
    print("  SESSION CLEARINGHOUSE — SIMULATION")
    print("  Ledger: in-memory | Rail: simulated | Oracle: mock")
    print("🚀" * 35 + "\n")

    for scenario in SCENARIOS.values():
        await scenario()

    print("\n" + "=" * 70)
    print("  ✅ ALL SCENARIOS COMPLETED SUCCESSFULLY")
    print("=" * 70 + "\n")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Session Clearinghouse Simulation")
    parser.add_argument(
        "--scenario",
        choices=sorted(SCENARIOS),
        default=None,
        help="Run a specific scenario (A, B, C or D). Default: run all.",
    )
    args = parser.parse_args()

    if args.scenario is None:
        asyncio.run(run_all())
    else:
        asyncio.run(SCENARIOS[args.scenario]())
