"""Tests for the entity state machine guards.

These tests verify that:
    1. All valid transitions are allowed.
    2. All invalid transitions are blocked.
    3. validate_transition and guard_transition work.
    4. Terminal states accept nothing.
"""

from __future__ import annotations

import pytest
from statemachine.exceptions import TransitionNotAllowed

from session_clearinghouse.domain.enums import BookingStatus, EscrowStatus
from session_clearinghouse.domain.exceptions import InvalidStateError
from session_clearinghouse.domain.state_machine import (
    BookingStateMachine,
    DisputeStateMachine,
    EscrowStateMachine,
    ServiceStateMachine,
    guard_transition,
    validate_transition,
)


class TestServiceLifecycle:
    def test_book_then_complete(self) -> None:
        sm = ServiceStateMachine("AVAILABLE")
        sm.book()
        assert sm.status == "BOOKED"
        sm.complete()
        assert sm.status == "COMPLETED"

    def test_cancel_from_available_and_booked(self) -> None:
        assert validate_transition(ServiceStateMachine, "AVAILABLE", "cancel") == "CANCELLED"
        assert validate_transition(ServiceStateMachine, "BOOKED", "cancel") == "CANCELLED"

    def test_booked_cannot_be_booked_again(self) -> None:
        sm = ServiceStateMachine("BOOKED")
        with pytest.raises(TransitionNotAllowed):
            sm.book()

    def test_available_cannot_complete(self) -> None:
        sm = ServiceStateMachine("AVAILABLE")
        with pytest.raises(TransitionNotAllowed):
            sm.complete()

    def test_cancelled_is_final(self) -> None:
        assert ServiceStateMachine("CANCELLED").get_allowed_events() == []


class TestBookingLifecycle:
    """PENDING -> CONFIRMED -> COMPLETED, with DISPUTED as the side branch."""

    def test_happy_path(self) -> None:
        sm = BookingStateMachine("PENDING")
        sm.confirm()
        assert sm.status == "CONFIRMED"
        sm.complete()
        assert sm.status == "COMPLETED"

    def test_failure_outcome_disputes(self) -> None:
        assert validate_transition(BookingStateMachine, "CONFIRMED", "dispute") == "DISPUTED"

    def test_completed_can_be_disputed(self) -> None:
        assert validate_transition(BookingStateMachine, "COMPLETED", "dispute") == "DISPUTED"

    def test_redispute_is_self_transition(self) -> None:
        assert validate_transition(BookingStateMachine, "DISPUTED", "dispute") == "DISPUTED"

    def test_dispute_outcomes(self) -> None:
        assert validate_transition(BookingStateMachine, "DISPUTED", "refund") == "REFUNDED"
        assert (
            validate_transition(BookingStateMachine, "DISPUTED", "resolve_for_provider")
            == "COMPLETED"
        )

    def test_no_regression_to_confirmed(self) -> None:
        sm = BookingStateMachine("COMPLETED")
        with pytest.raises(TransitionNotAllowed):
            sm.confirm()

    def test_completed_cannot_be_cancelled(self) -> None:
        sm = BookingStateMachine("COMPLETED")
        with pytest.raises(TransitionNotAllowed):
            sm.cancel()

    def test_refunded_is_final(self) -> None:
        assert BookingStateMachine("REFUNDED").get_allowed_events() == []


class TestEscrowTerminality:
    """PENDING leaves exactly once."""

    @pytest.mark.parametrize("event", ["release", "refund", "funding_rejected"])
    def test_pending_leaves_once(self, event: str) -> None:
        sm = EscrowStateMachine("PENDING")
        getattr(sm, event)()
        assert sm.status != "PENDING"
        assert sm.get_allowed_events() == []

    def test_released_cannot_be_refunded(self) -> None:
        sm = EscrowStateMachine("RELEASED")
        with pytest.raises(TransitionNotAllowed):
            sm.refund()

    def test_refunded_cannot_be_released(self) -> None:
        sm = EscrowStateMachine("REFUNDED")
        with pytest.raises(TransitionNotAllowed):
            sm.release()


class TestDisputeLifecycle:
    def test_resolve_once(self) -> None:
        sm = DisputeStateMachine("OPEN")
        sm.resolve()
        assert sm.status == "RESOLVED"
        with pytest.raises(TransitionNotAllowed):
            sm.resolve()


class TestValidateTransitionFunction:
    def test_invalid_event_name(self) -> None:
        with pytest.raises(ValueError, match="Unknown event"):
            validate_transition(EscrowStateMachine, "PENDING", "nonexistent_event")

    def test_invalid_status(self) -> None:
        with pytest.raises(ValueError, match="Unknown status"):
            EscrowStateMachine("INVALID_STATUS")


class TestGuardTransition:
    def test_accepts_enum_status(self) -> None:
        new_status = guard_transition(BookingStateMachine, "b-1", BookingStatus.PENDING, "confirm")
        assert new_status == BookingStatus.CONFIRMED

    def test_illegal_transition_becomes_invalid_state_error(self) -> None:
        with pytest.raises(InvalidStateError) as exc_info:
            guard_transition(EscrowStateMachine, "e-1", EscrowStatus.RELEASED, "refund")

        assert exc_info.value.entity_id == "e-1"
        assert exc_info.value.current_state == "RELEASED"
        assert exc_info.value.attempted == "refund"
        assert exc_info.value.code == "INVALID_STATE"
