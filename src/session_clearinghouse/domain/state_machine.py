"""Entity State Machine Guards.

Uses python-statemachine to enforce legal state transitions at the domain level.
No matter what the orchestrator or the API does, an illegal transition
(e.g., Escrow RELEASED -> REFUNDED) raises TransitionNotAllowed, which
guard_transition() turns into an InvalidStateError.

A machine is instantiated per check at the entity's persisted status. The new
status it yields is then written with a conditional write keyed on the old one.

Service:
    AVAILABLE -> BOOKED                (book)
    AVAILABLE -> CANCELLED             (cancel)
    BOOKED    -> COMPLETED             (complete)
    BOOKED    -> CANCELLED             (cancel)

Booking:
    PENDING   -> CONFIRMED             (confirm)
    PENDING   -> CANCELLED             (cancel)
    CONFIRMED -> CANCELLED             (cancel)
    CONFIRMED -> COMPLETED             (complete)
    CONFIRMED -> DISPUTED              (dispute)
    COMPLETED -> DISPUTED              (dispute)
    DISPUTED  -> DISPUTED              (dispute)
    DISPUTED  -> REFUNDED              (refund)
    DISPUTED  -> COMPLETED             (resolve_for_provider)

Escrow:
    PENDING   -> RELEASED              (release)
    PENDING   -> REFUNDED              (refund)
    PENDING   -> CANCELLED             (funding_rejected)

Dispute:
    OPEN      -> RESOLVED              (resolve)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from session_clearinghouse.domain.exceptions import InvalidStateError

if TYPE_CHECKING:
    from enum import StrEnum


class _PersistedStatusMixin:
    """Starts a machine at a persisted status string instead of the initial state."""

    def __init__(self, current_status: str) -> None:
        # Validate that the status string is a known state value
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        # start_value expects the string value, not the State object
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the entity's status enum)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [getattr(event, "id", event.name) for event in self.allowed_events]


class ServiceStateMachine(_PersistedStatusMixin, StateMachine):
    """Guards the service listing lifecycle. CANCELLED and COMPLETED are terminal."""

    AVAILABLE = State("AVAILABLE", initial=True)
    BOOKED = State("BOOKED")
    COMPLETED = State("COMPLETED", final=True)
    CANCELLED = State("CANCELLED", final=True)

    book = AVAILABLE.to(BOOKED)
    complete = BOOKED.to(COMPLETED)
    cancel = AVAILABLE.to(CANCELLED) | BOOKED.to(CANCELLED)


class BookingStateMachine(_PersistedStatusMixin, StateMachine):
    """Guards the booking lifecycle.

    Status only moves forward. DISPUTED is the one side branch, and a dispute
    re-opened against an already disputed booking is a self transition.

    Usage:
        sm = BookingStateMachine(current_status="CONFIRMED")
        sm.complete()     # transitions to COMPLETED
        sm.status         # "COMPLETED"
    """

    PENDING = State("PENDING", initial=True)
    CONFIRMED = State("CONFIRMED")
    COMPLETED = State("COMPLETED")
    DISPUTED = State("DISPUTED")
    CANCELLED = State("CANCELLED", final=True)
    REFUNDED = State("REFUNDED", final=True)

    # Booking acceptance
    confirm = PENDING.to(CONFIRMED)
    cancel = PENDING.to(CANCELLED) | CONFIRMED.to(CANCELLED)

    # Delivery outcome
    complete = CONFIRMED.to(COMPLETED)
    dispute = CONFIRMED.to(DISPUTED) | COMPLETED.to(DISPUTED) | DISPUTED.to(DISPUTED)

    # Dispute outcome
    refund = DISPUTED.to(REFUNDED)
    resolve_for_provider = DISPUTED.to(COMPLETED)


class EscrowStateMachine(_PersistedStatusMixin, StateMachine):
    """Guards the escrow lifecycle: PENDING leaves exactly once."""

    PENDING = State("PENDING", initial=True)
    RELEASED = State("RELEASED", final=True)
    REFUNDED = State("REFUNDED", final=True)
    CANCELLED = State("CANCELLED", final=True)

    release = PENDING.to(RELEASED)
    refund = PENDING.to(REFUNDED)
    funding_rejected = PENDING.to(CANCELLED)


class DisputeStateMachine(_PersistedStatusMixin, StateMachine):
    OPEN = State("OPEN", initial=True)
    RESOLVED = State("RESOLVED", final=True)

    resolve = OPEN.to(RESOLVED)


def validate_transition(
    machine_cls: type[StateMachine],
    current_status: str,
    event_name: str,
) -> str:
    """Validate a state transition and return the new status.

    Creates a temporary state machine, fires the named event, and returns the
    resulting status string.

    Args:
        machine_cls: One of the entity state machine classes above.
        current_status: Current status value of the entity.
        event_name: The event to fire (e.g., "book").

    Returns:
        The new status string after the transition.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    sm = machine_cls(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status


def guard_transition(
    machine_cls: type[StateMachine],
    entity_id: str,
    current_status: StrEnum | str,
    event_name: str,
) -> str:
    """Like validate_transition, but raises the domain InvalidStateError.

    Used by the services right before their conditional write.
    """
    try:
        return validate_transition(machine_cls, str(current_status), event_name)
    except TransitionNotAllowed as exc:
        raise InvalidStateError(
            entity_id=entity_id,
            current_state=str(current_status),
            attempted=event_name,
        ) from exc
