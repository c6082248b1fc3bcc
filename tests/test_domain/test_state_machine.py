"""Tests for the EscrowStateMachine domain guard.

These tests verify that:
    1. All valid transitions are allowed.
    2. All invalid transitions are blocked.
    3. The convenience function validate_transition works.
    4. The event table is exhaustive over the status enum.
"""

from __future__ import annotations

import pytest
from statemachine.exceptions import TransitionNotAllowed

from escrow_marketplace.domain.enums import EscrowEvent, EscrowStatus
from escrow_marketplace.domain.exceptions import InvalidStateTransitionError
from escrow_marketplace.domain.state_machine import (
    EVENT_TARGETS,
    TERMINAL_STATUSES,
    EscrowStateMachine,
    allowed_events,
    validate_transition,
)

LEGAL = {
    (EscrowStatus.PENDING, EscrowEvent.SELLER_ACCEPTS),
    (EscrowStatus.PENDING, EscrowEvent.BUYER_FUNDS),
    (EscrowStatus.ACCEPTED, EscrowEvent.BUYER_FUNDS),
    (EscrowStatus.FUNDED, EscrowEvent.SELLER_DELIVERS),
    (EscrowStatus.DELIVERED, EscrowEvent.BUYER_CONFIRMS),
    (EscrowStatus.DELIVERED, EscrowEvent.AUTO_RELEASE),
    (EscrowStatus.COMPLETED, EscrowEvent.PAYOUT_EXECUTED),
    (EscrowStatus.PENDING, EscrowEvent.CANCEL),
    (EscrowStatus.ACCEPTED, EscrowEvent.CANCEL),
    (EscrowStatus.FUNDED, EscrowEvent.CANCEL),
    (EscrowStatus.FUNDED, EscrowEvent.RAISE_DISPUTE),
    (EscrowStatus.DELIVERED, EscrowEvent.RAISE_DISPUTE),
    (EscrowStatus.DISPUTED, EscrowEvent.RESOLVE_RELEASE),
    (EscrowStatus.DISPUTED, EscrowEvent.RESOLVE_REFUND),
}


class TestHappyPath:
    """Test the full happy-path lifecycle: pending -> paid_out."""

    def test_full_lifecycle(self) -> None:
        sm = EscrowStateMachine("pending")
        assert sm.status == EscrowStatus.PENDING

        sm.seller_accepts()
        assert sm.status == EscrowStatus.ACCEPTED

        sm.buyer_funds()
        assert sm.status == EscrowStatus.FUNDED

        sm.seller_delivers()
        assert sm.status == EscrowStatus.DELIVERED

        sm.buyer_confirms()
        assert sm.status == EscrowStatus.COMPLETED

        sm.payout_executed()
        assert sm.status == EscrowStatus.PAID_OUT

    def test_fund_without_acceptance(self) -> None:
        sm = EscrowStateMachine("pending")
        sm.buyer_funds()
        assert sm.status == EscrowStatus.FUNDED

    def test_auto_release(self) -> None:
        sm = EscrowStateMachine("delivered")
        sm.auto_release()
        assert sm.status == EscrowStatus.COMPLETED


class TestDisputePath:
    def test_dispute_from_funded(self) -> None:
        sm = EscrowStateMachine("funded")
        sm.raise_dispute()
        assert sm.status == EscrowStatus.DISPUTED

    def test_dispute_from_delivered(self) -> None:
        sm = EscrowStateMachine("delivered")
        sm.raise_dispute()
        assert sm.status == EscrowStatus.DISPUTED

    def test_resolve_release(self) -> None:
        sm = EscrowStateMachine("disputed")
        sm.resolve_release()
        assert sm.status == EscrowStatus.COMPLETED

    def test_resolve_refund(self) -> None:
        sm = EscrowStateMachine("disputed")
        sm.resolve_refund()
        assert sm.status == EscrowStatus.CANCELLED

    def test_disputed_locks_out_participants(self) -> None:
        sm = EscrowStateMachine("disputed")
        with pytest.raises(TransitionNotAllowed):
            sm.buyer_confirms()
        with pytest.raises(TransitionNotAllowed):
            sm.cancel()

    def test_cannot_dispute_pending(self) -> None:
        sm = EscrowStateMachine("pending")
        with pytest.raises(TransitionNotAllowed):
            sm.raise_dispute()


class TestIllegalTransitions:
    """Verify that illegal transitions raise TransitionNotAllowed."""

    def test_pending_to_completed(self) -> None:
        sm = EscrowStateMachine("pending")
        with pytest.raises(TransitionNotAllowed):
            sm.buyer_confirms()

    def test_cannot_cancel_after_delivery(self) -> None:
        sm = EscrowStateMachine("delivered")
        with pytest.raises(TransitionNotAllowed):
            sm.cancel()

    def test_paid_out_is_final(self) -> None:
        sm = EscrowStateMachine("paid_out")
        assert sm.get_allowed_events() == []

    def test_cancelled_is_final(self) -> None:
        sm = EscrowStateMachine("cancelled")
        assert sm.get_allowed_events() == []

    def test_unknown_status(self) -> None:
        with pytest.raises(ValueError, match="Unknown status"):
            EscrowStateMachine("shipped")


class TestAllowedEvents:
    def test_pending_events(self) -> None:
        assert set(allowed_events("pending")) == {"seller_accepts", "buyer_funds", "cancel"}

    def test_funded_events(self) -> None:
        assert set(allowed_events("funded")) == {"seller_delivers", "cancel", "raise_dispute"}

    def test_delivered_events(self) -> None:
        assert set(allowed_events("delivered")) == {
            "buyer_confirms",
            "auto_release",
            "raise_dispute",
        }


class TestTransitionTable:
    """The event table must cover every status and every event."""

    @pytest.mark.parametrize("status", list(EscrowStatus))
    @pytest.mark.parametrize("event", list(EscrowEvent))
    def test_every_pair(self, status: EscrowStatus, event: EscrowEvent) -> None:
        if (status, event) in LEGAL:
            assert validate_transition(status.value, event.value) == EVENT_TARGETS[event]
        else:
            with pytest.raises(InvalidStateTransitionError) as exc_info:
                validate_transition(status.value, event.value)
            assert exc_info.value.current_state == status.value
            assert exc_info.value.attempted_state == EVENT_TARGETS[event].value

    def test_every_event_has_a_target(self) -> None:
        assert set(EVENT_TARGETS) == set(EscrowEvent)

    def test_every_status_is_a_state(self) -> None:
        sm = EscrowStateMachine()
        assert {s.value for s in sm.states} == {s.value for s in EscrowStatus}

    @pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES))
    def test_terminal_states_accept_nothing(self, status: EscrowStatus) -> None:
        for event in EscrowEvent:
            with pytest.raises(InvalidStateTransitionError):
                validate_transition(status.value, event.value)


class TestValidateTransition:
    def test_valid_transition(self) -> None:
        assert validate_transition("funded", "seller_delivers") == EscrowStatus.DELIVERED

    def test_invalid_transition_names_both_states(self) -> None:
        with pytest.raises(InvalidStateTransitionError, match="pending -> completed"):
            validate_transition("pending", "buyer_confirms")

    def test_unknown_event(self) -> None:
        with pytest.raises(ValueError, match="Unknown event"):
            validate_transition("pending", "teleport")
