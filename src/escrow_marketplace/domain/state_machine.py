"""Escrow State Machine Guard.

Uses python-statemachine to enforce legal status transitions at the domain level.
No matter what the API or a background poller does, an illegal transition
(e.g., pending -> completed) raises TransitionNotAllowed.

The state machine is instantiated per-escrow from the just-read status and
validates the event before the aggregate's status field is updated.

Transition table:
    pending                    -> accepted   (seller_accepts)
    pending, accepted          -> funded     (buyer_funds)
    funded                     -> delivered  (seller_delivers)
    delivered                  -> completed  (buyer_confirms)
    delivered                  -> completed  (auto_release)
    completed                  -> paid_out   (payout_executed)
    pending, accepted, funded  -> cancelled  (cancel)
    funded, delivered          -> disputed   (raise_dispute)
    disputed                   -> completed  (resolve_release)
    disputed                   -> cancelled  (resolve_refund)
"""

from __future__ import annotations

from types import MappingProxyType

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from escrow_marketplace.domain.enums import EscrowEvent, EscrowStatus
from escrow_marketplace.domain.exceptions import InvalidStateTransitionError

# Every event has exactly one target status.
EVENT_TARGETS = MappingProxyType(
    {
        EscrowEvent.SELLER_ACCEPTS: EscrowStatus.ACCEPTED,
        EscrowEvent.BUYER_FUNDS: EscrowStatus.FUNDED,
        EscrowEvent.SELLER_DELIVERS: EscrowStatus.DELIVERED,
        EscrowEvent.BUYER_CONFIRMS: EscrowStatus.COMPLETED,
        EscrowEvent.AUTO_RELEASE: EscrowStatus.COMPLETED,
        EscrowEvent.PAYOUT_EXECUTED: EscrowStatus.PAID_OUT,
        EscrowEvent.CANCEL: EscrowStatus.CANCELLED,
        EscrowEvent.RAISE_DISPUTE: EscrowStatus.DISPUTED,
        EscrowEvent.RESOLVE_RELEASE: EscrowStatus.COMPLETED,
        EscrowEvent.RESOLVE_REFUND: EscrowStatus.CANCELLED,
    }
)

TERMINAL_STATUSES = frozenset({EscrowStatus.CANCELLED, EscrowStatus.PAID_OUT})


class EscrowStateMachine(StateMachine):
    """State machine that guards escrow lifecycle transitions.

    Usage:
        sm = EscrowStateMachine(current_status="funded")
        sm.seller_delivers()  # transitions to delivered
        sm.status             # "delivered"
    """

    # --- States ---
    PENDING = State("Pending", value=EscrowStatus.PENDING.value, initial=True)
    ACCEPTED = State("Accepted", value=EscrowStatus.ACCEPTED.value)
    FUNDED = State("Funded", value=EscrowStatus.FUNDED.value)
    DELIVERED = State("Delivered", value=EscrowStatus.DELIVERED.value)
    COMPLETED = State("Completed", value=EscrowStatus.COMPLETED.value)
    PAID_OUT = State("Paid out", value=EscrowStatus.PAID_OUT.value, final=True)
    CANCELLED = State("Cancelled", value=EscrowStatus.CANCELLED.value, final=True)
    DISPUTED = State("Disputed", value=EscrowStatus.DISPUTED.value)

    # --- Events / Transitions ---

    # Agreement
    seller_accepts = PENDING.to(ACCEPTED)

    # Funding
    buyer_funds = PENDING.to(FUNDED) | ACCEPTED.to(FUNDED)

    # Delivery
    seller_delivers = FUNDED.to(DELIVERED)

    # Release
    buyer_confirms = DELIVERED.to(COMPLETED)
    auto_release = DELIVERED.to(COMPLETED)
    payout_executed = COMPLETED.to(PAID_OUT)

    # Cancellation
    cancel = PENDING.to(CANCELLED) | ACCEPTED.to(CANCELLED) | FUNDED.to(CANCELLED)

    # Disputes
    raise_dispute = FUNDED.to(DISPUTED) | DELIVERED.to(DISPUTED)
    resolve_release = DISPUTED.to(COMPLETED)
    resolve_refund = DISPUTED.to(CANCELLED)

    def __init__(self, current_status: str = EscrowStatus.PENDING.value) -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: The current EscrowStatus value (e.g., "funded").
        """
        valid_values = {s.value for s in self.states}
        if str(current_status) not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=str(current_status))

    @property
    def status(self) -> EscrowStatus:
        """Return the current state as an EscrowStatus."""
        return EscrowStatus(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return the ids of events that can fire from the current state."""
        return [getattr(event, "id", event.name) for event in self.allowed_events]


def allowed_events(current_status: str) -> list[str]:
    return EscrowStateMachine(current_status=current_status).get_allowed_events()


def validate_transition(current_status: str, event: str) -> EscrowStatus:
    """Validate a state transition and return the new status.

    Creates a temporary state machine at `current_status`, fires `event`
    and returns the resulting status.

    Raises:
        InvalidStateTransitionError: If the event is illegal from `current_status`.
        ValueError: If the status or event name is unknown.
    """
    try:
        event_id = EscrowEvent(str(event))
    except ValueError as err:
        raise ValueError(f"Unknown event '{event}'") from err

    sm = EscrowStateMachine(current_status=current_status)
    try:
        getattr(sm, event_id.value)()
    except TransitionNotAllowed as err:
        raise InvalidStateTransitionError(
            current_state=str(current_status),
            attempted_state=EVENT_TARGETS[event_id].value,
        ) from err
    return sm.status
