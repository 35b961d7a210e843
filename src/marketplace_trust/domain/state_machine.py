"""State machine guards for accounts, transactions and dispute stages.

Uses python-statemachine to enforce legal transitions at the domain level:
whatever the API or the store asks for, an illegal edge (for example
released -> in_escrow) raises before any row is touched.

Machines are instantiated per entity at its current status and fired once;
the ORM column is only written after the machine accepted the move.

Transaction edge table:
    initiated  -> funded                                  (fund)
    funded     -> in_escrow                               (hold)
    funded     -> disputed                                (dispute)
    in_escrow  -> released | refunded | cancelled         (release/refund/cancel)
    in_escrow  -> disputed                                (dispute)
    disputed   -> in_escrow                               (hold)
    disputed   -> released | refunded | cancelled         (release/refund/cancel)

Account edge table:
    pending    -> active                                  (activate)
    active     -> suspended                               (suspend)
    suspended  -> active                                  (activate)
    pending | active | suspended -> closed                (close)

Dispute stages (forward-only, one step at a time):
    intake -> mediation -> arbitration -> resolved        (advance)
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from marketplace_trust.domain.enums import (
    AccountStatus,
    DisputeStage,
    TransactionStatus,
)
from marketplace_trust.domain.exceptions import InvalidStateTransitionError


class _GuardMachine(StateMachine):
    """Shared construction and introspection for the guard machines."""

    def __init__(self, current_status: str) -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(f"Unknown status '{current_status}'. Valid states: {valid}")
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        return [event.name for event in self.allowed_events]


class TransactionStateMachine(_GuardMachine):
    """Guards EscrowTransaction.status."""

    initiated = State("Initiated", initial=True)
    funded = State("Funded")
    in_escrow = State("In escrow")
    disputed = State("Disputed")
    released = State("Released", final=True)
    refunded = State("Refunded", final=True)
    cancelled = State("Cancelled", final=True)

    fund = initiated.to(funded)
    hold = funded.to(in_escrow) | disputed.to(in_escrow)
    dispute = funded.to(disputed) | in_escrow.to(disputed)
    release = in_escrow.to(released) | disputed.to(released)
    refund = in_escrow.to(refunded) | disputed.to(refunded)
    cancel = in_escrow.to(cancelled) | disputed.to(cancelled)


class AccountStateMachine(_GuardMachine):
    """Guards EscrowAccount.status."""

    pending = State("Pending", initial=True)
    active = State("Active")
    suspended = State("Suspended")
    closed = State("Closed", final=True)

    activate = pending.to(active) | suspended.to(active)
    suspend = active.to(suspended)
    close = pending.to(closed) | active.to(closed) | suspended.to(closed)


class DisputeStageMachine(_GuardMachine):
    """Guards the regular, one-step-forward progression of DisputeCase.stage."""

    intake = State("Intake", initial=True)
    mediation = State("Mediation")
    arbitration = State("Arbitration")
    resolved = State("Resolved", final=True)

    advance = intake.to(mediation) | mediation.to(arbitration) | arbitration.to(resolved)


_TRANSACTION_EVENTS = {
    TransactionStatus.FUNDED: "fund",
    TransactionStatus.IN_ESCROW: "hold",
    TransactionStatus.DISPUTED: "dispute",
    TransactionStatus.RELEASED: "release",
    TransactionStatus.REFUNDED: "refund",
    TransactionStatus.CANCELLED: "cancel",
}

_ACCOUNT_EVENTS = {
    AccountStatus.ACTIVE: "activate",
    AccountStatus.SUSPENDED: "suspend",
    AccountStatus.CLOSED: "close",
}


def _fire(machine: _GuardMachine, entity: str, event_name: str | None, target: str) -> str:
    current = machine.status
    event_method = getattr(machine, event_name, None) if event_name else None
    if event_method is None or not callable(event_method):
        raise InvalidStateTransitionError(entity, current, target)
    try:
        event_method()
    except TransitionNotAllowed as err:
        raise InvalidStateTransitionError(entity, current, target) from err
    # An event may have several edges; only the requested target counts.
    if machine.status != target:
        raise InvalidStateTransitionError(entity, current, target)
    return machine.status


def validate_transaction_transition(
    current: TransactionStatus | str, target: TransactionStatus | str
) -> TransactionStatus:
    """Return the target status if current -> target is a legal ledger edge.

    Raises:
        InvalidStateTransitionError: If the edge is not in the table.
    """
    target_status = TransactionStatus(target)
    machine = TransactionStateMachine(current_status=str(current))
    _fire(machine, "transaction", _TRANSACTION_EVENTS.get(target_status), target_status.value)
    return target_status


def validate_account_transition(
    current: AccountStatus | str, target: AccountStatus | str
) -> AccountStatus:
    """Return the target status if current -> target is a legal account edge."""
    target_status = AccountStatus(target)
    machine = AccountStateMachine(current_status=str(current))
    _fire(machine, "account", _ACCOUNT_EVENTS.get(target_status), target_status.value)
    return target_status


def next_stage(current: DisputeStage | str) -> DisputeStage:
    """Return the stage that a regular advance from ``current`` leads to.

    Raises:
        InvalidStateTransitionError: If ``current`` is already resolved.
    """
    machine = DisputeStageMachine(current_status=str(current))
    try:
        machine.advance()
    except TransitionNotAllowed as err:
        raise InvalidStateTransitionError("dispute stage", str(current), "next") from err
    return DisputeStage(machine.status)
