"""
Subscription state machine.

The transition table is plain data: every row names its guard and effects
rather than holding callables, so it can be serialized with ``describe()`` and
tested on its own. Guard and effect behaviour live in the ``GUARDS`` and
``EFFECTS`` registries below.

EXPIRED is terminal and only reached through external expiry, so no row
targets it.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, TypeAlias

from dropmarket.subscriptions.enums import ActorRole, SubscriptionStatus, TransitionAction
from dropmarket.subscriptions.exceptions import InvalidTransitionError
from dropmarket.subscriptions.models import Actor, Subscription

PAYMENT_FAILURE_REASON = "payment_failure"


class GuardName(str, Enum):
    ADMIN_OR_PAYMENT_FAILURE = "admin_or_payment_failure"
    ADMIN_OR_OWNER = "admin_or_owner"
    ALL_DROPS_PAID = "all_drops_paid"
    FUNDED_WITH_UNPAID_DROPS = "funded_with_unpaid_drops"
    ADMIN_WITH_UNPAID_DROPS = "admin_with_unpaid_drops"


class EffectName(str, Enum):
    SET_PAUSE_UNTIL = "set_pause_until"
    CLEAR_PAUSE = "clear_pause"
    STAMP_END_DATE = "stamp_end_date"
    CLEAR_END_DATE = "clear_end_date"
    MARK_COMPLETED = "mark_completed"
    RECOMPUTE_NEXT_DUE = "recompute_next_due"


@dataclass(frozen=True)
class Transition:
    """One row of the transition table."""

    from_state: SubscriptionStatus
    to_state: SubscriptionStatus
    action: TransitionAction
    guard: GuardName
    effects: tuple[EffectName, ...] = ()
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.from_state.value,
            "to": self.to_state.value,
            "action": self.action.value,
            "guard": self.guard.value,
            "effects": [effect.value for effect in self.effects],
            "description": self.description,
        }


TRANSITIONS: tuple[Transition, ...] = (
    Transition(
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAUSED,
        TransitionAction.PAUSE,
        GuardName.ADMIN_OR_PAYMENT_FAILURE,
        (EffectName.SET_PAUSE_UNTIL,),
        "Pause an active subscription",
    ),
    Transition(
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELLED,
        TransitionAction.CANCEL,
        GuardName.ADMIN_OR_OWNER,
        (EffectName.STAMP_END_DATE,),
        "Cancel an active subscription",
    ),
    Transition(
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.COMPLETED,
        TransitionAction.COMPLETE,
        GuardName.ALL_DROPS_PAID,
        (EffectName.MARK_COMPLETED, EffectName.STAMP_END_DATE),
        "Complete once every drop is paid",
    ),
    Transition(
        SubscriptionStatus.PAUSED,
        SubscriptionStatus.ACTIVE,
        TransitionAction.RESUME,
        GuardName.FUNDED_WITH_UNPAID_DROPS,
        (EffectName.CLEAR_PAUSE, EffectName.RECOMPUTE_NEXT_DUE),
        "Resume a paused subscription",
    ),
    Transition(
        SubscriptionStatus.PAUSED,
        SubscriptionStatus.CANCELLED,
        TransitionAction.CANCEL,
        GuardName.ADMIN_OR_OWNER,
        (EffectName.CLEAR_PAUSE, EffectName.STAMP_END_DATE),
        "Cancel a paused subscription",
    ),
    Transition(
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.ACTIVE,
        TransitionAction.REACTIVATE,
        GuardName.ADMIN_WITH_UNPAID_DROPS,
        (EffectName.CLEAR_END_DATE, EffectName.RECOMPUTE_NEXT_DUE),
        "Reactivate a cancelled subscription",
    ),
)

ACTION_TARGETS: dict[TransitionAction, SubscriptionStatus] = {
    TransitionAction.PAUSE: SubscriptionStatus.PAUSED,
    TransitionAction.RESUME: SubscriptionStatus.ACTIVE,
    TransitionAction.CANCEL: SubscriptionStatus.CANCELLED,
    TransitionAction.COMPLETE: SubscriptionStatus.COMPLETED,
    TransitionAction.REACTIVATE: SubscriptionStatus.ACTIVE,
}


@dataclass(frozen=True)
class TransitionContext:
    """Facts a guard may look at."""

    actor_id: str
    actor_role: ActorRole
    owner_id: str
    reason: str | None = None
    drops_paid: int = 0
    total_drops: int = 0
    has_unpaid_drops: bool = False
    has_sufficient_balance: bool = False

    @classmethod
    def for_subscription(
        cls,
        subscription: Subscription,
        actor: Actor,
        reason: str | None = None,
        has_sufficient_balance: bool = False,
    ) -> "TransitionContext":
        return cls(
            actor_id=actor.id,
            actor_role=actor.role,
            owner_id=subscription.user_id,
            reason=reason,
            drops_paid=subscription.drops_paid,
            total_drops=subscription.total_drops,
            has_unpaid_drops=subscription.has_unpaid_drops,
            has_sufficient_balance=has_sufficient_balance,
        )

    @property
    def is_admin(self) -> bool:
        return self.actor_role == ActorRole.ADMIN

    @property
    def is_owner(self) -> bool:
        return self.actor_id == self.owner_id


GUARDS: dict[GuardName, Callable[[TransitionContext], bool]] = {
    GuardName.ADMIN_OR_PAYMENT_FAILURE: lambda ctx: ctx.is_admin
    or ctx.reason == PAYMENT_FAILURE_REASON,
    GuardName.ADMIN_OR_OWNER: lambda ctx: ctx.is_admin or ctx.is_owner,
    GuardName.ALL_DROPS_PAID: lambda ctx: ctx.drops_paid >= ctx.total_drops,
    GuardName.FUNDED_WITH_UNPAID_DROPS: lambda ctx: ctx.has_sufficient_balance
    and ctx.has_unpaid_drops,
    GuardName.ADMIN_WITH_UNPAID_DROPS: lambda ctx: ctx.is_admin and ctx.has_unpaid_drops,
}

GUARD_HINTS: dict[GuardName, str] = {
    GuardName.ADMIN_OR_PAYMENT_FAILURE: "Only administrators can pause a subscription",
    GuardName.ADMIN_OR_OWNER: "Only the subscription owner or an administrator can cancel",
    GuardName.ALL_DROPS_PAID: "Every drop must be paid before completing",
    GuardName.FUNDED_WITH_UNPAID_DROPS: (
        "Resuming needs an unpaid drop and a wallet balance covering the next drop"
    ),
    GuardName.ADMIN_WITH_UNPAID_DROPS: (
        "Only administrators can reactivate, and only while unpaid drops remain"
    ),
}


Effect: TypeAlias = Callable[[dict[str, Any], Subscription, date, date | None], None]


def _set_pause_until(
    changes: dict[str, Any], sub: Subscription, today: date, until: date | None
) -> None:
    changes["pause_until"] = until


def _clear_pause(
    changes: dict[str, Any], sub: Subscription, today: date, until: date | None
) -> None:
    changes["pause_until"] = None


def _stamp_end_date(
    changes: dict[str, Any], sub: Subscription, today: date, until: date | None
) -> None:
    changes["end_date"] = today


def _clear_end_date(
    changes: dict[str, Any], sub: Subscription, today: date, until: date | None
) -> None:
    changes["end_date"] = None


def _mark_completed(
    changes: dict[str, Any], sub: Subscription, today: date, until: date | None
) -> None:
    changes["is_completed"] = True
    changes["next_due_date"] = None


def _recompute_next_due(
    changes: dict[str, Any], sub: Subscription, today: date, until: date | None
) -> None:
    changes["next_due_date"] = sub.earliest_unpaid_date()


EFFECTS: dict[EffectName, Effect] = {
    EffectName.SET_PAUSE_UNTIL: _set_pause_until,
    EffectName.CLEAR_PAUSE: _clear_pause,
    EffectName.STAMP_END_DATE: _stamp_end_date,
    EffectName.CLEAR_END_DATE: _clear_end_date,
    EffectName.MARK_COMPLETED: _mark_completed,
    EffectName.RECOMPUTE_NEXT_DUE: _recompute_next_due,
}


class SubscriptionStateMachine:
    """Guarded lookup over the transition table."""

    def __init__(self, transitions: tuple[Transition, ...] = TRANSITIONS) -> None:
        self._transitions = transitions
        self._index = {(t.from_state, t.to_state, t.action): t for t in transitions}

    @property
    def transitions(self) -> tuple[Transition, ...]:
        return self._transitions

    def find_transition(
        self,
        from_state: SubscriptionStatus,
        to_state: SubscriptionStatus,
        action: TransitionAction,
    ) -> Transition | None:
        return self._index.get((from_state, to_state, action))

    def can_transition(
        self,
        from_state: SubscriptionStatus,
        to_state: SubscriptionStatus,
        action: TransitionAction,
        context: TransitionContext,
    ) -> bool:
        """True only when the exact triple exists and its guard passes."""
        transition = self.find_transition(from_state, to_state, action)
        if transition is None:
            return False
        return GUARDS[transition.guard](context)

    def validate_state_change(
        self,
        from_state: SubscriptionStatus,
        to_state: SubscriptionStatus,
        action: TransitionAction,
        context: TransitionContext,
    ) -> Transition:
        """
        Return the matching transition or raise.

        Raises:
            InvalidTransitionError: No matching row, or its guard failed
        """
        transition = self.find_transition(from_state, to_state, action)
        if transition is None:
            raise InvalidTransitionError(
                from_state.value,
                to_state.value,
                action.value,
                recovery_hint=self._unmatched_hint(from_state),
            )
        if not GUARDS[transition.guard](context):
            raise InvalidTransitionError(
                from_state.value,
                to_state.value,
                action.value,
                recovery_hint=GUARD_HINTS[transition.guard],
            )
        return transition

    def get_valid_transitions(
        self, from_state: SubscriptionStatus, context: TransitionContext | None = None
    ) -> list[Transition]:
        """Rows leaving ``from_state``; filtered by guard when a context is given."""
        rows = [t for t in self._transitions if t.from_state == from_state]
        if context is None:
            return rows
        return [t for t in rows if GUARDS[t.guard](context)]

    def get_valid_actions(
        self, from_state: SubscriptionStatus, context: TransitionContext | None = None
    ) -> list[TransitionAction]:
        actions: list[TransitionAction] = []
        for transition in self.get_valid_transitions(from_state, context):
            if transition.action not in actions:
                actions.append(transition.action)
        return actions

    def apply(
        self,
        subscription: Subscription,
        transition: Transition,
        today: date,
        pause_until: date | None = None,
    ) -> dict[str, Any]:
        """
        Build the field changes for a validated transition.

        Effects run in table order after the guard passed; the caller persists
        the returned changes.
        """
        changes: dict[str, Any] = {"status": transition.to_state}
        for effect in transition.effects:
            EFFECTS[effect](changes, subscription, today, pause_until)
        return changes

    def is_terminal(self, state: SubscriptionStatus) -> bool:
        return not any(t.from_state == state for t in self._transitions)

    def describe(self) -> dict[str, Any]:
        """Serializable documentation of the state machine."""
        states = [status.value for status in SubscriptionStatus]
        return {
            "states": states,
            "terminal_states": [s for s in states if self.is_terminal(SubscriptionStatus(s))],
            "transitions": [t.to_dict() for t in self._transitions],
            "guards": {name.value: hint for name, hint in GUARD_HINTS.items()},
        }

    def _unmatched_hint(self, from_state: SubscriptionStatus) -> str:
        actions = self.get_valid_actions(from_state)
        if not actions:
            return f"No transitions are possible from {from_state.value}"
        return f"Allowed actions from {from_state.value}: " + ", ".join(a.value for a in actions)


state_machine = SubscriptionStateMachine()
