"""
Subscription service.

Operations exposed to the API layer: create a subscription from an order,
read and list subscriptions, apply manual status changes through the state
machine, and process the next drop.
"""

import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from dropmarket.logging import log_audit_event
from dropmarket.settings import settings
from dropmarket.subscriptions.enums import (
    NotificationType,
    PaymentFrequency,
    PaymentPlan,
    SubscriptionStatus,
    TransitionAction,
)
from dropmarket.subscriptions.exceptions import (
    InvalidPauseDurationError,
    InvalidSubscriptionAmountError,
    OrderNotEligibleError,
    SubscriptionAlreadyExistsError,
    SubscriptionAuthorizationError,
    SubscriptionNotFoundError,
    SubscriptionValidationError,
)
from dropmarket.subscriptions.interfaces import (
    BalanceStore,
    LockManager,
    OrderStore,
    SubscriptionStore,
)
from dropmarket.subscriptions.models import (
    Actor,
    DropResult,
    ProcessDropOptions,
    Subscription,
    SubscriptionFilter,
    SubscriptionUpdate,
)
from dropmarket.subscriptions.money import MoneyFormatter
from dropmarket.subscriptions.notifications import NotificationDispatcher
from dropmarket.subscriptions.processor import DropProcessor
from dropmarket.subscriptions.schedule import generate_drop_schedule, resolve_shape
from dropmarket.subscriptions.state_machine import (
    ACTION_TARGETS,
    SubscriptionStateMachine,
    TransitionContext,
)

logger = structlog.get_logger(__name__)

ACTION_NOTIFICATIONS: dict[TransitionAction, NotificationType] = {
    TransitionAction.PAUSE: NotificationType.SUBSCRIPTION_PAUSED,
    TransitionAction.RESUME: NotificationType.SUBSCRIPTION_RESUMED,
    TransitionAction.REACTIVATE: NotificationType.SUBSCRIPTION_RESUMED,
    TransitionAction.CANCEL: NotificationType.SUBSCRIPTION_CANCELLED,
    TransitionAction.COMPLETE: NotificationType.SUBSCRIPTION_COMPLETED,
}


class SubscriptionService:
    """Manual subscription operations."""

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        orders: OrderStore,
        balances: BalanceStore,
        processor: DropProcessor,
        machine: SubscriptionStateMachine,
        notifications: NotificationDispatcher,
        locks: LockManager,
        money: MoneyFormatter,
        clock: Callable[[], datetime],
    ) -> None:
        self.subscriptions = subscriptions
        self.orders = orders
        self.balances = balances
        self.processor = processor
        self.locks = locks
        self.machine = machine
        self.notifications = notifications
        self.money = money
        self.clock = clock
        self.config = settings.subscriptions

    async def create_subscription(
        self,
        actor: Actor,
        order_id: str,
        frequency: PaymentFrequency | str | None = None,
    ) -> Subscription:
        """
        Create a subscription for an order.

        Any amount already paid on the order becomes a pre-paid drop 0.

        Raises:
            OrderNotEligibleError: Order missing or owned by someone else
            UnsupportedPaymentPlanError: Order plan has no drop schedule
            InvalidFrequencyError: Installment plan without a valid frequency
            InvalidSubscriptionAmountError: Order total outside the allowed bounds
            SubscriptionAlreadyExistsError: Order already has a subscription
        """
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotEligibleError("Order not found", order_id)
        if order.user_id != actor.id and not actor.is_admin:
            raise OrderNotEligibleError("Order not found", order_id)

        resolve_shape(order.payment_plan, frequency)

        minimum = self.config.min_subscription_amount
        maximum = self.config.max_subscription_amount
        if order.total_amount < minimum:
            raise InvalidSubscriptionAmountError(
                f"Minimum subscription amount is {self.money.format(minimum)}",
                order.total_amount,
            )
        if order.total_amount > maximum:
            raise InvalidSubscriptionAmountError(
                f"Maximum subscription amount is {self.money.format(maximum)}",
                order.total_amount,
            )

        existing = await self.subscriptions.find_by_order(order_id)
        if existing is not None:
            raise SubscriptionAlreadyExistsError(order_id, existing.id)

        now = self.clock()
        plan = PaymentPlan(order.payment_plan)
        cadence = PaymentFrequency(frequency) if plan == PaymentPlan.INSTALLMENT else None
        schedule = generate_drop_schedule(
            order.total_amount,
            plan,
            cadence,
            amount_paid=order.paid_amount,
            start_date=now.date(),
            paid_at=now,
        )

        subscription = Subscription(
            id=str(uuid.uuid4()),
            user_id=order.user_id,
            order_id=order.id,
            payment_plan=plan,
            frequency=cadence,
            total_amount=order.total_amount,
            drop_amount=schedule.drop_amount,
            total_drops=schedule.total_drops,
            drops_paid=schedule.drops_paid,
            amount_paid=schedule.amount_paid,
            drops=schedule.drops,
            start_date=now.date(),
            next_due_date=schedule.next_due_date,
            created_at=now,
        )
        created = await self.subscriptions.create(subscription)

        logger.info(
            "subscription.created",
            subscription_id=created.id,
            order_id=order.id,
            user_id=order.user_id,
            payment_plan=plan.value,
            total_drops=created.total_drops,
            drop_amount=str(created.drop_amount),
        )
        log_audit_event(
            action="subscription.created",
            actor_id=actor.id,
            actor_role=actor.role.value,
            resource_type="subscription",
            resource_id=created.id,
            order_id=order.id,
        )
        return created

    async def get_subscription(self, subscription_id: str, actor: Actor) -> Subscription:
        subscription = await self._load(subscription_id)
        self._authorize_read(subscription, actor)
        return subscription

    async def list_subscriptions(
        self, actor: Actor, filters: SubscriptionFilter | None = None
    ) -> list[Subscription]:
        """List subscriptions, newest first. Non-admins only ever see their own."""
        filters = filters or SubscriptionFilter()
        if not (actor.is_admin or actor.is_system):
            filters = filters.model_copy(update={"user_id": actor.id})
        return await self.subscriptions.find_all(filters)

    async def update_subscription(
        self, subscription_id: str, actor: Actor, update: SubscriptionUpdate
    ) -> Subscription:
        """
        Apply a manual status change and/or note update.

        Runs under the subscription's lock so a concurrent drop payment is
        never overwritten.

        Raises:
            SubscriptionAuthorizationError: Actor is neither owner nor administrator
            InvalidPauseDurationError: ``pause_until`` outside the allowed range
            InvalidTransitionError: State machine refused the change
        """
        async with self.locks.hold(subscription_id):
            subscription = await self._load(subscription_id)
            self._authorize_read(subscription, actor)

            changes: dict[str, Any] = {}
            if update.notes is not None:
                changes["notes"] = update.notes

            if update.action is None:
                if not changes:
                    raise SubscriptionValidationError(
                        "Nothing to update", context={"subscription_id": subscription_id}
                    )
                return await self.subscriptions.update(subscription_id, changes)

            changes.update(
                await self._transition_changes(subscription, actor, update.action, update)
            )
            updated = await self.subscriptions.update(subscription_id, changes)

        logger.info(
            "subscription.status_changed",
            subscription_id=subscription_id,
            action=update.action.value,
            from_status=subscription.status.value,
            to_status=updated.status.value,
            actor_id=actor.id,
        )
        log_audit_event(
            action=f"subscription.{update.action.value}",
            actor_id=actor.id,
            actor_role=actor.role.value,
            resource_type="subscription",
            resource_id=subscription_id,
            from_status=subscription.status.value,
            to_status=updated.status.value,
            reason=update.reason,
        )
        await self.notifications.notify(
            updated.user_id,
            ACTION_NOTIFICATIONS[update.action],
            {
                "subscription_id": updated.id,
                "order_id": updated.order_id,
                "status": updated.status.value,
                "reason": update.reason,
                "pause_until": updated.pause_until.isoformat() if updated.pause_until else None,
                "next_due_date": (
                    updated.next_due_date.isoformat() if updated.next_due_date else None
                ),
            },
        )
        return updated

    async def _transition_changes(
        self,
        subscription: Subscription,
        actor: Actor,
        action: TransitionAction,
        update: SubscriptionUpdate,
    ) -> dict[str, Any]:
        today = self.clock().date()
        if action == TransitionAction.PAUSE and update.pause_until is not None:
            days = (update.pause_until - today).days
            if not self.config.min_pause_days <= days <= self.config.max_pause_days:
                raise InvalidPauseDurationError(
                    days, self.config.min_pause_days, self.config.max_pause_days
                )

        has_sufficient_balance = False
        if action == TransitionAction.RESUME:
            has_sufficient_balance = await self._can_cover_next_drop(subscription)

        # Owners cannot claim a payment failure to pause their own subscription
        guard_reason = update.reason if (actor.is_admin or actor.is_system) else None
        context = TransitionContext.for_subscription(
            subscription, actor, reason=guard_reason, has_sufficient_balance=has_sufficient_balance
        )
        transition = self.machine.validate_state_change(
            subscription.status, ACTION_TARGETS[action], action, context
        )
        return self.machine.apply(subscription, transition, today, update.pause_until)

    async def process_next_drop(
        self,
        subscription_id: str,
        actor: Actor,
        options: ProcessDropOptions | None = None,
    ) -> DropResult:
        """Pay the next drop now (owner) or record an admin override."""
        return await self.processor.process_next_drop(subscription_id, actor, options)

    async def get_valid_actions(self, subscription_id: str, actor: Actor) -> list[TransitionAction]:
        """Actions this actor could apply right now."""
        subscription = await self.get_subscription(subscription_id, actor)
        has_sufficient_balance = False
        if subscription.status == SubscriptionStatus.PAUSED:
            has_sufficient_balance = await self._can_cover_next_drop(subscription)
        context = TransitionContext.for_subscription(
            subscription, actor, has_sufficient_balance=has_sufficient_balance
        )
        return self.machine.get_valid_actions(subscription.status, context)

    def describe_state_machine(self) -> dict[str, Any]:
        return self.machine.describe()

    async def _can_cover_next_drop(self, subscription: Subscription) -> bool:
        drop = subscription.next_unpaid_drop()
        if drop is None:
            return False
        spendable = await self.balances.get_spendable(subscription.user_id)
        return spendable is not None and spendable >= drop.amount

    async def _load(self, subscription_id: str) -> Subscription:
        subscription = await self.subscriptions.get_by_id(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    def _authorize_read(self, subscription: Subscription, actor: Actor) -> None:
        if actor.is_admin or actor.is_system or actor.id == subscription.user_id:
            return
        raise SubscriptionAuthorizationError(
            "Not allowed to access this subscription", actor.id, subscription.id
        )
