"""
System-forced subscription changes.

These are data repairs and terminal failure handling, not business decisions,
so they write status directly instead of going through the state machine.
"""

from datetime import date
from typing import Any

import structlog

from dropmarket.logging import log_audit_event
from dropmarket.subscriptions.enums import ActorRole, NotificationType, SubscriptionStatus
from dropmarket.subscriptions.interfaces import SubscriptionStore
from dropmarket.subscriptions.models import Drop, Subscription
from dropmarket.subscriptions.money import ZERO, MoneyFormatter
from dropmarket.subscriptions.notifications import NotificationDispatcher

logger = structlog.get_logger(__name__)


class SystemActions:
    """Status changes the engine makes on its own authority."""

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        notifications: NotificationDispatcher,
        money: MoneyFormatter,
    ) -> None:
        self.subscriptions = subscriptions
        self.notifications = notifications
        self.money = money

    async def pause_for_payment_failure(
        self,
        subscription: Subscription,
        reason: str,
        drop: Drop | None = None,
        attempts: int | None = None,
    ) -> Subscription:
        """Pause and tell the owner to top up; no automatic attempts follow."""
        updated = await self.subscriptions.update(
            subscription.id,
            {"status": SubscriptionStatus.PAUSED, "pause_until": None},
        )
        drop = drop or subscription.next_unpaid_drop()

        payload: dict[str, Any] = {
            "subscription_id": subscription.id,
            "order_id": subscription.order_id,
            "reason": reason,
            "message": (
                "We could not collect your installment. Top up your wallet and "
                "contact support to resume the subscription."
            ),
        }
        if drop is not None:
            payload["drop_index"] = drop.index
            payload.update(self.money.payload(drop.amount))
        if attempts is not None:
            payload["attempts"] = attempts

        await self.notifications.notify(
            subscription.user_id, NotificationType.PAYMENT_FAILED_FINAL, payload
        )
        log_audit_event(
            action="subscription.paused_for_payment_failure",
            actor_id="system",
            actor_role=ActorRole.SYSTEM.value,
            resource_type="subscription",
            resource_id=subscription.id,
            reason=reason,
        )
        return updated

    async def force_complete(self, subscription: Subscription, today: date) -> Subscription:
        updated = await self.subscriptions.update(
            subscription.id,
            {
                "status": SubscriptionStatus.COMPLETED,
                "is_completed": True,
                "next_due_date": None,
                "end_date": subscription.end_date or today,
                "pause_until": None,
            },
        )
        logger.info("subscription.force_completed", subscription_id=subscription.id)
        return updated

    async def realign_schedule(self, subscription: Subscription) -> Subscription:
        next_due = subscription.earliest_unpaid_date()
        updated = await self.subscriptions.update(subscription.id, {"next_due_date": next_due})
        logger.info(
            "subscription.schedule_realigned",
            subscription_id=subscription.id,
            previous=str(subscription.next_due_date),
            next_due_date=str(next_due),
        )
        return updated

    async def reconcile_progress(self, subscription: Subscription, today: date) -> Subscription:
        """Recompute counters from the drop list and complete if nothing is left."""
        paid = subscription.paid_drops()
        changes: dict[str, Any] = {
            "drops_paid": len(paid),
            "amount_paid": sum((drop.amount for drop in paid), ZERO),
            "next_due_date": subscription.earliest_unpaid_date(),
        }
        if len(paid) >= subscription.total_drops:
            changes.update(
                status=SubscriptionStatus.COMPLETED,
                is_completed=True,
                end_date=subscription.end_date or today,
            )
        updated = await self.subscriptions.update(subscription.id, changes)
        logger.info(
            "subscription.progress_reconciled",
            subscription_id=subscription.id,
            drops_paid=len(paid),
            amount_paid=str(changes["amount_paid"]),
        )
        return updated

    async def pause(
        self, subscription: Subscription, pause_until: date | None = None
    ) -> Subscription:
        updated = await self.subscriptions.update(
            subscription.id,
            {"status": SubscriptionStatus.PAUSED, "pause_until": pause_until},
        )
        await self.notifications.notify(
            subscription.user_id,
            NotificationType.SUBSCRIPTION_PAUSED,
            {
                "subscription_id": subscription.id,
                "pause_until": pause_until.isoformat() if pause_until else None,
            },
        )
        return updated

    async def cancel(self, subscription: Subscription, today: date) -> Subscription:
        updated = await self.subscriptions.update(
            subscription.id,
            {"status": SubscriptionStatus.CANCELLED, "end_date": today, "pause_until": None},
        )
        await self.notifications.notify(
            subscription.user_id,
            NotificationType.SUBSCRIPTION_CANCELLED,
            {"subscription_id": subscription.id, "order_id": subscription.order_id},
        )
        return updated
