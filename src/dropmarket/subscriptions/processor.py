"""
Drop processor.

Executes the next unpaid drop of a subscription: checks the balance, debits
it, marks the drop paid, syncs the linked order and notifies the owner. The
whole execution runs under the subscription's lock.

If persisting the subscription fails after the debit, the debit is credited
back. If the order sync fails after the subscription was committed, the drop
stays paid and an order conflict is raised for investigation.
"""

import uuid
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog

from dropmarket.logging import log_audit_event
from dropmarket.subscriptions.conflicts import ConflictRegistry, DetectedConflict
from dropmarket.subscriptions.enums import (
    ConflictPriority,
    ConflictType,
    NotificationType,
    SubscriptionStatus,
)
from dropmarket.subscriptions.exceptions import (
    BalanceAccountNotFoundError,
    DuplicatePaymentReferenceError,
    InsufficientFundsError,
    LinkedOrderNotFoundError,
    NoPendingDropsError,
    StaleDropError,
    SubscriptionAlreadyCompletedError,
    SubscriptionAuthorizationError,
    SubscriptionEngineError,
    SubscriptionNotActiveError,
    SubscriptionNotFoundError,
)
from dropmarket.subscriptions.interfaces import (
    BalanceStore,
    LockManager,
    OrderStore,
    SubscriptionStore,
)
from dropmarket.subscriptions.metrics import SubscriptionMetrics
from dropmarket.subscriptions.models import (
    Actor,
    Drop,
    DropResult,
    OrderPayment,
    ProcessDropOptions,
    Subscription,
)
from dropmarket.subscriptions.money import MoneyFormatter
from dropmarket.subscriptions.notifications import NotificationDispatcher
from dropmarket.telemetry import get_tracer, record_error

logger = structlog.get_logger(__name__)


def generate_payment_reference(subscription_id: str, drop_index: int) -> str:
    return f"drop_{subscription_id}_{drop_index}_{uuid.uuid4().hex[:12]}"


class DropProcessor:
    """Executes one installment at a time per subscription."""

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        orders: OrderStore,
        balances: BalanceStore,
        notifications: NotificationDispatcher,
        locks: LockManager,
        registry: ConflictRegistry,
        metrics: SubscriptionMetrics,
        money: MoneyFormatter,
        clock: Callable[[], datetime],
    ) -> None:
        self.subscriptions = subscriptions
        self.orders = orders
        self.balances = balances
        self.notifications = notifications
        self.locks = locks
        self.registry = registry
        self.metrics = metrics
        self.money = money
        self.clock = clock
        self.tracer = get_tracer(__name__)

    async def process_next_drop(
        self,
        subscription_id: str,
        actor: Actor,
        options: ProcessDropOptions | None = None,
    ) -> DropResult:
        """
        Pay the next unpaid drop.

        Args:
            subscription_id: Subscription to charge
            actor: Owner, administrator or the system actor
            options: Admin overrides, payment reference, expected drop index

        Returns:
            DropResult with the updated subscription

        Raises:
            SubscriptionValidationError: Not found, completed, not active, stale or duplicate
            SubscriptionAuthorizationError: Actor may not charge this subscription
            InsufficientFundsError: Spendable balance below the drop amount
            SubscriptionIntegrityError: Linked order or wallet missing
        """
        options = options or ProcessDropOptions()

        with self.tracer.start_as_current_span("subscription.process_drop") as span:
            span.set_attribute("subscription.id", subscription_id)
            span.set_attribute("actor.role", actor.role.value)
            try:
                async with self.locks.hold(subscription_id):
                    result = await self._process_locked(subscription_id, actor, options)
            except SubscriptionEngineError as e:
                record_error(span, e)
                self.metrics.record_drop_failed(e.error_code)
                logger.warning(
                    "subscription.drop.failed",
                    subscription_id=subscription_id,
                    error_code=e.error_code,
                    error=e.message,
                )
                raise
            except Exception as e:
                record_error(span, e)
                self.metrics.record_drop_failed("UNEXPECTED_ERROR")
                logger.error(
                    "subscription.drop.error",
                    subscription_id=subscription_id,
                    error=str(e),
                    exc_info=True,
                )
                raise

            span.set_attribute("drop.index", result.drop.index)
            span.set_attribute("subscription.completed", result.completed)
            return result

    async def _process_locked(
        self, subscription_id: str, actor: Actor, options: ProcessDropOptions
    ) -> DropResult:
        subscription = await self.subscriptions.get_by_id(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)

        self._authorize(subscription, actor, options)

        if subscription.is_completed or subscription.drops_paid >= subscription.total_drops:
            raise SubscriptionAlreadyCompletedError(subscription.id)
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise SubscriptionNotActiveError(subscription.id, subscription.status.value)

        drop = subscription.next_unpaid_drop()
        if drop is None:
            raise NoPendingDropsError(subscription.id)
        if options.expected_drop_index is not None and options.expected_drop_index != drop.index:
            raise StaleDropError(subscription.id, options.expected_drop_index, drop.index)

        reference = options.idempotency_ref or generate_payment_reference(
            subscription.id, drop.index
        )
        if any(d.payment_reference == reference for d in subscription.paid_drops()):
            raise DuplicatePaymentReferenceError(subscription.id, reference)

        order = await self.orders.get(subscription.order_id)
        if order is None:
            self._raise_conflict(
                subscription,
                ConflictType.ORDER_CONFLICT,
                "Linked order not found",
                ConflictPriority.CRITICAL,
                {"order_id": subscription.order_id},
            )
            raise LinkedOrderNotFoundError(subscription.id, subscription.order_id)

        amount = options.explicit_amount if options.explicit_amount is not None else drop.amount
        debited = False

        if not options.force_mark_paid:
            spendable = await self.balances.get_spendable(subscription.user_id)
            if spendable is None:
                self._raise_conflict(
                    subscription,
                    ConflictType.WALLET_DISCREPANCY,
                    "User wallet not found",
                    ConflictPriority.CRITICAL,
                    {"user_id": subscription.user_id},
                )
                raise BalanceAccountNotFoundError(subscription.user_id, subscription.id)
            if spendable < amount:
                raise InsufficientFundsError(subscription.user_id, amount, spendable)
            if not await self.balances.debit(subscription.user_id, amount):
                # Another debit won the race between the check and ours
                available = await self.balances.get_spendable(subscription.user_id)
                raise InsufficientFundsError(subscription.user_id, amount, available)
            debited = True

        now = self.clock()
        paid_drop = drop.model_copy(
            update={
                "amount": amount,
                "is_paid": True,
                "paid_at": now,
                "payment_reference": reference,
            }
        )
        changes = self._progress_changes(subscription, paid_drop, now)

        try:
            updated = await self.subscriptions.update(subscription.id, changes)
        except Exception:
            if debited:
                await self._compensate(subscription, amount, reference)
            raise

        completed = updated.status == SubscriptionStatus.COMPLETED
        order_synced = await self._sync_order(updated, amount, reference, now, options)

        logger.info(
            "subscription.drop.processed",
            subscription_id=updated.id,
            drop_index=paid_drop.index,
            amount=str(amount),
            payment_reference=reference,
            drops_paid=updated.drops_paid,
            total_drops=updated.total_drops,
            completed=completed,
            forced=options.force_mark_paid,
        )
        if actor.is_admin and (options.force_mark_paid or options.explicit_amount is not None):
            log_audit_event(
                action="subscription.drop.admin_override",
                actor_id=actor.id,
                actor_role=actor.role.value,
                resource_type="subscription",
                resource_id=updated.id,
                drop_index=paid_drop.index,
                amount=str(amount),
                force_mark_paid=options.force_mark_paid,
            )

        self.metrics.record_drop_processed(
            updated.id, float(amount), completed=completed, forced=options.force_mark_paid
        )
        await self._notify(updated, paid_drop, completed)

        return DropResult(
            subscription=updated,
            drop=paid_drop,
            payment_reference=reference,
            completed=completed,
            order_synced=order_synced,
        )

    def _authorize(
        self, subscription: Subscription, actor: Actor, options: ProcessDropOptions
    ) -> None:
        if not (actor.is_admin or actor.is_system or actor.id == subscription.user_id):
            raise SubscriptionAuthorizationError(
                "Not allowed to process drops for this subscription", actor.id, subscription.id
            )
        if (options.force_mark_paid or options.explicit_amount is not None) and not actor.is_admin:
            raise SubscriptionAuthorizationError(
                "Only administrators can force or override a drop payment",
                actor.id,
                subscription.id,
            )

    def _progress_changes(
        self, subscription: Subscription, paid_drop: Drop, now: datetime
    ) -> dict[str, Any]:
        drops = [paid_drop if d.index == paid_drop.index else d for d in subscription.drops]
        drops_paid = subscription.drops_paid + 1
        changes: dict[str, Any] = {
            "drops": drops,
            "drops_paid": drops_paid,
            "amount_paid": subscription.amount_paid + paid_drop.amount,
        }
        if drops_paid >= subscription.total_drops:
            changes.update(
                status=SubscriptionStatus.COMPLETED,
                is_completed=True,
                next_due_date=None,
                end_date=now.date(),
            )
        else:
            unpaid = [d.scheduled_date for d in drops if not d.is_paid]
            changes["next_due_date"] = min(unpaid) if unpaid else None
        return changes

    async def _compensate(
        self, subscription: Subscription, amount: Decimal, reference: str
    ) -> None:
        try:
            await self.balances.credit(subscription.user_id, amount)
        except Exception as e:
            logger.critical(
                "subscription.drop.compensation_failed",
                subscription_id=subscription.id,
                amount=str(amount),
                payment_reference=reference,
                error=str(e),
            )
            self._raise_conflict(
                subscription,
                ConflictType.PAYMENT_MISMATCH,
                "Debit could not be reversed after a failed update",
                ConflictPriority.CRITICAL,
                {"amount": str(amount), "payment_reference": reference},
            )
            return
        logger.warning(
            "subscription.drop.debit_reversed",
            subscription_id=subscription.id,
            amount=str(amount),
            payment_reference=reference,
        )

    async def _sync_order(
        self,
        subscription: Subscription,
        amount: Decimal,
        reference: str,
        paid_at: datetime,
        options: ProcessDropOptions,
    ) -> bool:
        payment = OrderPayment(
            amount=amount,
            method="manual" if options.force_mark_paid else options.payment_method,
            status="completed",
            paid_at=paid_at,
            reference=reference,
        )
        try:
            await self.orders.append_payment(subscription.order_id, payment)
            await self.orders.advance_status_if_fully_paid(subscription.order_id)
        except Exception as e:
            logger.error(
                "subscription.drop.order_sync_failed",
                subscription_id=subscription.id,
                order_id=subscription.order_id,
                payment_reference=reference,
                error=str(e),
            )
            self._raise_conflict(
                subscription,
                ConflictType.ORDER_CONFLICT,
                "Order sync failed after drop payment",
                ConflictPriority.CRITICAL,
                {"order_id": subscription.order_id, "payment_reference": reference},
            )
            return False
        return True

    async def _notify(self, subscription: Subscription, drop: Drop, completed: bool) -> None:
        payload: dict[str, Any] = {
            "subscription_id": subscription.id,
            "order_id": subscription.order_id,
            "drop_index": drop.index,
            "drops_paid": subscription.drops_paid,
            "total_drops": subscription.total_drops,
            "payment_reference": drop.payment_reference,
            **self.money.payload(drop.amount),
        }
        if completed:
            payload["total_amount"] = str(subscription.total_amount)
            event = NotificationType.SUBSCRIPTION_COMPLETED
        else:
            payload["next_due_date"] = (
                subscription.next_due_date.isoformat() if subscription.next_due_date else None
            )
            event = NotificationType.PAYMENT_SUCCESS
        await self.notifications.notify(subscription.user_id, event, payload)

    def _raise_conflict(
        self,
        subscription: Subscription,
        conflict_type: ConflictType,
        description: str,
        priority: ConflictPriority,
        details: dict[str, Any],
    ) -> None:
        self.registry.record(
            subscription.id,
            subscription.user_id,
            DetectedConflict(conflict_type, description, priority, details),
        )
