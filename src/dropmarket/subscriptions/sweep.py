"""
Automatic execution scheduler.

The daily sweep pays every ACTIVE subscription whose next drop is due today.
Each subscription is handled on its own: a failure is logged and routed to the
retry coordinator, and the sweep carries on with the next one.
"""

import time
from collections.abc import Callable
from datetime import date, datetime, timedelta

import structlog

from dropmarket.settings import settings
from dropmarket.subscriptions.conflicts import ConflictRegistry, DetectedConflict
from dropmarket.subscriptions.enums import (
    ConflictPriority,
    ConflictType,
    NotificationType,
    SubscriptionStatus,
)
from dropmarket.subscriptions.exceptions import (
    SubscriptionIntegrityError,
    SubscriptionValidationError,
    TransientPaymentError,
)
from dropmarket.subscriptions.interfaces import BalanceStore, SubscriptionStore
from dropmarket.subscriptions.metrics import SubscriptionMetrics
from dropmarket.subscriptions.models import (
    Actor,
    ProcessDropOptions,
    Subscription,
    SweepReport,
)
from dropmarket.subscriptions.money import MoneyFormatter
from dropmarket.subscriptions.notifications import NotificationDispatcher
from dropmarket.subscriptions.processor import DropProcessor
from dropmarket.subscriptions.retry import RetryCoordinator

logger = structlog.get_logger(__name__)


class AutomaticExecutionScheduler:
    """Due-drop sweep and payment reminders."""

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        balances: BalanceStore,
        processor: DropProcessor,
        retry: RetryCoordinator,
        registry: ConflictRegistry,
        notifications: NotificationDispatcher,
        metrics: SubscriptionMetrics,
        money: MoneyFormatter,
        clock: Callable[[], datetime],
        reminder_days_ahead: int | None = None,
    ) -> None:
        self.subscriptions = subscriptions
        self.balances = balances
        self.processor = processor
        self.retry = retry
        self.registry = registry
        self.notifications = notifications
        self.metrics = metrics
        self.money = money
        self.clock = clock
        self.reminder_days_ahead = (
            reminder_days_ahead
            if reminder_days_ahead is not None
            else settings.subscriptions.reminder_days_ahead
        )

    async def run_sweep(self, today: date | None = None) -> SweepReport:
        """Process every subscription whose next drop falls due today."""
        today = today or self.clock().date()
        started = time.monotonic()

        due = [
            s
            for s in await self.subscriptions.find_due_today(today)
            if s.status == SubscriptionStatus.ACTIVE and not s.is_completed
        ]
        report = SweepReport(run_date=today, due=len(due))
        logger.info("subscription.sweep.started", run_date=today.isoformat(), due=len(due))

        for subscription in due:
            try:
                await self._process_one(subscription, today, report)
            except Exception as e:
                report.failed.append(subscription.id)
                logger.error(
                    "subscription.sweep.subscription_failed",
                    subscription_id=subscription.id,
                    error=str(e),
                    exc_info=True,
                )

        duration_ms = (time.monotonic() - started) * 1000
        self.metrics.record_sweep(duration_ms, due=report.due, processed=len(report.processed))
        logger.info(
            "subscription.sweep.completed",
            run_date=today.isoformat(),
            due=report.due,
            processed=len(report.processed),
            skipped=len(report.skipped),
            failed=len(report.failed),
            retries_scheduled=len(report.retries_scheduled),
            duration_ms=round(duration_ms, 2),
        )
        return report

    async def _process_one(
        self, subscription: Subscription, today: date, report: SweepReport
    ) -> None:
        drop = subscription.next_unpaid_drop()
        if drop is None:
            report.skipped.append(subscription.id)
            return

        spendable = await self.balances.get_spendable(subscription.user_id)
        if spendable is None:
            logger.error(
                "subscription.sweep.wallet_missing",
                subscription_id=subscription.id,
                user_id=subscription.user_id,
            )
            self.registry.record(
                subscription.id,
                subscription.user_id,
                DetectedConflict(
                    ConflictType.WALLET_DISCREPANCY,
                    "User wallet not found",
                    ConflictPriority.CRITICAL,
                    {"user_id": subscription.user_id},
                ),
            )
            report.failed.append(subscription.id)
            return

        if spendable < drop.amount:
            logger.info(
                "subscription.sweep.insufficient_funds",
                subscription_id=subscription.id,
                drop_index=drop.index,
                required=str(drop.amount),
                available=str(spendable),
            )
            report.skipped.append(subscription.id)
            await self._schedule_retry(subscription, drop.index, "insufficient_funds", report)
            return

        try:
            await self.processor.process_next_drop(
                subscription.id,
                Actor.system(),
                ProcessDropOptions(
                    idempotency_ref=f"auto_drop_{subscription.id}_{drop.index}_{today:%Y%m%d}",
                    expected_drop_index=drop.index,
                ),
            )
        except TransientPaymentError as e:
            report.failed.append(subscription.id)
            await self._schedule_retry(subscription, drop.index, e.error_code.lower(), report)
            return
        except SubscriptionIntegrityError:
            # Processor already raised a conflict record; retrying cannot help
            report.failed.append(subscription.id)
            return
        except SubscriptionValidationError as e:
            logger.info(
                "subscription.sweep.skipped",
                subscription_id=subscription.id,
                reason=e.message,
            )
            report.skipped.append(subscription.id)
            return
        except Exception as e:
            logger.error(
                "subscription.sweep.processing_error",
                subscription_id=subscription.id,
                error=str(e),
            )
            report.failed.append(subscription.id)
            await self._schedule_retry(subscription, drop.index, "processing_error", report)
            return

        report.processed.append(subscription.id)

    async def _schedule_retry(
        self, subscription: Subscription, drop_index: int, reason: str, report: SweepReport
    ) -> None:
        job = await self.retry.handle_failure(subscription.id, drop_index, 0, reason)
        if job is not None:
            report.retries_scheduled.append(job.job_key)

    async def send_payment_reminders(self, today: date | None = None) -> int:
        """Remind owners of drops due within the look-ahead window."""
        today = today or self.clock().date()
        window_end = today + timedelta(days=self.reminder_days_ahead)
        upcoming = await self.subscriptions.find_due_between(today + timedelta(days=1), window_end)

        sent = 0
        for subscription in upcoming:
            drop = subscription.next_unpaid_drop()
            if drop is None or subscription.status != SubscriptionStatus.ACTIVE:
                continue
            delivered = await self.notifications.notify(
                subscription.user_id,
                NotificationType.PAYMENT_DUE,
                {
                    "subscription_id": subscription.id,
                    "order_id": subscription.order_id,
                    "drop_index": drop.index,
                    "due_date": drop.scheduled_date.isoformat(),
                    "days_until_due": (drop.scheduled_date - today).days,
                    **self.money.payload(drop.amount),
                },
            )
            if delivered:
                sent += 1

        logger.info(
            "subscription.reminders.sent",
            run_date=today.isoformat(),
            candidates=len(upcoming),
            sent=sent,
        )
        return sent
