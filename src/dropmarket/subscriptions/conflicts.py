"""
Conflict detection and resolution.

The detector compares a subscription with its linked order and balance and
reports invariant violations. The resolver applies at most one automatic
strategy per record per pass:

- status mismatch: force COMPLETED when the paid counter covers every drop,
  else escalate
- schedule conflict: realign ``next_due_date`` with the earliest unpaid drop
- insufficient funds: pause and send the final payment failure notice
- payment mismatch, duplicate payment: left pending for manual review
- order conflict, wallet discrepancy: escalated at once

Money-accounting conflicts are never resolved automatically. Every pass that
writes to a subscription holds its lock, the same one the drop processor takes.
"""

from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

import structlog

from dropmarket.logging import log_audit_event
from dropmarket.settings import settings
from dropmarket.subscriptions.enums import (
    ConflictPriority,
    ConflictResolution,
    ConflictStatus,
    ConflictType,
    SubscriptionStatus,
)
from dropmarket.subscriptions.exceptions import (
    ConflictNotFoundError,
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
from dropmarket.subscriptions.lifecycle import SystemActions
from dropmarket.subscriptions.metrics import SubscriptionMetrics
from dropmarket.subscriptions.models import (
    Actor,
    ConflictRecord,
    ConflictScanReport,
    Subscription,
)

logger = structlog.get_logger(__name__)

# Types that are escalated the moment they are recorded
ESCALATE_ON_DETECTION = frozenset({ConflictType.ORDER_CONFLICT, ConflictType.WALLET_DISCREPANCY})

SCANNED_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED)


@dataclass
class DetectedConflict:
    conflict_type: ConflictType
    description: str
    priority: ConflictPriority
    details: dict[str, Any] = field(default_factory=dict)


class ConflictRegistry:
    """
    Process-local conflict records.

    An unresolved record with the same subscription, type and description is
    reused instead of creating a duplicate.
    """

    def __init__(
        self,
        metrics: SubscriptionMetrics | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._records: dict[str, ConflictRecord] = {}
        self._metrics = metrics
        self._clock = clock or (lambda: datetime.now(UTC))

    def record(
        self,
        subscription_id: str,
        user_id: str,
        conflict: DetectedConflict,
    ) -> ConflictRecord:
        for existing in self._records.values():
            if (
                existing.subscription_id == subscription_id
                and existing.conflict_type == conflict.conflict_type
                and existing.description == conflict.description
                and existing.status != ConflictStatus.RESOLVED
            ):
                existing.details = {**existing.details, **conflict.details}
                return existing.model_copy(deep=True)

        now = self._clock()
        stamp = int(now.timestamp() * 1000)
        conflict_id = f"{subscription_id}_{conflict.conflict_type.value}_{stamp}"
        while conflict_id in self._records:
            conflict_id += "_1"

        record = ConflictRecord(
            id=conflict_id,
            subscription_id=subscription_id,
            user_id=user_id,
            conflict_type=conflict.conflict_type,
            description=conflict.description,
            priority=conflict.priority,
            details=conflict.details,
            detected_at=now,
        )
        if conflict.conflict_type in ESCALATE_ON_DETECTION:
            record.status = ConflictStatus.ESCALATED
            record.resolution = ConflictResolution.MANUAL_REVIEW

        self._records[record.id] = record
        if self._metrics:
            self._metrics.record_conflict_detected(
                conflict.conflict_type.value, conflict.priority.value
            )
        logger.warning(
            "subscription.conflict.detected",
            conflict_id=record.id,
            subscription_id=subscription_id,
            conflict_type=conflict.conflict_type.value,
            priority=conflict.priority.value,
            status=record.status.value,
            description=conflict.description,
        )
        return record.model_copy(deep=True)

    def save(self, record: ConflictRecord) -> ConflictRecord:
        if record.id not in self._records:
            raise ConflictNotFoundError(record.id)
        self._records[record.id] = record.model_copy(deep=True)
        return record

    def get(self, conflict_id: str) -> ConflictRecord:
        record = self._records.get(conflict_id)
        if record is None:
            raise ConflictNotFoundError(conflict_id)
        return record.model_copy(deep=True)

    def find(
        self,
        status: ConflictStatus | None = None,
        subscription_id: str | None = None,
        conflict_type: ConflictType | None = None,
    ) -> list[ConflictRecord]:
        records = [
            r.model_copy(deep=True)
            for r in self._records.values()
            if (status is None or r.status == status)
            and (subscription_id is None or r.subscription_id == subscription_id)
            and (conflict_type is None or r.conflict_type == conflict_type)
        ]
        return sorted(records, key=lambda r: r.detected_at, reverse=True)

    def statistics(self) -> dict[str, Any]:
        records = list(self._records.values())
        return {
            "total": len(records),
            "by_status": dict(Counter(r.status.value for r in records)),
            "by_type": dict(Counter(r.conflict_type.value for r in records)),
            "by_priority": dict(Counter(r.priority.value for r in records)),
            "by_resolution": dict(Counter(r.resolution.value for r in records if r.resolution)),
        }


class ConflictDetector:
    """Checks one subscription against its order and balance."""

    def __init__(
        self,
        orders: OrderStore,
        balances: BalanceStore,
        tolerance: Decimal | None = None,
    ) -> None:
        self.orders = orders
        self.balances = balances
        self.tolerance = (
            tolerance if tolerance is not None else settings.subscriptions.payment_tolerance
        )

    async def detect(self, subscription: Subscription, today: date) -> list[DetectedConflict]:
        conflicts: list[DetectedConflict] = []
        conflicts.extend(await self._payment_conflicts(subscription))
        conflicts.extend(self._schedule_conflicts(subscription, today))
        conflicts.extend(self._status_conflicts(subscription))
        conflicts.extend(await self._funding_conflicts(subscription))
        return conflicts

    async def _payment_conflicts(self, sub: Subscription) -> list[DetectedConflict]:
        found: list[DetectedConflict] = []

        order = await self.orders.get(sub.order_id)
        if order is None:
            found.append(
                DetectedConflict(
                    ConflictType.ORDER_CONFLICT,
                    "Linked order not found",
                    ConflictPriority.CRITICAL,
                    {"order_id": sub.order_id},
                )
            )
        elif abs(sub.amount_paid - order.paid_amount) > self.tolerance:
            found.append(
                DetectedConflict(
                    ConflictType.PAYMENT_MISMATCH,
                    "Subscription paid amount differs from order paid amount",
                    ConflictPriority.HIGH,
                    {
                        "subscription_paid": str(sub.amount_paid),
                        "order_paid": str(order.paid_amount),
                        "difference": str(sub.amount_paid - order.paid_amount),
                    },
                )
            )

        drops_total = sum((drop.amount for drop in sub.paid_drops()), Decimal("0"))
        if abs(sub.amount_paid - drops_total) > self.tolerance:
            found.append(
                DetectedConflict(
                    ConflictType.PAYMENT_MISMATCH,
                    "Subscription paid amount differs from paid drops",
                    ConflictPriority.HIGH,
                    {"subscription_paid": str(sub.amount_paid), "drops_paid": str(drops_total)},
                )
            )

        references = [d.payment_reference for d in sub.paid_drops() if d.payment_reference]
        duplicates = sorted({ref for ref in references if references.count(ref) > 1})
        if duplicates:
            found.append(
                DetectedConflict(
                    ConflictType.DUPLICATE_PAYMENT,
                    "Duplicate payment references on paid drops",
                    ConflictPriority.MEDIUM,
                    {"references": duplicates},
                )
            )
        return found

    def _schedule_conflicts(self, sub: Subscription, today: date) -> list[DetectedConflict]:
        found: list[DetectedConflict] = []

        if sub.status == SubscriptionStatus.ACTIVE:
            overdue = [d for d in sub.unpaid_drops() if d.scheduled_date < today]
            if overdue:
                found.append(
                    DetectedConflict(
                        ConflictType.SCHEDULE_CONFLICT,
                        "Unpaid drops are overdue",
                        ConflictPriority.HIGH,
                        {
                            "overdue_drops": [d.index for d in overdue],
                            "oldest_due": str(min(d.scheduled_date for d in overdue)),
                        },
                    )
                )

        expected = sub.earliest_unpaid_date()
        if sub.next_due_date != expected:
            found.append(
                DetectedConflict(
                    ConflictType.SCHEDULE_CONFLICT,
                    "Next due date does not match the earliest unpaid drop",
                    ConflictPriority.MEDIUM,
                    {"next_due_date": str(sub.next_due_date), "expected": str(expected)},
                )
            )
        return found

    def _status_conflicts(self, sub: Subscription) -> list[DetectedConflict]:
        details = {
            "status": sub.status.value,
            "drops_paid": sub.drops_paid,
            "total_drops": sub.total_drops,
        }
        if sub.drops_paid >= sub.total_drops and (
            sub.status != SubscriptionStatus.COMPLETED or not sub.is_completed
        ):
            return [
                DetectedConflict(
                    ConflictType.STATUS_MISMATCH,
                    "All drops paid but subscription is not completed",
                    ConflictPriority.MEDIUM,
                    details,
                )
            ]
        if sub.status == SubscriptionStatus.ACTIVE and not sub.has_unpaid_drops:
            return [
                DetectedConflict(
                    ConflictType.STATUS_MISMATCH,
                    "Active subscription has no unpaid drops",
                    ConflictPriority.MEDIUM,
                    details,
                )
            ]
        if sub.status == SubscriptionStatus.COMPLETED and sub.drops_paid < sub.total_drops:
            return [
                DetectedConflict(
                    ConflictType.STATUS_MISMATCH,
                    "Completed subscription has unpaid drops",
                    ConflictPriority.HIGH,
                    details,
                )
            ]
        return []

    async def _funding_conflicts(self, sub: Subscription) -> list[DetectedConflict]:
        if sub.status != SubscriptionStatus.ACTIVE:
            return []
        drop = sub.next_unpaid_drop()
        if drop is None:
            return []

        spendable = await self.balances.get_spendable(sub.user_id)
        if spendable is None:
            return [
                DetectedConflict(
                    ConflictType.WALLET_DISCREPANCY,
                    "User wallet not found",
                    ConflictPriority.CRITICAL,
                    {"user_id": sub.user_id},
                )
            ]
        if spendable < drop.amount:
            return [
                DetectedConflict(
                    ConflictType.INSUFFICIENT_FUNDS,
                    "Wallet balance is below the next drop",
                    ConflictPriority.HIGH,
                    {
                        "drop_index": drop.index,
                        "required": str(drop.amount),
                        "available": str(spendable),
                    },
                )
            ]
        return []


class ConflictResolver:
    """Applies the automatic strategy for a conflict record."""

    def __init__(
        self,
        registry: ConflictRegistry,
        actions: SystemActions,
        metrics: SubscriptionMetrics,
        clock: Callable[[], datetime],
    ) -> None:
        self.registry = registry
        self.actions = actions
        self.metrics = metrics
        self.clock = clock

    async def auto_resolve(
        self, record: ConflictRecord, subscription: Subscription
    ) -> ConflictRecord:
        if record.status != ConflictStatus.PENDING:
            return record

        record.auto_attempts += 1
        today = self.clock().date()

        try:
            if record.conflict_type == ConflictType.STATUS_MISMATCH:
                # Counters behind the drop list are money drift; only manual
                # reconciliation may recount them
                if subscription.drops_paid >= subscription.total_drops:
                    await self.actions.force_complete(subscription, today)
                    self._resolve(record, ConflictResolution.FORCE_RECONCILE)
                else:
                    self._escalate(record, "Status cannot be repaired automatically")

            elif record.conflict_type == ConflictType.SCHEDULE_CONFLICT:
                await self.actions.realign_schedule(subscription)
                self._resolve(record, ConflictResolution.ADJUST_SCHEDULE)

            elif record.conflict_type == ConflictType.INSUFFICIENT_FUNDS:
                if subscription.status == SubscriptionStatus.ACTIVE:
                    await self.actions.pause_for_payment_failure(
                        subscription, reason="insufficient_funds"
                    )
                self._resolve(record, ConflictResolution.PAUSE_SUBSCRIPTION)

            elif record.conflict_type in (
                ConflictType.PAYMENT_MISMATCH,
                ConflictType.DUPLICATE_PAYMENT,
            ):
                record.resolution = ConflictResolution.MANUAL_REVIEW

            else:
                self._escalate(record, "Linked record missing")

        except Exception as e:
            logger.error(
                "subscription.conflict.auto_resolve_failed",
                conflict_id=record.id,
                conflict_type=record.conflict_type.value,
                error=str(e),
            )
            self._escalate(record, f"Automatic resolution failed: {e}")

        return self.registry.save(record)

    def _resolve(self, record: ConflictRecord, resolution: ConflictResolution) -> None:
        record.status = ConflictStatus.RESOLVED
        record.resolution = resolution
        record.resolved_at = self.clock()
        record.resolved_by = "system"
        self.metrics.record_conflict_resolved(
            record.conflict_type.value, resolution.value, automatic=True
        )
        logger.info(
            "subscription.conflict.auto_resolved",
            conflict_id=record.id,
            conflict_type=record.conflict_type.value,
            resolution=resolution.value,
        )

    def _escalate(self, record: ConflictRecord, notes: str) -> None:
        record.status = ConflictStatus.ESCALATED
        record.resolution = ConflictResolution.MANUAL_REVIEW
        record.resolution_notes = notes
        logger.warning(
            "subscription.conflict.escalated",
            conflict_id=record.id,
            conflict_type=record.conflict_type.value,
            notes=notes,
        )


class ConflictService:
    """Detection passes, scans and conflict administration."""

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        detector: ConflictDetector,
        resolver: ConflictResolver,
        registry: ConflictRegistry,
        actions: SystemActions,
        locks: LockManager,
        metrics: SubscriptionMetrics,
        clock: Callable[[], datetime],
    ) -> None:
        self.subscriptions = subscriptions
        self.detector = detector
        self.resolver = resolver
        self.registry = registry
        self.actions = actions
        self.locks = locks
        self.metrics = metrics
        self.clock = clock

    async def detect_and_resolve(self, subscription_id: str) -> list[ConflictRecord]:
        """Run one detection pass and one automatic attempt per record."""
        async with self.locks.hold(subscription_id):
            subscription = await self.subscriptions.get_by_id(subscription_id)
            if subscription is None:
                raise SubscriptionNotFoundError(subscription_id)

            today = self.clock().date()
            detected = await self.detector.detect(subscription, today)
            results: list[ConflictRecord] = []

            for conflict in detected:
                record = self.registry.record(subscription.id, subscription.user_id, conflict)
                # Earlier strategies in this pass may have changed the subscription
                current = await self.subscriptions.get_by_id(subscription.id) or subscription
                results.append(await self.resolver.auto_resolve(record, current))
        return results

    async def scan_all(self) -> ConflictScanReport:
        """Periodic detection over every ACTIVE and PAUSED subscription."""
        report = ConflictScanReport()
        subscriptions = await self.subscriptions.find_by_status(SCANNED_STATUSES)

        for subscription in subscriptions:
            report.scanned += 1
            try:
                records = await self.detect_and_resolve(subscription.id)
            except Exception as e:
                logger.error(
                    "subscription.conflict.scan_failed",
                    subscription_id=subscription.id,
                    error=str(e),
                )
                report.errors.append(subscription.id)
                continue

            report.detected += len(records)
            for record in records:
                if record.status == ConflictStatus.RESOLVED:
                    report.resolved += 1
                elif record.status == ConflictStatus.ESCALATED:
                    report.escalated += 1
                else:
                    report.pending += 1

        logger.info("subscription.conflict.scan_completed", **report.model_dump())
        return report

    async def resolve_manually(
        self,
        conflict_id: str,
        actor: Actor,
        resolution: ConflictResolution,
        notes: str | None = None,
    ) -> ConflictRecord:
        """
        Apply an administrator's resolution.

        Raises:
            SubscriptionAuthorizationError: Actor is not an administrator
            ConflictNotFoundError: Unknown conflict id
        """
        self._require_admin(actor, "Only administrators can resolve conflicts")
        record = self.registry.get(conflict_id)
        if record.status == ConflictStatus.RESOLVED:
            raise SubscriptionValidationError(
                "Conflict is already resolved", context={"conflict_id": conflict_id}
            )

        async with self.locks.hold(record.subscription_id):
            subscription = await self.subscriptions.get_by_id(record.subscription_id)
            if subscription is None and resolution != ConflictResolution.MANUAL_REVIEW:
                raise SubscriptionNotFoundError(record.subscription_id)

            today = self.clock().date()
            if subscription is not None:
                if resolution == ConflictResolution.FORCE_RECONCILE:
                    await self.actions.reconcile_progress(subscription, today)
                elif resolution == ConflictResolution.ADJUST_SCHEDULE:
                    await self.actions.realign_schedule(subscription)
                elif resolution == ConflictResolution.PAUSE_SUBSCRIPTION:
                    await self.actions.pause(subscription)
                elif resolution == ConflictResolution.CANCEL_SUBSCRIPTION:
                    await self.actions.cancel(subscription, today)

        record.status = ConflictStatus.RESOLVED
        record.resolution = resolution
        record.resolved_at = self.clock()
        record.resolved_by = actor.id
        record.resolution_notes = notes
        self.registry.save(record)

        self.metrics.record_conflict_resolved(
            record.conflict_type.value, resolution.value, automatic=False
        )
        log_audit_event(
            action="subscription.conflict.resolved",
            actor_id=actor.id,
            actor_role=actor.role.value,
            resource_type="subscription_conflict",
            resource_id=record.id,
            resolution=resolution.value,
            subscription_id=record.subscription_id,
        )
        return record

    async def escalate(
        self, conflict_id: str, actor: Actor, notes: str | None = None
    ) -> ConflictRecord:
        self._require_admin(actor, "Only administrators can escalate conflicts")
        record = self.registry.get(conflict_id)
        if record.status == ConflictStatus.RESOLVED:
            raise SubscriptionValidationError(
                "Conflict is already resolved", context={"conflict_id": conflict_id}
            )
        record.status = ConflictStatus.ESCALATED
        record.resolution = ConflictResolution.MANUAL_REVIEW
        record.resolution_notes = notes
        self.registry.save(record)
        logger.warning("subscription.conflict.escalated", conflict_id=record.id, actor_id=actor.id)
        return record

    def get_conflict(self, conflict_id: str) -> ConflictRecord:
        return self.registry.get(conflict_id)

    def get_pending(self) -> list[ConflictRecord]:
        return self.registry.find(status=ConflictStatus.PENDING)

    def get_escalated(self) -> list[ConflictRecord]:
        return self.registry.find(status=ConflictStatus.ESCALATED)

    def get_for_subscription(self, subscription_id: str) -> list[ConflictRecord]:
        return self.registry.find(subscription_id=subscription_id)

    def get_statistics(self) -> dict[str, Any]:
        return self.registry.statistics()

    def _require_admin(self, actor: Actor, message: str) -> None:
        if not actor.is_admin:
            raise SubscriptionAuthorizationError(message, actor.id)
