"""
Tests for conflict detection and resolution.

Subscriptions are seeded straight into the stores so each test can set up the
exact drift it wants the detector to find.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from dropmarket.subscriptions.enums import (
    ConflictResolution,
    ConflictStatus,
    ConflictType,
    NotificationType,
    PaymentFrequency,
    SubscriptionStatus,
)
from dropmarket.subscriptions.exceptions import (
    ConflictNotFoundError,
    SubscriptionAuthorizationError,
    SubscriptionNotFoundError,
    SubscriptionValidationError,
)
from dropmarket.subscriptions.models import Subscription
from tests.subscriptions.factories import (
    NOW,
    TODAY,
    make_fully_paid_drops,
    make_order,
    make_subscription,
)

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


def paid_through(
    count: int, reference: str | None = None, **overrides
) -> Subscription:
    """Weekly subscription with its first ``count`` drops paid."""
    base = make_subscription(frequency=PaymentFrequency.WEEKLY, **overrides)
    drops = [
        drop.model_copy(
            update={
                "is_paid": True,
                "paid_at": NOW,
                "payment_reference": reference or f"ref-{drop.index}",
            }
        )
        if drop.index < count
        else drop
        for drop in base.drops
    ]
    return base.model_copy(
        update={
            "drops": drops,
            "drops_paid": count,
            "amount_paid": sum((d.amount for d in drops if d.is_paid), Decimal("0")),
            "next_due_date": drops[count].scheduled_date,
        }
    )


@pytest.fixture
def seed(subscription_store, order_store, balance_store):
    """Store a subscription with a matching order and a funded wallet."""

    async def _seed(
        subscription: Subscription,
        order_paid: Decimal | str | None = None,
        balance: str | None = "100000",
        with_order: bool = True,
    ) -> Subscription:
        await subscription_store.create(subscription)
        if with_order:
            paid = subscription.amount_paid if order_paid is None else order_paid
            order_store.add(
                make_order(
                    subscription.order_id,
                    subscription.user_id,
                    total=subscription.total_amount,
                    paid=paid,
                )
            )
        if balance is not None:
            balance_store.set_balance(subscription.user_id, balance)
        return subscription

    return _seed


class TestDetection:
    """Test what the detector reports."""

    async def test_healthy_subscription_has_no_conflicts(self, engine, seed):
        subscription = await seed(make_subscription())

        assert await engine.conflicts.detect_and_resolve(subscription.id) == []

    async def test_order_payment_mismatch_left_for_review(self, engine, seed):
        subscription = await seed(make_subscription(), order_paid="3000")

        [record] = await engine.conflicts.detect_and_resolve(subscription.id)

        assert record.conflict_type == ConflictType.PAYMENT_MISMATCH
        assert record.status == ConflictStatus.PENDING
        assert record.resolution == ConflictResolution.MANUAL_REVIEW
        assert record.details["difference"] == "-3000"
        assert record.auto_attempts == 1

    async def test_repeat_detection_reuses_open_record(self, engine, seed):
        subscription = await seed(make_subscription(), order_paid="3000")
        [first] = await engine.conflicts.detect_and_resolve(subscription.id)

        [second] = await engine.conflicts.detect_and_resolve(subscription.id)

        assert second.id == first.id
        assert second.auto_attempts == 2
        assert len(engine.conflicts.get_for_subscription(subscription.id)) == 1

    async def test_difference_within_tolerance_ignored(self, engine, seed):
        subscription = await seed(make_subscription(), order_paid="1")

        assert await engine.conflicts.detect_and_resolve(subscription.id) == []

    async def test_duplicate_references(self, engine, seed):
        subscription = await seed(paid_through(2, reference="dup"))

        [record] = await engine.conflicts.detect_and_resolve(subscription.id)

        assert record.conflict_type == ConflictType.DUPLICATE_PAYMENT
        assert record.details["references"] == ["dup"]
        assert record.status == ConflictStatus.PENDING
        assert record.resolution == ConflictResolution.MANUAL_REVIEW

    async def test_paid_drops_disagree_with_counter(self, engine, seed):
        drifted = paid_through(2).model_copy(update={"amount_paid": Decimal("1250")})
        subscription = await seed(drifted, order_paid="1250")

        [record] = await engine.conflicts.detect_and_resolve(subscription.id)

        assert record.description == "Subscription paid amount differs from paid drops"
        assert record.details == {"subscription_paid": "1250", "drops_paid": "2500"}

    async def test_unknown_subscription(self, engine):
        with pytest.raises(SubscriptionNotFoundError):
            await engine.conflicts.detect_and_resolve("missing")


class TestAutomaticResolution:
    """Test the strategy applied per conflict type."""

    async def test_misaligned_next_due_date_is_realigned(self, engine, seed, subscription_store):
        subscription = await seed(make_subscription(next_due_date=TODAY + timedelta(days=5)))

        [record] = await engine.conflicts.detect_and_resolve(subscription.id)

        assert record.conflict_type == ConflictType.SCHEDULE_CONFLICT
        assert record.status == ConflictStatus.RESOLVED
        assert record.resolution == ConflictResolution.ADJUST_SCHEDULE
        assert record.resolved_by == "system"
        stored = await subscription_store.get_by_id(subscription.id)
        assert stored.next_due_date == TODAY

    async def test_overdue_drops_are_flagged(self, engine, seed):
        subscription = await seed(make_subscription(start_date=TODAY - timedelta(days=40)))

        [record] = await engine.conflicts.detect_and_resolve(subscription.id)

        assert record.description == "Unpaid drops are overdue"
        assert record.details["overdue_drops"] == [0, 1]
        assert record.status == ConflictStatus.RESOLVED

    async def test_overdue_ignored_for_paused(self, engine, seed):
        subscription = await seed(
            make_subscription(
                start_date=TODAY - timedelta(days=40), status=SubscriptionStatus.PAUSED
            )
        )

        assert await engine.conflicts.detect_and_resolve(subscription.id) == []

    async def test_fully_paid_active_is_completed(self, engine, seed, subscription_store):
        subscription = await seed(make_subscription(**make_fully_paid_drops(make_subscription())))

        [record] = await engine.conflicts.detect_and_resolve(subscription.id)

        assert record.conflict_type == ConflictType.STATUS_MISMATCH
        assert record.resolution == ConflictResolution.FORCE_RECONCILE
        stored = await subscription_store.get_by_id(subscription.id)
        assert stored.status == SubscriptionStatus.COMPLETED
        assert stored.is_completed is True
        assert stored.end_date == TODAY

    async def test_paid_drops_with_stale_counters_not_completed(
        self, engine, seed, subscription_store, admin
    ):
        """Every drop marked paid but nothing counted: escalate, never auto-complete."""
        drifted = make_subscription(
            **{
                **make_fully_paid_drops(make_subscription()),
                "drops_paid": 0,
                "amount_paid": Decimal("0"),
            }
        )
        subscription = await seed(drifted, order_paid="0")

        mismatch, status = await engine.conflicts.detect_and_resolve(subscription.id)

        assert mismatch.conflict_type == ConflictType.PAYMENT_MISMATCH
        assert mismatch.status == ConflictStatus.PENDING
        assert status.description == "Active subscription has no unpaid drops"
        assert status.status == ConflictStatus.ESCALATED
        assert status.resolution_notes == "Status cannot be repaired automatically"
        stored = await subscription_store.get_by_id(subscription.id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.is_completed is False
        assert stored.drops_paid == 0

        await engine.conflicts.resolve_manually(
            status.id, admin, ConflictResolution.FORCE_RECONCILE
        )

        stored = await subscription_store.get_by_id(subscription.id)
        assert stored.status == SubscriptionStatus.COMPLETED
        assert stored.drops_paid == 2
        assert stored.amount_paid == Decimal("10000")

    async def test_completed_with_unpaid_drops_escalates(self, engine, seed, subscription_store):
        subscription = await seed(make_subscription(status=SubscriptionStatus.COMPLETED))

        [record] = await engine.conflicts.detect_and_resolve(subscription.id)

        assert record.description == "Completed subscription has unpaid drops"
        assert record.status == ConflictStatus.ESCALATED
        assert record.resolution_notes == "Status cannot be repaired automatically"
        stored = await subscription_store.get_by_id(subscription.id)
        assert stored.status == SubscriptionStatus.COMPLETED

    async def test_insufficient_funds_pauses(self, engine, seed, subscription_store, notifier):
        subscription = await seed(make_subscription(), balance="100")

        [record] = await engine.conflicts.detect_and_resolve(subscription.id)

        assert record.conflict_type == ConflictType.INSUFFICIENT_FUNDS
        assert record.resolution == ConflictResolution.PAUSE_SUBSCRIPTION
        stored = await subscription_store.get_by_id(subscription.id)
        assert stored.status == SubscriptionStatus.PAUSED
        [notice] = notifier.of_type(NotificationType.PAYMENT_FAILED_FINAL)
        assert notice["reason"] == "insufficient_funds"

    async def test_missing_order_escalated(self, engine, seed):
        subscription = await seed(make_subscription(), with_order=False)

        [record] = await engine.conflicts.detect_and_resolve(subscription.id)

        assert record.conflict_type == ConflictType.ORDER_CONFLICT
        assert record.status == ConflictStatus.ESCALATED
        assert record.auto_attempts == 0

    async def test_missing_wallet_escalated(self, engine, seed):
        subscription = await seed(make_subscription(), balance=None)

        [record] = await engine.conflicts.detect_and_resolve(subscription.id)

        assert record.conflict_type == ConflictType.WALLET_DISCREPANCY
        assert record.status == ConflictStatus.ESCALATED


class TestManualResolution:
    """Test administrator actions on conflict records."""

    async def _pending(self, engine, seed):
        subscription = await seed(make_subscription(), order_paid="3000")
        [record] = await engine.conflicts.detect_and_resolve(subscription.id)
        return subscription, record

    async def test_admin_resolves(self, engine, seed, admin):
        _, record = await self._pending(engine, seed)

        resolved = await engine.conflicts.resolve_manually(
            record.id, admin, ConflictResolution.MANUAL_REVIEW, notes="order ledger fixed"
        )

        assert resolved.status == ConflictStatus.RESOLVED
        assert resolved.resolved_by == "admin-1"
        assert resolved.resolution_notes == "order ledger fixed"
        assert engine.conflicts.get_conflict(record.id).status == ConflictStatus.RESOLVED
        assert engine.conflicts.get_pending() == []

    async def test_user_cannot_resolve(self, engine, seed, owner):
        _, record = await self._pending(engine, seed)

        with pytest.raises(SubscriptionAuthorizationError):
            await engine.conflicts.resolve_manually(
                record.id, owner, ConflictResolution.MANUAL_REVIEW
            )

    async def test_cannot_resolve_twice(self, engine, seed, admin):
        _, record = await self._pending(engine, seed)
        await engine.conflicts.resolve_manually(record.id, admin, ConflictResolution.MANUAL_REVIEW)

        with pytest.raises(SubscriptionValidationError) as exc_info:
            await engine.conflicts.resolve_manually(
                record.id, admin, ConflictResolution.MANUAL_REVIEW
            )
        assert exc_info.value.message == "Conflict is already resolved"

    async def test_unknown_conflict(self, engine, admin):
        with pytest.raises(ConflictNotFoundError):
            await engine.conflicts.resolve_manually(
                "nope", admin, ConflictResolution.MANUAL_REVIEW
            )

    async def test_cancel_resolution_cancels_subscription(
        self, engine, seed, admin, subscription_store, notifier
    ):
        subscription, record = await self._pending(engine, seed)

        await engine.conflicts.resolve_manually(
            record.id, admin, ConflictResolution.CANCEL_SUBSCRIPTION
        )

        stored = await subscription_store.get_by_id(subscription.id)
        assert stored.status == SubscriptionStatus.CANCELLED
        assert stored.end_date == TODAY
        assert len(notifier.of_type(NotificationType.SUBSCRIPTION_CANCELLED)) == 1

    async def test_force_reconcile_recounts_progress(
        self, engine, seed, admin, subscription_store
    ):
        drifted = paid_through(2).model_copy(
            update={"drops_paid": 1, "amount_paid": Decimal("1250")}
        )
        subscription = await seed(drifted, order_paid="1250")
        [record] = await engine.conflicts.detect_and_resolve(subscription.id)

        await engine.conflicts.resolve_manually(
            record.id, admin, ConflictResolution.FORCE_RECONCILE
        )

        stored = await subscription_store.get_by_id(subscription.id)
        assert stored.drops_paid == 2
        assert stored.amount_paid == Decimal("2500")
        assert stored.status == SubscriptionStatus.ACTIVE

    async def test_escalate(self, engine, seed, admin, owner):
        _, record = await self._pending(engine, seed)

        with pytest.raises(SubscriptionAuthorizationError):
            await engine.conflicts.escalate(record.id, owner)
        escalated = await engine.conflicts.escalate(record.id, admin, notes="needs finance")

        assert escalated.status == ConflictStatus.ESCALATED
        assert [r.id for r in engine.conflicts.get_escalated()] == [record.id]


class TestScan:
    """Test the periodic scan and reporting."""

    async def test_scan_all(self, engine, seed, subscription_store):
        await seed(make_subscription())
        await seed(
            make_subscription(subscription_id="sub-2", order_id="order-2", user_id="user-2"),
            balance="100",
        )
        await seed(
            make_subscription(
                subscription_id="sub-3",
                order_id="order-3",
                user_id="user-3",
                status=SubscriptionStatus.CANCELLED,
                next_due_date=TODAY + timedelta(days=3),
            )
        )

        report = await engine.conflicts.scan_all()

        assert report.scanned == 2
        assert report.detected == 1
        assert report.resolved == 1
        assert report.errors == []
        assert (await subscription_store.get_by_id("sub-2")).status == SubscriptionStatus.PAUSED

    async def test_statistics(self, engine, seed):
        await seed(make_subscription(), order_paid="3000")
        await seed(
            make_subscription(subscription_id="sub-2", order_id="order-2", user_id="user-2"),
            balance=None,
        )
        await engine.conflicts.scan_all()

        stats = engine.conflicts.get_statistics()

        assert stats["total"] == 2
        assert stats["by_status"] == {"pending": 1, "escalated": 1}
        assert stats["by_type"] == {"payment_mismatch": 1, "wallet_discrepancy": 1}
        assert stats["by_priority"] == {"high": 1, "critical": 1}
