"""
Tests for the SQLAlchemy subscription store on in-memory SQLite.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from dropmarket.db import create_all_tables_async
from dropmarket.subscriptions.engine import build_subscription_engine
from dropmarket.subscriptions.enums import PaymentPlan, SubscriptionStatus
from dropmarket.subscriptions.exceptions import (
    SubscriptionAlreadyExistsError,
    SubscriptionNotFoundError,
)
from dropmarket.subscriptions.locks import InMemoryLockManager
from dropmarket.subscriptions.memory import InMemoryBalanceStore, InMemoryOrderStore
from dropmarket.subscriptions.metrics import SubscriptionMetrics
from dropmarket.subscriptions.models import Actor, SubscriptionFilter
from dropmarket.subscriptions.money import MoneyFormatter
from dropmarket.subscriptions.repository import SQLAlchemySubscriptionStore
from dropmarket.subscriptions.retry import InMemoryRetryQueue
from tests.subscriptions.factories import (
    NOW,
    TODAY,
    FrozenClock,
    RecordingNotifier,
    make_order,
    make_subscription,
)

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]


@pytest_asyncio.fixture
async def store():
    """Store on a shared in-memory database."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:", echo=False, poolclass=StaticPool
    )
    await create_all_tables_async(engine)
    session_maker = async_sessionmaker(engine, expire_on_commit=False)

    yield SQLAlchemySubscriptionStore(session_maker)

    await engine.dispose()


class TestCrud:
    """Test create, read and update."""

    async def test_create_and_get(self, store):
        created = await store.create(make_subscription())

        loaded = await store.get_by_id(created.id)

        assert loaded is not None
        assert loaded.order_id == "order-1"
        assert loaded.payment_plan == PaymentPlan.INSTALLMENT
        assert loaded.total_amount == Decimal("10000")
        assert [d.amount for d in loaded.drops] == [Decimal("5000"), Decimal("5000")]
        assert loaded.drops[1].scheduled_date == TODAY + timedelta(days=30)
        assert loaded.next_due_date == TODAY

    async def test_get_missing(self, store):
        assert await store.get_by_id("missing") is None

    async def test_one_subscription_per_order(self, store):
        await store.create(make_subscription())

        with pytest.raises(SubscriptionAlreadyExistsError) as exc_info:
            await store.create(make_subscription(subscription_id="sub-2"))
        assert exc_info.value.context["subscription_id"] == "sub-1"

    async def test_update_scalar_fields(self, store):
        await store.create(make_subscription())

        updated = await store.update(
            "sub-1", {"status": SubscriptionStatus.CANCELLED, "end_date": TODAY, "notes": "bye"}
        )

        assert updated.status == SubscriptionStatus.CANCELLED
        assert updated.end_date == TODAY
        assert (await store.get_by_id("sub-1")).notes == "bye"

    async def test_update_drops_round_trip(self, store):
        subscription = await store.create(make_subscription())
        paid = subscription.drops[0].model_copy(
            update={"is_paid": True, "paid_at": NOW, "payment_reference": "ref-0"}
        )

        await store.update(
            "sub-1",
            {
                "drops": [paid, subscription.drops[1]],
                "drops_paid": 1,
                "amount_paid": Decimal("5000"),
            },
        )
        loaded = await store.get_by_id("sub-1")

        assert loaded.drops[0].is_paid is True
        assert loaded.drops[0].payment_reference == "ref-0"
        assert loaded.drops[0].paid_at == NOW
        assert loaded.drops[1].is_paid is False
        assert loaded.amount_paid == Decimal("5000")

    async def test_update_missing(self, store):
        with pytest.raises(SubscriptionNotFoundError):
            await store.update("missing", {"notes": "x"})


class TestQueries:
    """Test the finder methods."""

    async def _seed(self, store):
        await store.create(make_subscription())
        await store.create(
            make_subscription(
                subscription_id="sub-2",
                order_id="order-2",
                user_id="user-2",
                next_due_date=TODAY + timedelta(days=2),
                created_at=NOW + timedelta(hours=1),
            )
        )
        await store.create(
            make_subscription(
                subscription_id="sub-3",
                order_id="order-3",
                plan=PaymentPlan.PRICE_LOCK,
                frequency=None,
                status=SubscriptionStatus.PAUSED,
                created_at=NOW + timedelta(hours=2),
            )
        )

    async def test_find_due_today(self, store):
        await self._seed(store)

        assert [s.id for s in await store.find_due_today(TODAY)] == ["sub-1"]

    async def test_find_due_between(self, store):
        await self._seed(store)

        due = await store.find_due_between(TODAY, TODAY + timedelta(days=3))

        assert [s.id for s in due] == ["sub-1", "sub-2"]

    async def test_find_by_user_newest_first(self, store):
        await self._seed(store)

        assert [s.id for s in await store.find_by_user("user-1")] == ["sub-3", "sub-1"]

    async def test_find_by_order(self, store):
        await self._seed(store)

        assert (await store.find_by_order("order-2")).id == "sub-2"
        assert await store.find_by_order("order-9") is None

    async def test_find_by_status(self, store):
        await self._seed(store)

        paused = await store.find_by_status([SubscriptionStatus.PAUSED])

        assert [s.id for s in paused] == ["sub-3"]

    async def test_find_all_filters(self, store):
        await self._seed(store)

        by_plan = await store.find_all(SubscriptionFilter(payment_plan=PaymentPlan.PRICE_LOCK))
        paged = await store.find_all(SubscriptionFilter(limit=1, offset=1))
        active_for_user = await store.find_all(
            SubscriptionFilter(user_id="user-1", status=SubscriptionStatus.ACTIVE)
        )

        assert [s.id for s in by_plan] == ["sub-3"]
        assert [s.id for s in paged] == ["sub-2"]
        assert [s.id for s in active_for_user] == ["sub-1"]


class TestEngineOnSQL:
    """Run the engine against the relational store."""

    async def test_drop_is_persisted(self, store):
        orders = InMemoryOrderStore([make_order()])
        engine = build_subscription_engine(
            subscriptions=store,
            orders=orders,
            balances=InMemoryBalanceStore({"user-1": "20000"}),
            notifier=RecordingNotifier(),
            retry_queue=InMemoryRetryQueue(),
            locks=InMemoryLockManager(timeout=1),
            clock=FrozenClock(),
            metrics=SubscriptionMetrics(),
            money=MoneyFormatter("NGN", "en_NG"),
        )
        owner = Actor(id="user-1")
        subscription = await engine.service.create_subscription(owner, "order-1", "monthly")

        await engine.processor.process_next_drop(subscription.id, owner)
        await engine.processor.process_next_drop(subscription.id, owner)

        stored = await store.get_by_id(subscription.id)
        assert stored.status == SubscriptionStatus.COMPLETED
        assert stored.is_completed is True
        assert stored.drops_paid == 2
        assert stored.next_due_date is None
        assert all(d.is_paid for d in stored.drops)
        assert (await orders.get("order-1")).paid_amount == Decimal("10000")
