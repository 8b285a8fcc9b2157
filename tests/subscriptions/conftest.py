"""Fixtures for the drop subscription engine tests."""

from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import TypeAlias

import pytest

from dropmarket.subscriptions.engine import SubscriptionEngine
from dropmarket.subscriptions.enums import PaymentFrequency, PaymentPlan
from dropmarket.subscriptions.memory import (
    InMemoryBalanceStore,
    InMemoryOrderStore,
    InMemorySubscriptionStore,
)
from dropmarket.subscriptions.models import Actor, Subscription
from dropmarket.subscriptions.retry import InMemoryRetryQueue
from tests.subscriptions.factories import (
    FrozenClock,
    RecordingNotifier,
    build_memory_engine,
    make_order,
)

SubscriptionMaker: TypeAlias = Callable[..., Awaitable[Subscription]]


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def engine(clock: FrozenClock, notifier: RecordingNotifier) -> SubscriptionEngine:
    """Fully wired engine on in-memory collaborators."""
    return build_memory_engine(clock=clock, notifier=notifier)


@pytest.fixture
def subscription_store(engine: SubscriptionEngine) -> InMemorySubscriptionStore:
    assert isinstance(engine.subscriptions, InMemorySubscriptionStore)
    return engine.subscriptions


@pytest.fixture
def order_store(engine: SubscriptionEngine) -> InMemoryOrderStore:
    assert isinstance(engine.orders, InMemoryOrderStore)
    return engine.orders


@pytest.fixture
def balance_store(engine: SubscriptionEngine) -> InMemoryBalanceStore:
    assert isinstance(engine.balances, InMemoryBalanceStore)
    return engine.balances


@pytest.fixture
def retry_queue(engine: SubscriptionEngine) -> InMemoryRetryQueue:
    assert isinstance(engine.retry_queue, InMemoryRetryQueue)
    return engine.retry_queue


@pytest.fixture
def owner() -> Actor:
    return Actor(id="user-1")


@pytest.fixture
def admin() -> Actor:
    return Actor(id="admin-1", role="admin")


@pytest.fixture
def stranger() -> Actor:
    return Actor(id="user-2")


@pytest.fixture
def create_subscription(
    engine: SubscriptionEngine,
    order_store: InMemoryOrderStore,
    balance_store: InMemoryBalanceStore,
) -> SubscriptionMaker:
    """Create an order, fund its owner and subscribe through the service."""

    async def _create(
        order_id: str = "order-1",
        user_id: str = "user-1",
        total: str = "10000",
        paid: str = "0",
        plan: PaymentPlan = PaymentPlan.INSTALLMENT,
        frequency: PaymentFrequency | None = PaymentFrequency.MONTHLY,
        balance: str | None = "100000",
    ) -> Subscription:
        order_store.add(make_order(order_id, user_id, total=total, paid=paid, plan=plan))
        if balance is not None:
            balance_store.set_balance(user_id, Decimal(balance))
        return await engine.service.create_subscription(Actor(id=user_id), order_id, frequency)

    return _create
