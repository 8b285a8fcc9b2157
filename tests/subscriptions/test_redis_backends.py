"""
Redis balance store and lock manager tests using fakeredis.aioredis.
"""

import asyncio
from decimal import Decimal

import pytest

pytest.importorskip("fakeredis", reason="fakeredis is required for Redis backend tests")
import fakeredis
import pytest_asyncio

from dropmarket.redis_client import redis_manager
from dropmarket.settings import settings
from dropmarket.subscriptions.engine import build_subscription_engine, default_lock_manager
from dropmarket.subscriptions.exceptions import SubscriptionLockedError
from dropmarket.subscriptions.locks import InMemoryLockManager, RedisLockManager
from dropmarket.subscriptions.memory import InMemoryOrderStore, InMemorySubscriptionStore
from dropmarket.subscriptions.metrics import SubscriptionMetrics
from dropmarket.subscriptions.models import Actor
from dropmarket.subscriptions.money import MoneyFormatter
from dropmarket.subscriptions.redis_backends import RedisBalanceStore
from dropmarket.subscriptions.retry import InMemoryRetryQueue
from tests.subscriptions.factories import FrozenClock, RecordingNotifier, make_order

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def balances(redis_client) -> RedisBalanceStore:
    return RedisBalanceStore(redis_client, prefix="test:balance")


class TestRedisBalanceStore:
    """Test balance reads and atomic updates."""

    async def test_missing_account(self, balances):
        assert await balances.get_spendable("user-1") is None
        assert await balances.debit("user-1", Decimal("1")) is False

    async def test_debit_and_credit(self, balances, redis_client):
        await balances.set_balance("user-1", "100.50")

        assert await balances.debit("user-1", Decimal("40.25")) is True
        assert await balances.get_spendable("user-1") == Decimal("60.25")
        assert await balances.credit("user-1", Decimal("9.75")) == Decimal("70.00")
        assert await redis_client.get("test:balance:user-1") == "70.00"

    async def test_debit_refused_when_short(self, balances):
        await balances.set_balance("user-1", "10")

        assert await balances.debit("user-1", Decimal("10.01")) is False
        assert await balances.get_spendable("user-1") == Decimal("10")

    async def test_credit_opens_account(self, balances):
        assert await balances.credit("user-9", Decimal("5")) == Decimal("5")

    async def test_concurrent_debits_never_overdraw(self, balances):
        """Five debits of 30 against 100: exactly three succeed."""
        await balances.set_balance("user-1", "100")

        results = await asyncio.gather(
            *(balances.debit("user-1", Decimal("30")) for _ in range(5))
        )

        assert results.count(True) == 3
        assert await balances.get_spendable("user-1") == Decimal("10")


class TestRedisLockManager:
    """Test the cross-worker lock."""

    async def test_second_holder_times_out(self, redis_client):
        locks = RedisLockManager(redis_client, prefix="test:lock", timeout=0.1, lease_seconds=5)

        async with locks.hold("sub-1"):
            assert await redis_client.exists("test:lock:sub-1") == 1
            with pytest.raises(SubscriptionLockedError) as exc_info:
                async with locks.hold("sub-1"):
                    pass
            assert exc_info.value.error_code == "SUBSCRIPTION_LOCKED"

        assert await redis_client.exists("test:lock:sub-1") == 0

    async def test_different_keys_do_not_block(self, redis_client):
        locks = RedisLockManager(redis_client, prefix="test:lock", timeout=0.1, lease_seconds=5)

        async with locks.hold("sub-1"):
            async with locks.hold("sub-2"):
                pass


class TestInMemoryLockManager:
    """Test the process-local lock."""

    async def test_timeout(self):
        locks = InMemoryLockManager(timeout=0.05)

        async with locks.hold("sub-1"):
            assert locks.is_locked("sub-1")
            with pytest.raises(SubscriptionLockedError):
                async with locks.hold("sub-1"):
                    pass

        assert not locks.is_locked("sub-1")

    async def test_released_on_error(self):
        locks = InMemoryLockManager(timeout=0.05)

        with pytest.raises(RuntimeError):
            async with locks.hold("sub-1"):
                raise RuntimeError("boom")

        assert not locks.is_locked("sub-1")


class TestEngineOnRedis:
    """Run a drop against Redis balances and locks."""

    async def test_process_drop(self, redis_client, balances):
        orders = InMemoryOrderStore([make_order()])
        engine = build_subscription_engine(
            subscriptions=InMemorySubscriptionStore(),
            orders=orders,
            balances=balances,
            notifier=RecordingNotifier(),
            retry_queue=InMemoryRetryQueue(),
            locks=RedisLockManager(redis_client, prefix="test:lock", timeout=1, lease_seconds=5),
            clock=FrozenClock(),
            metrics=SubscriptionMetrics(),
            money=MoneyFormatter("NGN", "en_NG"),
        )
        await balances.set_balance("user-1", "7000")
        owner = Actor(id="user-1")
        subscription = await engine.service.create_subscription(owner, "order-1", "monthly")

        result = await engine.processor.process_next_drop(subscription.id, owner)

        assert result.drop.index == 0
        assert await balances.get_spendable("user-1") == Decimal("2000")
        assert (await orders.get("order-1")).paid_amount == Decimal("5000")


class TestSharedRedisClient:
    """Test the process-wide client behind the Redis lock backend."""

    @pytest.fixture
    def fresh_manager(self, monkeypatch):
        monkeypatch.setattr(redis_manager, "_client", None)
        monkeypatch.setattr(redis_manager, "_pool", None)
        return redis_manager

    async def test_built_lazily_from_settings(self, fresh_manager, monkeypatch):
        monkeypatch.setattr(settings.redis, "url", "redis://localhost:6390/3")

        client = fresh_manager.get_client()

        assert client.connection_pool.connection_kwargs["db"] == 3
        assert client.connection_pool.connection_kwargs["port"] == 6390
        assert fresh_manager.get_client() is client
        await fresh_manager.release_connections()

    async def test_release_without_client_is_noop(self, fresh_manager):
        await fresh_manager.release_connections()

    async def test_redis_lock_backend_from_settings(
        self, fresh_manager, redis_client, balances, monkeypatch
    ):
        fresh_manager.use_client(redis_client)
        monkeypatch.setattr(settings.subscriptions, "lock_backend", "redis")

        locks = default_lock_manager()
        assert isinstance(locks, RedisLockManager)
        assert locks.client is redis_client

        orders = InMemoryOrderStore([make_order()])
        engine = build_subscription_engine(
            subscriptions=InMemorySubscriptionStore(),
            orders=orders,
            balances=balances,
            notifier=RecordingNotifier(),
            retry_queue=InMemoryRetryQueue(),
            clock=FrozenClock(),
            metrics=SubscriptionMetrics(),
            money=MoneyFormatter("NGN", "en_NG"),
        )
        await balances.set_balance("user-1", "7000")
        owner = Actor(id="user-1")
        subscription = await engine.service.create_subscription(owner, "order-1", "monthly")

        result = await engine.processor.process_next_drop(subscription.id, owner)

        assert isinstance(engine.locks, RedisLockManager)
        assert result.drop.index == 0
        assert not await redis_client.keys(f"{settings.redis.lock_key_prefix}:*")
