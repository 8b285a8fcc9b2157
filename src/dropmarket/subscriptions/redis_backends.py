"""
Redis-backed spendable balances.

Balances are stored as decimal strings under ``{prefix}:{user_id}``. Debits
and credits use WATCH/MULTI optimistic transactions, so concurrent writers on
the same balance retry instead of overdrawing it.
"""

from collections.abc import Callable
from decimal import Decimal

import structlog
from redis.asyncio import Redis
from redis.asyncio.client import Pipeline
from redis.exceptions import WatchError

from dropmarket.settings import settings
from dropmarket.subscriptions.exceptions import TransientPaymentError
from dropmarket.subscriptions.money import ZERO, to_decimal

logger = structlog.get_logger(__name__)

MAX_WATCH_RETRIES = 10


class RedisBalanceStore:
    """Balance store with an atomic debit-if-sufficient primitive."""

    def __init__(self, client: Redis, prefix: str | None = None) -> None:
        self.client = client
        self.prefix = prefix or settings.redis.balance_key_prefix

    def _key(self, user_id: str) -> str:
        return f"{self.prefix}:{user_id}"

    async def set_balance(self, user_id: str, amount: Decimal | int | str) -> None:
        await self.client.set(self._key(user_id), str(to_decimal(amount)))

    async def get_spendable(self, user_id: str) -> Decimal | None:
        raw = await self.client.get(self._key(user_id))
        return Decimal(raw) if raw is not None else None

    async def debit(self, user_id: str, amount: Decimal) -> bool:
        def apply(current: Decimal | None) -> Decimal | None:
            if current is None or current < amount:
                return None
            return current - amount

        result = await self._transact(user_id, apply)
        if result is None:
            logger.info("balance.debit.refused", user_id=user_id, amount=str(amount))
            return False
        return True

    async def credit(self, user_id: str, amount: Decimal) -> Decimal:
        result = await self._transact(user_id, lambda current: (current or ZERO) + amount)
        assert result is not None
        return result

    async def _transact(
        self, user_id: str, compute: Callable[[Decimal | None], Decimal | None]
    ) -> Decimal | None:
        """Run read-compute-write under WATCH; ``None`` from ``compute`` aborts."""
        key = self._key(user_id)
        pipe: Pipeline
        async with self.client.pipeline(transaction=True) as pipe:
            for _ in range(MAX_WATCH_RETRIES):
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    current = Decimal(raw) if raw is not None else None
                    new_value = compute(current)
                    if new_value is None:
                        await pipe.unwatch()
                        return None
                    pipe.multi()
                    pipe.set(key, str(new_value))
                    await pipe.execute()
                    return new_value
                except WatchError:
                    logger.debug("balance.transaction.retry", user_id=user_id)
                    continue

        raise TransientPaymentError(
            "Balance is under heavy contention",
            context={"user_id": user_id, "attempts": MAX_WATCH_RETRIES},
        )
