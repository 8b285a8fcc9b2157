"""
Process-local store implementations.

Used by tests, the CLI demo wiring and single-process deployments. Records are
copied on the way in and out so callers never share mutable state with the
store.
"""

import asyncio
from collections.abc import Iterable, Sequence
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

import structlog

from dropmarket.subscriptions.enums import OrderStatus, SubscriptionStatus
from dropmarket.subscriptions.exceptions import (
    OrderNotEligibleError,
    SubscriptionAlreadyExistsError,
    SubscriptionNotFoundError,
)
from dropmarket.subscriptions.models import (
    OrderPayment,
    OrderSnapshot,
    Subscription,
    SubscriptionFilter,
)
from dropmarket.subscriptions.money import ZERO, to_decimal

logger = structlog.get_logger(__name__)


def _copy(subscription: Subscription) -> Subscription:
    return subscription.model_copy(deep=True)


class InMemorySubscriptionStore:
    """Dictionary-backed subscription store."""

    def __init__(self, subscriptions: Iterable[Subscription] = ()) -> None:
        self._items: dict[str, Subscription] = {}
        for subscription in subscriptions:
            self._items[subscription.id] = _copy(subscription)

    async def create(self, subscription: Subscription) -> Subscription:
        if subscription.id in self._items:
            raise SubscriptionAlreadyExistsError(subscription.order_id, subscription.id)
        for existing in self._items.values():
            if existing.order_id == subscription.order_id:
                raise SubscriptionAlreadyExistsError(subscription.order_id, existing.id)
        self._items[subscription.id] = _copy(subscription)
        return _copy(subscription)

    async def get_by_id(self, subscription_id: str) -> Subscription | None:
        subscription = self._items.get(subscription_id)
        return _copy(subscription) if subscription else None

    async def update(self, subscription_id: str, changes: dict[str, Any]) -> Subscription:
        current = self._items.get(subscription_id)
        if current is None:
            raise SubscriptionNotFoundError(subscription_id)
        data = current.model_dump()
        data.update(changes)
        data["updated_at"] = datetime.now(UTC)
        updated = Subscription.model_validate(data)
        self._items[subscription_id] = updated
        return _copy(updated)

    async def find_due_today(self, today: date) -> list[Subscription]:
        return [
            _copy(s)
            for s in self._items.values()
            if s.status == SubscriptionStatus.ACTIVE
            and not s.is_completed
            and s.next_due_date == today
        ]

    async def find_due_between(self, start: date, end: date) -> list[Subscription]:
        return [
            _copy(s)
            for s in self._items.values()
            if s.status == SubscriptionStatus.ACTIVE
            and not s.is_completed
            and s.next_due_date is not None
            and start <= s.next_due_date <= end
        ]

    async def find_by_user(self, user_id: str) -> list[Subscription]:
        return self._newest_first(s for s in self._items.values() if s.user_id == user_id)

    async def find_by_order(self, order_id: str) -> Subscription | None:
        for subscription in self._items.values():
            if subscription.order_id == order_id:
                return _copy(subscription)
        return None

    async def find_by_status(self, statuses: Sequence[SubscriptionStatus]) -> list[Subscription]:
        wanted = set(statuses)
        return self._newest_first(s for s in self._items.values() if s.status in wanted)

    async def find_all(self, filters: SubscriptionFilter) -> list[Subscription]:
        matches = []
        for s in self._items.values():
            if filters.user_id and s.user_id != filters.user_id:
                continue
            if filters.order_id and s.order_id != filters.order_id:
                continue
            if filters.status and s.status != filters.status:
                continue
            if filters.payment_plan and s.payment_plan != filters.payment_plan:
                continue
            if filters.is_completed is not None and s.is_completed != filters.is_completed:
                continue
            matches.append(s)
        ordered = self._newest_first(matches)
        return ordered[filters.offset : filters.offset + filters.limit]

    def _newest_first(self, items: Iterable[Subscription]) -> list[Subscription]:
        return [_copy(s) for s in sorted(items, key=lambda s: s.created_at, reverse=True)]


class InMemoryOrderStore:
    """Dictionary-backed order collaborator."""

    def __init__(self, orders: Iterable[OrderSnapshot] = ()) -> None:
        self._orders: dict[str, OrderSnapshot] = {}
        for order in orders:
            self.add(order)

    def add(self, order: OrderSnapshot) -> OrderSnapshot:
        stored = order.model_copy(deep=True)
        stored.remaining_amount = max(ZERO, stored.total_amount - stored.paid_amount)
        self._orders[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get(self, order_id: str) -> OrderSnapshot | None:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def append_payment(self, order_id: str, payment: OrderPayment) -> OrderSnapshot:
        order = self._require(order_id)
        order.payments.append(payment.model_copy())
        order.paid_amount = order.paid_amount + payment.amount
        order.remaining_amount = max(ZERO, order.total_amount - order.paid_amount)
        return order.model_copy(deep=True)

    async def advance_status_if_fully_paid(self, order_id: str) -> OrderSnapshot:
        order = self._require(order_id)
        if order.remaining_amount <= ZERO and order.status == OrderStatus.PENDING:
            order.status = OrderStatus.PAID
        return order.model_copy(deep=True)

    def _require(self, order_id: str) -> OrderSnapshot:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotEligibleError("Order not found", order_id)
        return order


class InMemoryBalanceStore:
    """
    Spendable balances guarded by one ``asyncio.Lock``.

    ``debit`` is an atomic decrement-if-sufficient so two concurrent debits
    cannot both pass the balance check.
    """

    def __init__(self, balances: dict[str, Decimal | int | str] | None = None) -> None:
        self._balances: dict[str, Decimal] = {
            user_id: to_decimal(amount) for user_id, amount in (balances or {}).items()
        }
        self._lock = asyncio.Lock()

    def set_balance(self, user_id: str, amount: Decimal | int | str) -> None:
        self._balances[user_id] = to_decimal(amount)

    def remove_account(self, user_id: str) -> None:
        self._balances.pop(user_id, None)

    async def get_spendable(self, user_id: str) -> Decimal | None:
        return self._balances.get(user_id)

    async def debit(self, user_id: str, amount: Decimal) -> bool:
        async with self._lock:
            current = self._balances.get(user_id)
            if current is None or current < amount:
                logger.info(
                    "balance.debit.refused",
                    user_id=user_id,
                    amount=str(amount),
                    available=str(current) if current is not None else None,
                )
                return False
            self._balances[user_id] = current - amount
            return True

    async def credit(self, user_id: str, amount: Decimal) -> Decimal:
        async with self._lock:
            balance = self._balances.get(user_id, ZERO) + amount
            self._balances[user_id] = balance
            return balance
