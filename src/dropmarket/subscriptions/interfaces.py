"""
Collaborator contracts consumed by the engine.

Orders, balances and notification delivery belong to other services; the
engine only sees these protocols. ``SubscriptionStore`` is the engine's own
persistence contract.
"""

from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from datetime import date
from decimal import Decimal
from typing import Any, Protocol

from dropmarket.subscriptions.enums import NotificationType, SubscriptionStatus
from dropmarket.subscriptions.models import (
    OrderPayment,
    OrderSnapshot,
    RetryJob,
    Subscription,
    SubscriptionFilter,
)


class OrderStore(Protocol):
    async def get(self, order_id: str) -> OrderSnapshot | None: ...  # pragma: no cover

    async def append_payment(
        self, order_id: str, payment: OrderPayment
    ) -> OrderSnapshot: ...  # pragma: no cover

    async def advance_status_if_fully_paid(
        self, order_id: str
    ) -> OrderSnapshot: ...  # pragma: no cover


class BalanceStore(Protocol):
    """Spendable balance per user. ``debit`` must be atomic debit-if-sufficient."""

    async def get_spendable(self, user_id: str) -> Decimal | None: ...  # pragma: no cover

    async def debit(self, user_id: str, amount: Decimal) -> bool: ...  # pragma: no cover

    async def credit(self, user_id: str, amount: Decimal) -> Decimal: ...  # pragma: no cover


class Notifier(Protocol):
    """Fire-and-forget, at-least-once delivery."""

    async def send(
        self, user_id: str, event_type: NotificationType, payload: dict[str, Any]
    ) -> None: ...  # pragma: no cover


class SubscriptionStore(Protocol):
    async def create(self, subscription: Subscription) -> Subscription: ...  # pragma: no cover

    async def get_by_id(self, subscription_id: str) -> Subscription | None: ...  # pragma: no cover

    async def update(
        self, subscription_id: str, changes: dict[str, Any]
    ) -> Subscription: ...  # pragma: no cover

    async def find_due_today(self, today: date) -> list[Subscription]: ...  # pragma: no cover

    async def find_due_between(
        self, start: date, end: date
    ) -> list[Subscription]: ...  # pragma: no cover

    async def find_by_user(self, user_id: str) -> list[Subscription]: ...  # pragma: no cover

    async def find_by_order(self, order_id: str) -> Subscription | None: ...  # pragma: no cover

    async def find_by_status(
        self, statuses: Sequence[SubscriptionStatus]
    ) -> list[Subscription]: ...  # pragma: no cover

    async def find_all(
        self, filters: SubscriptionFilter
    ) -> list[Subscription]: ...  # pragma: no cover


class RetryQueue(Protocol):
    """Delayed queue; a job must not run before ``eligible_at``."""

    async def enqueue(self, job: RetryJob) -> None: ...  # pragma: no cover


class LockManager(Protocol):
    """Per-subscription mutual exclusion."""

    def hold(self, key: str) -> AbstractAsyncContextManager[None]: ...  # pragma: no cover
