"""
SQLAlchemy subscription store.

The drop list is owned by its subscription and never referenced from outside,
so it is stored inline as a JSON column rather than as a child table.
"""

from collections.abc import Sequence
from datetime import date
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import JSON, Boolean, Date, Index, Integer, Numeric, String, Text, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from dropmarket.db import Base, TimestampMixin, get_session_maker
from dropmarket.subscriptions.enums import SubscriptionStatus
from dropmarket.subscriptions.exceptions import (
    SubscriptionAlreadyExistsError,
    SubscriptionNotFoundError,
)
from dropmarket.subscriptions.models import Subscription, SubscriptionFilter

logger = structlog.get_logger(__name__)


class SubscriptionRecord(Base, TimestampMixin):
    """SQLAlchemy table for drop subscriptions."""

    __tablename__ = "drop_subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    # Plan shape
    payment_plan: Mapped[str] = mapped_column(String(32), nullable=False)
    frequency: Mapped[str | None] = mapped_column(String(16), nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    drop_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    total_drops: Mapped[int] = mapped_column(Integer, nullable=False)

    # Progress
    drops_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=0)
    drops: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    # Dates
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    next_due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    pause_until: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Status
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value
    )
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_drop_subscriptions_due", "status", "next_due_date"),
        Index("ix_drop_subscriptions_status", "status"),
    )


def _to_columns(subscription: Subscription) -> dict[str, Any]:
    data = subscription.model_dump(exclude={"drops", "updated_at"})
    data["payment_plan"] = subscription.payment_plan.value
    data["frequency"] = subscription.frequency.value if subscription.frequency else None
    data["status"] = subscription.status.value
    data["drops"] = [drop.model_dump(mode="json") for drop in subscription.drops]
    return data


def _to_model(record: SubscriptionRecord) -> Subscription:
    return Subscription.model_validate(record, from_attributes=True)


class SQLAlchemySubscriptionStore:
    """Relational subscription store on an async session factory."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_maker = session_maker or get_session_maker()

    async def create(self, subscription: Subscription) -> Subscription:
        async with self._session_maker() as session:
            existing = await session.scalar(
                select(SubscriptionRecord).where(
                    SubscriptionRecord.order_id == subscription.order_id
                )
            )
            if existing is not None:
                raise SubscriptionAlreadyExistsError(subscription.order_id, existing.id)

            record = SubscriptionRecord(**_to_columns(subscription))
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.warning(
                    "subscription.store.create_conflict",
                    subscription_id=subscription.id,
                    order_id=subscription.order_id,
                )
                raise SubscriptionAlreadyExistsError(subscription.order_id, subscription.id)
            await session.refresh(record)
            return _to_model(record)

    async def get_by_id(self, subscription_id: str) -> Subscription | None:
        async with self._session_maker() as session:
            record = await session.get(SubscriptionRecord, subscription_id)
            return _to_model(record) if record else None

    async def update(self, subscription_id: str, changes: dict[str, Any]) -> Subscription:
        async with self._session_maker() as session:
            record = await session.scalar(
                select(SubscriptionRecord)
                .where(SubscriptionRecord.id == subscription_id)
                .with_for_update()
            )
            if record is None:
                raise SubscriptionNotFoundError(subscription_id)

            data = _to_model(record).model_dump()
            data.update(changes)
            updated = Subscription.model_validate(data)

            for column, value in _to_columns(updated).items():
                if column in ("id", "created_at"):
                    continue
                setattr(record, column, value)

            await session.commit()
            await session.refresh(record)
            return _to_model(record)

    async def find_due_today(self, today: date) -> list[Subscription]:
        return await self._select(
            select(SubscriptionRecord).where(
                SubscriptionRecord.status == SubscriptionStatus.ACTIVE.value,
                SubscriptionRecord.is_completed.is_(False),
                SubscriptionRecord.next_due_date == today,
            )
        )

    async def find_due_between(self, start: date, end: date) -> list[Subscription]:
        return await self._select(
            select(SubscriptionRecord)
            .where(
                SubscriptionRecord.status == SubscriptionStatus.ACTIVE.value,
                SubscriptionRecord.is_completed.is_(False),
                SubscriptionRecord.next_due_date >= start,
                SubscriptionRecord.next_due_date <= end,
            )
            .order_by(SubscriptionRecord.next_due_date)
        )

    async def find_by_user(self, user_id: str) -> list[Subscription]:
        return await self._select(
            select(SubscriptionRecord)
            .where(SubscriptionRecord.user_id == user_id)
            .order_by(SubscriptionRecord.created_at.desc())
        )

    async def find_by_order(self, order_id: str) -> Subscription | None:
        async with self._session_maker() as session:
            record = await session.scalar(
                select(SubscriptionRecord).where(SubscriptionRecord.order_id == order_id)
            )
            return _to_model(record) if record else None

    async def find_by_status(self, statuses: Sequence[SubscriptionStatus]) -> list[Subscription]:
        return await self._select(
            select(SubscriptionRecord)
            .where(SubscriptionRecord.status.in_([s.value for s in statuses]))
            .order_by(SubscriptionRecord.created_at.desc())
        )

    async def find_all(self, filters: SubscriptionFilter) -> list[Subscription]:
        stmt = select(SubscriptionRecord)
        if filters.user_id:
            stmt = stmt.where(SubscriptionRecord.user_id == filters.user_id)
        if filters.order_id:
            stmt = stmt.where(SubscriptionRecord.order_id == filters.order_id)
        if filters.status:
            stmt = stmt.where(SubscriptionRecord.status == filters.status.value)
        if filters.payment_plan:
            stmt = stmt.where(SubscriptionRecord.payment_plan == filters.payment_plan.value)
        if filters.is_completed is not None:
            stmt = stmt.where(SubscriptionRecord.is_completed.is_(filters.is_completed))
        stmt = (
            stmt.order_by(SubscriptionRecord.created_at.desc())
            .offset(filters.offset)
            .limit(filters.limit)
        )
        return await self._select(stmt)

    async def _select(self, stmt: Any) -> list[Subscription]:
        async with self._session_maker() as session:
            result = await session.scalars(stmt)
            return [_to_model(record) for record in result.all()]
