"""
Drop schedule generation.

Turns an order total into an ordered list of drops. Per-drop amounts are
rounded up to whole currency units and the final drop absorbs the remainder,
so the drop amounts always sum to the order total exactly.

Dates advance by a fixed interval from the start date. Weekends and holidays
are not skipped.
"""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal

from dropmarket.subscriptions.enums import PaymentFrequency, PaymentPlan
from dropmarket.subscriptions.exceptions import (
    InvalidFrequencyError,
    ScheduleAllocationError,
    SubscriptionValidationError,
    UnsupportedPaymentPlanError,
)
from dropmarket.subscriptions.models import Drop
from dropmarket.subscriptions.money import ZERO, ceil_units, to_decimal

INITIAL_PAYMENT_REFERENCE = "initial_payment"


@dataclass(frozen=True)
class DropShape:
    """Number of drops and spacing for a plan."""

    total_drops: int
    interval_days: int


INSTALLMENT_SHAPES: dict[PaymentFrequency, DropShape] = {
    PaymentFrequency.WEEKLY: DropShape(total_drops=8, interval_days=7),
    PaymentFrequency.BIWEEKLY: DropShape(total_drops=4, interval_days=14),
    PaymentFrequency.MONTHLY: DropShape(total_drops=2, interval_days=30),
}

PRICE_LOCK_SHAPE = DropShape(total_drops=2, interval_days=30)


@dataclass
class DropSchedule:
    """Generated schedule."""

    drop_amount: Decimal
    total_drops: int
    drops: list[Drop] = field(default_factory=list)

    @property
    def drops_paid(self) -> int:
        return sum(1 for drop in self.drops if drop.is_paid)

    @property
    def amount_paid(self) -> Decimal:
        return sum((drop.amount for drop in self.drops if drop.is_paid), ZERO)

    @property
    def next_due_date(self) -> date | None:
        unpaid = [drop.scheduled_date for drop in self.drops if not drop.is_paid]
        return min(unpaid) if unpaid else None


def resolve_shape(
    payment_plan: PaymentPlan | str, frequency: PaymentFrequency | str | None = None
) -> DropShape:
    """
    Look up the drop count and interval for a plan.

    Raises:
        UnsupportedPaymentPlanError: Plan has no drop schedule
        InvalidFrequencyError: Installment plan without a known frequency
    """
    try:
        plan = PaymentPlan(payment_plan)
    except ValueError:
        raise UnsupportedPaymentPlanError(str(payment_plan))

    if plan == PaymentPlan.PRICE_LOCK:
        return PRICE_LOCK_SHAPE

    if plan != PaymentPlan.INSTALLMENT:
        raise UnsupportedPaymentPlanError(plan.value)

    if frequency is None:
        raise InvalidFrequencyError(None)
    try:
        return INSTALLMENT_SHAPES[PaymentFrequency(frequency)]
    except ValueError:
        raise InvalidFrequencyError(str(frequency))


def split_amount(remaining: Decimal, drop_count: int) -> list[Decimal]:
    """
    Split ``remaining`` into ``drop_count`` amounts.

    Every drop but the last is ``ceil(remaining / drop_count)``; the last drop
    takes whatever is left.

    Raises:
        ScheduleAllocationError: The last drop would be zero or negative
    """
    if drop_count < 1:
        raise ScheduleAllocationError("No drops left to allocate", remaining, drop_count)

    per_drop = ceil_units(remaining / drop_count)
    last = remaining - per_drop * (drop_count - 1)
    if last <= ZERO:
        raise ScheduleAllocationError(
            f"Cannot spread {remaining} over {drop_count} drops",
            remaining,
            drop_count,
            max_drops=max_allocatable_drops(remaining, drop_count),
        )
    return [per_drop] * (drop_count - 1) + [last]


def max_allocatable_drops(remaining: Decimal, drop_count: int) -> int:
    """Largest count up to ``drop_count`` that leaves the last drop positive."""
    for count in range(drop_count, 0, -1):
        if remaining - ceil_units(remaining / count) * (count - 1) > ZERO:
            return count
    return 0


def generate_drop_schedule(
    total_amount: Decimal | int | str,
    payment_plan: PaymentPlan | str,
    frequency: PaymentFrequency | str | None = None,
    amount_paid: Decimal | int | str = ZERO,
    start_date: date | None = None,
    paid_at: datetime | None = None,
) -> DropSchedule:
    """
    Generate the drop schedule for an order.

    Args:
        total_amount: Amount owed on the order
        payment_plan: Installment or price-lock plan
        frequency: Installment frequency (ignored for price-lock)
        amount_paid: Amount already paid; recorded as a paid drop 0
        start_date: Date of drop 0 (defaults to today)
        paid_at: Timestamp stamped on the pre-paid drop 0

    Returns:
        DropSchedule whose drop amounts sum to ``total_amount``
    """
    shape = resolve_shape(payment_plan, frequency)

    total = to_decimal(total_amount)
    already_paid = to_decimal(amount_paid)
    start = start_date or date.today()
    interval = timedelta(days=shape.interval_days)

    if total <= ZERO:
        raise SubscriptionValidationError(
            "Subscription total must be positive", context={"total_amount": str(total)}
        )
    if already_paid < ZERO:
        raise SubscriptionValidationError(
            "Amount already paid cannot be negative", context={"amount_paid": str(already_paid)}
        )

    drops: list[Drop] = []
    has_prior_payment = already_paid > ZERO

    if has_prior_payment:
        remaining = total - already_paid
        if remaining <= ZERO:
            raise SubscriptionValidationError(
                "Order is already fully paid",
                context={"total_amount": str(total), "amount_paid": str(already_paid)},
            )
        drops.append(
            Drop(
                index=0,
                scheduled_date=start,
                amount=already_paid,
                is_paid=True,
                paid_at=paid_at or datetime.combine(start, time.min, tzinfo=UTC),
                payment_reference=INITIAL_PAYMENT_REFERENCE,
            )
        )
        amounts = split_amount(remaining, shape.total_drops - 1)
    else:
        amounts = split_amount(total, shape.total_drops)

    offset = len(drops)
    for position, amount in enumerate(amounts):
        index = position + offset
        drops.append(Drop(index=index, scheduled_date=start + interval * index, amount=amount))

    return DropSchedule(drop_amount=amounts[0], total_drops=shape.total_drops, drops=drops)
