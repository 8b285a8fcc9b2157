"""
Tests for drop schedule generation.

Covers the plan shapes, pre-paid drop 0, and the rule that the final drop
absorbs the rounding remainder.
"""

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest

from dropmarket.subscriptions.enums import PaymentFrequency, PaymentPlan
from dropmarket.subscriptions.exceptions import (
    InvalidFrequencyError,
    ScheduleAllocationError,
    SubscriptionValidationError,
    UnsupportedPaymentPlanError,
)
from dropmarket.subscriptions.schedule import (
    INITIAL_PAYMENT_REFERENCE,
    generate_drop_schedule,
    resolve_shape,
    split_amount,
)

pytestmark = pytest.mark.unit

START = date(2025, 3, 1)


class TestResolveShape:
    """Test plan and frequency lookup."""

    @pytest.mark.parametrize(
        ("frequency", "drops", "interval"),
        [
            (PaymentFrequency.WEEKLY, 8, 7),
            (PaymentFrequency.BIWEEKLY, 4, 14),
            (PaymentFrequency.MONTHLY, 2, 30),
        ],
    )
    def test_installment_shapes(self, frequency, drops, interval):
        """Installment plans look up drop count and interval by frequency."""
        shape = resolve_shape(PaymentPlan.INSTALLMENT, frequency)
        assert shape.total_drops == drops
        assert shape.interval_days == interval

    def test_price_lock_ignores_frequency(self):
        """Price-lock is always two drops thirty days apart."""
        shape = resolve_shape(PaymentPlan.PRICE_LOCK, PaymentFrequency.WEEKLY)
        assert (shape.total_drops, shape.interval_days) == (2, 30)

    @pytest.mark.parametrize("plan", [PaymentPlan.PAY_NOW, PaymentPlan.PAY_LATER, "layaway"])
    def test_unsupported_plans_rejected(self, plan):
        """Plans without a drop schedule raise a configuration error."""
        with pytest.raises(UnsupportedPaymentPlanError) as exc_info:
            resolve_shape(plan, PaymentFrequency.WEEKLY)
        assert exc_info.value.error_code == "UNSUPPORTED_PAYMENT_PLAN"

    def test_installment_requires_frequency(self):
        with pytest.raises(InvalidFrequencyError):
            resolve_shape(PaymentPlan.INSTALLMENT, None)

    def test_unknown_frequency_rejected(self):
        with pytest.raises(InvalidFrequencyError):
            resolve_shape("pay_small_small", "daily")


class TestGenerateDropSchedule:
    """Test schedule generation scenarios."""

    def test_monthly_without_prior_payment(self):
        """10000 monthly: two drops of 5000 at day 0 and day 30."""
        schedule = generate_drop_schedule(
            Decimal("10000"), PaymentPlan.INSTALLMENT, PaymentFrequency.MONTHLY, start_date=START
        )

        assert schedule.total_drops == 2
        assert schedule.drop_amount == Decimal("5000")
        assert [d.amount for d in schedule.drops] == [Decimal("5000"), Decimal("5000")]
        assert [d.scheduled_date for d in schedule.drops] == [START, START + timedelta(days=30)]
        assert not any(d.is_paid for d in schedule.drops)
        assert schedule.next_due_date == START

    def test_weekly_with_prior_payment(self):
        """Prior payment becomes paid drop 0; the rest split evenly over seven drops."""
        schedule = generate_drop_schedule(
            Decimal("10000"),
            PaymentPlan.INSTALLMENT,
            PaymentFrequency.WEEKLY,
            amount_paid=Decimal("1250"),
            start_date=START,
        )

        first = schedule.drops[0]
        assert first.index == 0
        assert first.is_paid is True
        assert first.amount == Decimal("1250")
        assert first.payment_reference == INITIAL_PAYMENT_REFERENCE
        assert first.paid_at == datetime(2025, 3, 1, tzinfo=UTC)

        rest = schedule.drops[1:]
        assert len(rest) == 7
        assert all(d.amount == Decimal("1250") for d in rest)
        assert [d.scheduled_date for d in rest] == [
            START + timedelta(days=7 * i) for i in range(1, 8)
        ]
        assert schedule.drops_paid == 1
        assert schedule.amount_paid == Decimal("1250")
        assert schedule.next_due_date == START + timedelta(days=7)

    def test_last_drop_absorbs_remainder(self):
        """10000 left over three drops: 3334, 3334, 3332."""
        schedule = generate_drop_schedule(
            Decimal("12500"),
            PaymentPlan.INSTALLMENT,
            PaymentFrequency.BIWEEKLY,
            amount_paid=Decimal("2500"),
            start_date=START,
        )

        assert [d.amount for d in schedule.drops] == [
            Decimal("2500"),
            Decimal("3334"),
            Decimal("3334"),
            Decimal("3332"),
        ]
        assert schedule.drop_amount == Decimal("3334")

    def test_price_lock_schedule(self):
        schedule = generate_drop_schedule(
            Decimal("10001"), PaymentPlan.PRICE_LOCK, start_date=START
        )

        assert [d.amount for d in schedule.drops] == [Decimal("5001"), Decimal("5000")]
        assert schedule.drops[1].scheduled_date == START + timedelta(days=30)

    def test_explicit_paid_at_is_kept(self):
        paid_at = datetime(2025, 2, 27, 15, 30, tzinfo=UTC)
        schedule = generate_drop_schedule(
            "10000", "price_lock", amount_paid="4000", start_date=START, paid_at=paid_at
        )
        assert schedule.drops[0].paid_at == paid_at

    def test_dates_do_not_skip_weekends(self):
        """Drops land exactly one interval apart, whatever the weekday."""
        saturday = date(2025, 3, 8)
        schedule = generate_drop_schedule(
            "8000", PaymentPlan.INSTALLMENT, PaymentFrequency.WEEKLY, start_date=saturday
        )
        assert all(d.scheduled_date.weekday() == 5 for d in schedule.drops)

    @pytest.mark.parametrize(
        ("total", "paid"),
        [
            ("1000", "0"),
            ("1001", "0"),
            ("9999", "0"),
            ("10000", "3333"),
            ("12345.67", "0"),
            ("250000", "1"),
            ("999999", "500000"),
        ],
    )
    @pytest.mark.parametrize(
        ("plan", "frequency"),
        [
            (PaymentPlan.INSTALLMENT, PaymentFrequency.WEEKLY),
            (PaymentPlan.INSTALLMENT, PaymentFrequency.BIWEEKLY),
            (PaymentPlan.INSTALLMENT, PaymentFrequency.MONTHLY),
            (PaymentPlan.PRICE_LOCK, None),
        ],
    )
    def test_drop_amounts_sum_to_total(self, total, paid, plan, frequency):
        """No rounding drift: drops always add up to the order total."""
        schedule = generate_drop_schedule(
            Decimal(total), plan, frequency, amount_paid=Decimal(paid), start_date=START
        )

        assert sum(d.amount for d in schedule.drops) == Decimal(total)
        assert len(schedule.drops) == schedule.total_drops
        assert [d.index for d in schedule.drops] == list(range(schedule.total_drops))
        assert all(d.amount > 0 for d in schedule.drops)

    def test_unsupported_plan_rejected_before_scheduling(self):
        with pytest.raises(UnsupportedPaymentPlanError):
            generate_drop_schedule(Decimal("10000"), PaymentPlan.PAY_NOW)

    def test_non_positive_total_rejected(self):
        with pytest.raises(SubscriptionValidationError):
            generate_drop_schedule(Decimal("0"), PaymentPlan.PRICE_LOCK)

    def test_negative_prior_payment_rejected(self):
        with pytest.raises(SubscriptionValidationError):
            generate_drop_schedule("10000", PaymentPlan.PRICE_LOCK, amount_paid="-1")

    def test_fully_paid_order_rejected(self):
        with pytest.raises(SubscriptionValidationError) as exc_info:
            generate_drop_schedule("10000", PaymentPlan.PRICE_LOCK, amount_paid="10000")
        assert "already fully paid" in exc_info.value.message


class TestSplitAmount:
    """Test remainder allocation."""

    def test_even_split(self):
        assert split_amount(Decimal("9000"), 3) == [Decimal("3000")] * 3

    def test_uneven_split(self):
        assert split_amount(Decimal("10"), 3) == [Decimal("4"), Decimal("4"), Decimal("2")]

    def test_unallocatable_amount_raises(self):
        """Rounding up three units over five drops leaves nothing for the last one."""
        with pytest.raises(ScheduleAllocationError) as exc_info:
            split_amount(Decimal("3"), 5)
        assert exc_info.value.context["remaining_drops"] == 5
        assert exc_info.value.context["max_drops"] == 3

    def test_small_remainder_after_deposit_explains_fix(self):
        """Weekly plan with only 5 left to pay cannot spread it over 7 drops."""
        with pytest.raises(ScheduleAllocationError) as exc_info:
            generate_drop_schedule(
                "1000", PaymentPlan.INSTALLMENT, PaymentFrequency.WEEKLY, amount_paid="995"
            )

        error = exc_info.value
        assert error.error_code == "SCHEDULE_ALLOCATION_ERROR"
        assert error.context == {"remaining_amount": "5", "remaining_drops": 7, "max_drops": 5}
        assert error.recovery_hint == (
            "Choose a frequency with at most 5 remaining drops, "
            "or pay the remaining 5 in one payment"
        )
        assert error.to_dict()["recovery_hint"] == error.recovery_hint

    def test_small_remainder_fits_monthly_plan(self):
        schedule = generate_drop_schedule(
            "1000", PaymentPlan.INSTALLMENT, PaymentFrequency.MONTHLY, amount_paid="995"
        )

        assert [d.amount for d in schedule.drops] == [Decimal("995"), Decimal("5")]

    def test_zero_drops_raises(self):
        with pytest.raises(ScheduleAllocationError):
            split_amount(Decimal("100"), 0)
