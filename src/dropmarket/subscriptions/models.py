"""
Subscription engine data models.

Pydantic models shared by every store backend. Money is always ``Decimal``;
scheduled dates are calendar dates and payment timestamps are UTC datetimes.
"""

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from dropmarket.subscriptions.enums import (
    ActorRole,
    ConflictPriority,
    ConflictResolution,
    ConflictStatus,
    ConflictType,
    OrderStatus,
    PaymentFrequency,
    PaymentPlan,
    SubscriptionStatus,
    TransitionAction,
)


def utcnow() -> datetime:
    return datetime.now(UTC)


class EngineModel(BaseModel):
    """Base model for engine records."""

    model_config = ConfigDict(
        from_attributes=True,
        validate_assignment=True,
        use_enum_values=False,
    )


# ============================================================================
# Subscription
# ============================================================================


class Drop(EngineModel):
    """One scheduled partial payment."""

    index: int = Field(ge=0)
    scheduled_date: date
    amount: Decimal = Field(gt=0)
    is_paid: bool = False
    paid_at: datetime | None = None
    payment_reference: str | None = None
    retry_count: int = Field(default=0, ge=0)


class Subscription(EngineModel):
    """Recurring-payment wrapper around a single order."""

    id: str
    user_id: str
    order_id: str

    payment_plan: PaymentPlan
    frequency: PaymentFrequency | None = None
    total_amount: Decimal
    drop_amount: Decimal
    total_drops: int = Field(gt=0)

    drops_paid: int = Field(default=0, ge=0)
    amount_paid: Decimal = Decimal("0")
    drops: list[Drop] = Field(default_factory=list)

    start_date: date
    next_due_date: date | None = None
    end_date: date | None = None
    pause_until: date | None = None

    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    is_completed: bool = False
    notes: str | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None

    def next_unpaid_drop(self) -> Drop | None:
        """First unpaid drop in schedule order."""
        for drop in sorted(self.drops, key=lambda d: (d.scheduled_date, d.index)):
            if not drop.is_paid:
                return drop
        return None

    def unpaid_drops(self) -> list[Drop]:
        return [drop for drop in self.drops if not drop.is_paid]

    def paid_drops(self) -> list[Drop]:
        return [drop for drop in self.drops if drop.is_paid]

    @property
    def has_unpaid_drops(self) -> bool:
        return any(not drop.is_paid for drop in self.drops)

    def earliest_unpaid_date(self) -> date | None:
        drop = self.next_unpaid_drop()
        return drop.scheduled_date if drop else None

    def remaining_amount(self) -> Decimal:
        return sum((drop.amount for drop in self.unpaid_drops()), Decimal("0"))


class Actor(EngineModel):
    """Caller identity as seen by the engine."""

    id: str
    role: ActorRole = ActorRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

    @property
    def is_system(self) -> bool:
        return self.role == ActorRole.SYSTEM

    @classmethod
    def system(cls) -> "Actor":
        return cls(id="system", role=ActorRole.SYSTEM)


class ProcessDropOptions(EngineModel):
    """Options for a single drop execution."""

    force_mark_paid: bool = Field(
        False, description="Admin override: payment happened outside the balance system"
    )
    explicit_amount: Decimal | None = Field(
        None, gt=0, description="Admin override of the amount charged for this drop"
    )
    idempotency_ref: str | None = Field(None, description="Payment reference to record")
    expected_drop_index: int | None = Field(
        None, description="Refuse to run unless this drop is still the next unpaid one"
    )
    payment_method: str = "wallet"


class DropResult(EngineModel):
    """Outcome of a processed drop."""

    subscription: Subscription
    drop: Drop
    payment_reference: str
    completed: bool
    order_synced: bool = True


class SubscriptionFilter(EngineModel):
    """Query filter for listing subscriptions."""

    user_id: str | None = None
    order_id: str | None = None
    status: SubscriptionStatus | None = None
    payment_plan: PaymentPlan | None = None
    is_completed: bool | None = None
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0)


class SubscriptionUpdate(EngineModel):
    """Manual change requested through the service."""

    action: TransitionAction | None = None
    pause_until: date | None = None
    reason: str | None = None
    notes: str | None = None


# ============================================================================
# Order collaborator
# ============================================================================


class OrderPayment(EngineModel):
    """Payment entry appended to an order's history."""

    amount: Decimal
    method: str = "wallet"
    status: str = "completed"
    paid_at: datetime = Field(default_factory=utcnow)
    reference: str


class OrderSnapshot(EngineModel):
    """Read view of an order."""

    id: str
    user_id: str
    total_amount: Decimal
    paid_amount: Decimal = Decimal("0")
    remaining_amount: Decimal = Decimal("0")
    status: OrderStatus = OrderStatus.PENDING
    payment_plan: PaymentPlan = PaymentPlan.INSTALLMENT
    payments: list[OrderPayment] = Field(default_factory=list)


# ============================================================================
# Retries, sweeps and conflicts
# ============================================================================


class RetryJob(EngineModel):
    """Delayed retry of one drop."""

    subscription_id: str
    drop_index: int
    attempt: int = Field(ge=1)
    max_attempts: int = Field(ge=1)
    reason: str
    eligible_at: datetime

    @property
    def job_key(self) -> str:
        return f"retry:{self.subscription_id}:{self.drop_index}:{self.attempt}"


class RetryResult(EngineModel):
    """What happened when a retry job executed."""

    job_key: str
    outcome: str  # succeeded, skipped, rescheduled, exhausted, failed
    detail: str | None = None
    next_job: RetryJob | None = None


class SweepReport(EngineModel):
    """Summary of one automatic execution pass."""

    run_date: date
    due: int = 0
    processed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    retries_scheduled: list[str] = Field(default_factory=list)


class ConflictRecord(EngineModel):
    """Detected invariant violation awaiting or recording a resolution."""

    id: str
    subscription_id: str
    user_id: str
    conflict_type: ConflictType
    description: str
    priority: ConflictPriority
    status: ConflictStatus = ConflictStatus.PENDING
    resolution: ConflictResolution | None = None
    auto_attempts: int = 0
    details: dict[str, Any] = Field(default_factory=dict)
    detected_at: datetime = Field(default_factory=utcnow)
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_notes: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status == ConflictStatus.PENDING


class ConflictScanReport(EngineModel):
    """Summary of a periodic conflict scan."""

    scanned: int = 0
    detected: int = 0
    resolved: int = 0
    escalated: int = 0
    pending: int = 0
    errors: list[str] = Field(default_factory=list)
