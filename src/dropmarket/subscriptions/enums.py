"""
Subscription engine enumerations.
"""

from enum import Enum


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    EXPIRED = "expired"


class PaymentPlan(str, Enum):
    """Order payment plans.

    Only ``INSTALLMENT`` and ``PRICE_LOCK`` produce drop schedules.
    """

    PAY_NOW = "pay_now"
    INSTALLMENT = "pay_small_small"
    PRICE_LOCK = "price_lock"
    PAY_LATER = "pay_later"


class PaymentFrequency(str, Enum):
    """Installment cadence."""

    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class ActorRole(str, Enum):
    """Who is asking the engine to act."""

    ADMIN = "admin"
    USER = "user"
    SYSTEM = "system"


class TransitionAction(str, Enum):
    """Named state machine actions."""

    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    COMPLETE = "complete"
    REACTIVATE = "reactivate"


class OrderStatus(str, Enum):
    """Order statuses the engine reads and advances."""

    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class ConflictType(str, Enum):
    """Detected invariant violations."""

    PAYMENT_MISMATCH = "payment_mismatch"
    DUPLICATE_PAYMENT = "duplicate_payment"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    SCHEDULE_CONFLICT = "schedule_conflict"
    STATUS_MISMATCH = "status_mismatch"
    ORDER_CONFLICT = "order_conflict"
    WALLET_DISCREPANCY = "wallet_discrepancy"


class ConflictStatus(str, Enum):
    """Conflict record lifecycle."""

    PENDING = "pending"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class ConflictPriority(str, Enum):
    """Conflict triage priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ConflictResolution(str, Enum):
    """Resolution strategies applied to a conflict."""

    MANUAL_REVIEW = "manual_review"
    FORCE_RECONCILE = "force_reconcile"
    PAUSE_SUBSCRIPTION = "pause_subscription"
    CANCEL_SUBSCRIPTION = "cancel_subscription"
    ADJUST_SCHEDULE = "adjust_schedule"


class NotificationType(str, Enum):
    """Events delivered through the notifier."""

    PAYMENT_DUE = "payment_due"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED_FINAL = "payment_failed_final"
    SUBSCRIPTION_COMPLETED = "subscription_completed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
