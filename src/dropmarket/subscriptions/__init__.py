"""
Drop subscriptions.

An order on the installment or price-lock plan is paid through a fixed
schedule of drops. This package generates the schedule, executes drops,
retries failures, and keeps subscriptions consistent with their orders.
"""

from dropmarket.subscriptions.engine import (
    SubscriptionEngine,
    build_subscription_engine,
    get_subscription_engine,
    set_subscription_engine,
)
from dropmarket.subscriptions.enums import (
    ActorRole,
    ConflictPriority,
    ConflictResolution,
    ConflictStatus,
    ConflictType,
    NotificationType,
    PaymentFrequency,
    PaymentPlan,
    SubscriptionStatus,
    TransitionAction,
)
from dropmarket.subscriptions.exceptions import (
    InsufficientFundsError,
    InvalidTransitionError,
    SubscriptionAuthorizationError,
    SubscriptionEngineError,
    SubscriptionIntegrityError,
    SubscriptionNotFoundError,
    SubscriptionValidationError,
    TransientPaymentError,
)
from dropmarket.subscriptions.models import (
    Actor,
    ConflictRecord,
    Drop,
    DropResult,
    OrderSnapshot,
    ProcessDropOptions,
    RetryJob,
    Subscription,
    SubscriptionFilter,
    SubscriptionUpdate,
    SweepReport,
)
from dropmarket.subscriptions.schedule import generate_drop_schedule
from dropmarket.subscriptions.state_machine import SubscriptionStateMachine, state_machine

__all__ = [
    # Engine
    "SubscriptionEngine",
    "build_subscription_engine",
    "get_subscription_engine",
    "set_subscription_engine",
    # Enums
    "ActorRole",
    "ConflictPriority",
    "ConflictResolution",
    "ConflictStatus",
    "ConflictType",
    "NotificationType",
    "PaymentFrequency",
    "PaymentPlan",
    "SubscriptionStatus",
    "TransitionAction",
    # Exceptions
    "InsufficientFundsError",
    "InvalidTransitionError",
    "SubscriptionAuthorizationError",
    "SubscriptionEngineError",
    "SubscriptionIntegrityError",
    "SubscriptionNotFoundError",
    "SubscriptionValidationError",
    "TransientPaymentError",
    # Models
    "Actor",
    "ConflictRecord",
    "Drop",
    "DropResult",
    "OrderSnapshot",
    "ProcessDropOptions",
    "RetryJob",
    "Subscription",
    "SubscriptionFilter",
    "SubscriptionUpdate",
    "SweepReport",
    # Core
    "SubscriptionStateMachine",
    "generate_drop_schedule",
    "state_machine",
]
