"""
Subscription engine exceptions.

Errors are grouped by how callers must react to them:

- validation errors are rejected synchronously and never retried
- authorization errors are rejected synchronously
- transient errors (insufficient funds) feed the bounded retry path
- integrity errors are fatal for the invocation and raise a conflict record
"""

from typing import Any


class SubscriptionEngineError(Exception):
    """
    Base subscription engine error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "SUBSCRIPTION_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


# ============================================================================
# Configuration
# ============================================================================


class SubscriptionConfigurationError(SubscriptionEngineError):
    """Plan or frequency configuration that the engine cannot schedule."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "SUBSCRIPTION_CONFIG_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class UnsupportedPaymentPlanError(SubscriptionConfigurationError):
    """Payment plan has no drop schedule shape."""

    def __init__(self, payment_plan: str) -> None:
        super().__init__(
            f"Unsupported payment plan for subscription: {payment_plan}",
            context={"payment_plan": payment_plan},
            recovery_hint="Subscriptions support the pay-small-small and price-lock plans only",
        )
        self.error_code = "UNSUPPORTED_PAYMENT_PLAN"


class InvalidFrequencyError(SubscriptionConfigurationError):
    """Installment plan requested with an unknown frequency."""

    def __init__(self, frequency: str | None) -> None:
        super().__init__(
            f"Invalid payment frequency: {frequency}",
            context={"frequency": frequency},
            recovery_hint="Use weekly, biweekly or monthly",
        )
        self.error_code = "INVALID_FREQUENCY"


# ============================================================================
# Validation
# ============================================================================


class SubscriptionValidationError(SubscriptionEngineError):
    """Request rejected synchronously; never retried."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "SUBSCRIPTION_VALIDATION_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class InvalidSubscriptionAmountError(SubscriptionValidationError):
    """Order total outside the accepted subscription bounds."""

    def __init__(self, message: str, amount: Any) -> None:
        super().__init__(message, context={"amount": str(amount)})
        self.error_code = "INVALID_SUBSCRIPTION_AMOUNT"


class ScheduleAllocationError(SubscriptionValidationError):
    """Remaining amount cannot be spread over the remaining drops."""

    def __init__(
        self,
        message: str,
        remaining_amount: Any,
        remaining_drops: int,
        max_drops: int = 0,
    ) -> None:
        if max_drops > 0:
            hint = (
                f"Choose a frequency with at most {max_drops} remaining drops, "
                f"or pay the remaining {remaining_amount} in one payment"
            )
        else:
            hint = f"Pay the remaining {remaining_amount} in one payment"
        super().__init__(
            message,
            context={
                "remaining_amount": str(remaining_amount),
                "remaining_drops": remaining_drops,
                "max_drops": max_drops,
            },
            recovery_hint=hint,
        )
        self.error_code = "SCHEDULE_ALLOCATION_ERROR"


class OrderNotEligibleError(SubscriptionValidationError):
    """Order missing, not owned by the caller, or otherwise not subscribable."""

    def __init__(self, message: str, order_id: str) -> None:
        super().__init__(message, context={"order_id": order_id})
        self.error_code = "ORDER_NOT_ELIGIBLE"
        self.status_code = 404


class SubscriptionAlreadyExistsError(SubscriptionValidationError):
    """A subscription is already linked to the order."""

    def __init__(self, order_id: str, subscription_id: str) -> None:
        super().__init__(
            "A subscription already exists for this order",
            context={"order_id": order_id, "subscription_id": subscription_id},
        )
        self.error_code = "SUBSCRIPTION_ALREADY_EXISTS"
        self.status_code = 409


class SubscriptionNotFoundError(SubscriptionValidationError):
    """Subscription not found error."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(
            "Subscription not found",
            context={"subscription_id": subscription_id},
            recovery_hint="Verify the subscription ID and ensure it exists",
        )
        self.error_code = "SUBSCRIPTION_NOT_FOUND"
        self.status_code = 404


class SubscriptionAlreadyCompletedError(SubscriptionValidationError):
    """Every drop has been paid already."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(
            "Subscription is already completed",
            context={"subscription_id": subscription_id},
        )
        self.error_code = "SUBSCRIPTION_ALREADY_COMPLETED"


class SubscriptionNotActiveError(SubscriptionValidationError):
    """Drops can only be processed on ACTIVE subscriptions."""

    def __init__(self, subscription_id: str, status: str) -> None:
        super().__init__(
            f"Cannot process drop for {status} subscription",
            context={"subscription_id": subscription_id, "status": status},
        )
        self.error_code = "SUBSCRIPTION_NOT_ACTIVE"


class NoPendingDropsError(SubscriptionValidationError):
    """No unpaid drop remains in the schedule."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__("No pending drops found", context={"subscription_id": subscription_id})
        self.error_code = "NO_PENDING_DROPS"


class StaleDropError(SubscriptionValidationError):
    """The drop a caller expected to pay is no longer the next unpaid drop."""

    def __init__(self, subscription_id: str, expected_index: int, actual_index: int) -> None:
        super().__init__(
            "Drop has already been processed",
            context={
                "subscription_id": subscription_id,
                "expected_drop_index": expected_index,
                "next_drop_index": actual_index,
            },
        )
        self.error_code = "STALE_DROP"
        self.status_code = 409


class DuplicatePaymentReferenceError(SubscriptionValidationError):
    """Payment reference was already used for a paid drop."""

    def __init__(self, subscription_id: str, reference: str) -> None:
        super().__init__(
            "Payment has already been processed",
            context={"subscription_id": subscription_id, "payment_reference": reference},
        )
        self.error_code = "DUPLICATE_PAYMENT_REFERENCE"
        self.status_code = 409


class InvalidPauseDurationError(SubscriptionValidationError):
    """Requested pause is shorter or longer than allowed."""

    def __init__(self, days: int, min_days: int, max_days: int) -> None:
        super().__init__(
            f"Pause duration must be between {min_days} and {max_days} days",
            context={"requested_days": days, "min_days": min_days, "max_days": max_days},
        )
        self.error_code = "INVALID_PAUSE_DURATION"


class InvalidTransitionError(SubscriptionValidationError):
    """State machine refused a transition."""

    def __init__(
        self,
        current_state: str,
        requested_state: str,
        action: str,
        recovery_hint: str | None = None,
    ) -> None:
        super().__init__(
            f"Invalid transition: cannot {action} from {current_state} to {requested_state}. "
            "Conditions were not met.",
            context={
                "current_state": current_state,
                "requested_state": requested_state,
                "action": action,
            },
            recovery_hint=recovery_hint,
        )
        self.error_code = "INVALID_SUBSCRIPTION_TRANSITION"
        self.current_state = current_state
        self.requested_state = requested_state
        self.action = action


class ConflictNotFoundError(SubscriptionValidationError):
    """Conflict record not found."""

    def __init__(self, conflict_id: str) -> None:
        super().__init__("Conflict not found", context={"conflict_id": conflict_id})
        self.error_code = "CONFLICT_NOT_FOUND"
        self.status_code = 404


# ============================================================================
# Authorization
# ============================================================================


class SubscriptionAuthorizationError(SubscriptionEngineError):
    """Actor lacks permission for the requested action."""

    def __init__(self, message: str, actor_id: str, subscription_id: str | None = None) -> None:
        context: dict[str, Any] = {"actor_id": actor_id}
        if subscription_id:
            context["subscription_id"] = subscription_id
        super().__init__(message, "SUBSCRIPTION_FORBIDDEN", status_code=403, context=context)


# ============================================================================
# Transient
# ============================================================================


class TransientPaymentError(SubscriptionEngineError):
    """Recoverable failure routed into the retry path by automatic execution."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "TRANSIENT_PAYMENT_ERROR",
            status_code=402,
            context=context,
            recovery_hint=recovery_hint,
        )


class InsufficientFundsError(TransientPaymentError):
    """Spendable balance is below the drop amount."""

    def __init__(self, user_id: str, required: Any, available: Any) -> None:
        super().__init__(
            f"Insufficient wallet balance. Required: {required}, Available: {available}",
            context={"user_id": user_id, "required": str(required), "available": str(available)},
            recovery_hint="Top up the wallet and retry the drop",
        )
        self.error_code = "INSUFFICIENT_FUNDS"
        self.required = required
        self.available = available


class SubscriptionLockedError(TransientPaymentError):
    """Another worker holds the subscription lock."""

    def __init__(self, subscription_id: str, timeout: float) -> None:
        super().__init__(
            "Subscription is being processed by another worker",
            context={"subscription_id": subscription_id, "timeout_seconds": timeout},
        )
        self.error_code = "SUBSCRIPTION_LOCKED"
        self.status_code = 409


class RetryNotEligibleError(SubscriptionEngineError):
    """A retry job fired before its backoff delay elapsed."""

    def __init__(self, job_key: str, eligible_at: Any, now: Any) -> None:
        super().__init__(
            "Retry job executed before its eligible time",
            "RETRY_NOT_ELIGIBLE",
            status_code=500,
            context={"job_key": job_key, "eligible_at": str(eligible_at), "now": str(now)},
        )


# ============================================================================
# Integrity
# ============================================================================


class SubscriptionIntegrityError(SubscriptionEngineError):
    """Linked record missing; fatal for the invocation and never retried."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "SUBSCRIPTION_INTEGRITY_ERROR",
            status_code=500,
            context=context,
            recovery_hint=recovery_hint or "A conflict record was raised for investigation",
        )


class LinkedOrderNotFoundError(SubscriptionIntegrityError):
    """Subscription references an order that does not exist."""

    def __init__(self, subscription_id: str, order_id: str) -> None:
        super().__init__(
            "Associated order not found",
            context={"subscription_id": subscription_id, "order_id": order_id},
        )
        self.error_code = "LINKED_ORDER_NOT_FOUND"


class BalanceAccountNotFoundError(SubscriptionIntegrityError):
    """Subscription owner has no balance account."""

    def __init__(self, user_id: str, subscription_id: str | None = None) -> None:
        context = {"user_id": user_id}
        if subscription_id:
            context["subscription_id"] = subscription_id
        super().__init__("User wallet not found", context=context)
        self.error_code = "BALANCE_ACCOUNT_NOT_FOUND"
