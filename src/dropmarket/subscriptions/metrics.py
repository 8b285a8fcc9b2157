"""
Subscription engine metrics and monitoring
"""

import structlog
from opentelemetry.metrics import Counter, Histogram, Meter

from dropmarket.telemetry import get_meter

logger = structlog.get_logger(__name__)


class SubscriptionMetrics:
    """Subscription engine metrics collector"""

    def __init__(self, meter: Meter | None = None) -> None:
        self.meter = meter or get_meter("subscriptions")

        # Drop metrics
        self.drop_processed_counter = self._create_counter(
            name="subscriptions.drop.processed",
            description="Number of drops paid",
        )
        self.drop_failed_counter = self._create_counter(
            name="subscriptions.drop.failed",
            description="Number of failed drop executions",
        )
        self.drop_amount_histogram = self._create_histogram(
            name="subscriptions.drop.amount",
            description="Drop amounts",
            unit="currency_unit",
        )
        self.subscription_completed_counter = self._create_counter(
            name="subscriptions.completed",
            description="Number of subscriptions fully paid",
        )

        # Retry metrics
        self.retry_scheduled_counter = self._create_counter(
            name="subscriptions.retry.scheduled",
            description="Number of drop retries scheduled",
        )
        self.retry_exhausted_counter = self._create_counter(
            name="subscriptions.retry.exhausted",
            description="Subscriptions paused after exhausting retries",
        )

        # Conflict metrics
        self.conflict_detected_counter = self._create_counter(
            name="subscriptions.conflict.detected",
            description="Number of conflicts detected",
        )
        self.conflict_resolved_counter = self._create_counter(
            name="subscriptions.conflict.resolved",
            description="Number of conflicts resolved",
        )

        # Sweep metrics
        self.sweep_duration_histogram = self._create_histogram(
            name="subscriptions.sweep.duration",
            description="Automatic execution sweep duration",
            unit="ms",
        )

    def record_drop_processed(
        self, subscription_id: str, amount: float, completed: bool, forced: bool
    ) -> None:
        """Record a paid drop"""
        attributes = {"forced": forced, "completed": completed}
        self.drop_processed_counter.add(1, attributes)
        self.drop_amount_histogram.record(amount, attributes)
        if completed:
            self.subscription_completed_counter.add(1)
        logger.debug("subscription.metrics.drop_processed", subscription_id=subscription_id)

    def record_drop_failed(self, error_code: str) -> None:
        """Record a failed drop execution"""
        self.drop_failed_counter.add(1, {"error_code": error_code})

    def record_retry_scheduled(self, attempt: int) -> None:
        self.retry_scheduled_counter.add(1, {"attempt": attempt})

    def record_retry_exhausted(self) -> None:
        self.retry_exhausted_counter.add(1)

    def record_conflict_detected(self, conflict_type: str, priority: str) -> None:
        self.conflict_detected_counter.add(1, {"type": conflict_type, "priority": priority})

    def record_conflict_resolved(
        self, conflict_type: str, resolution: str, automatic: bool
    ) -> None:
        self.conflict_resolved_counter.add(
            1, {"type": conflict_type, "resolution": resolution, "automatic": automatic}
        )

    def record_sweep(self, duration_ms: float, due: int, processed: int) -> None:
        """Record a finished sweep"""
        self.sweep_duration_histogram.record(duration_ms, {"due": due, "processed": processed})

    def _create_counter(self, name: str, description: str, unit: str = "1") -> Counter:
        return self.meter.create_counter(name=name, description=description, unit=unit)

    def _create_histogram(self, name: str, description: str, unit: str = "1") -> Histogram:
        return self.meter.create_histogram(name=name, description=description, unit=unit)


_metrics: SubscriptionMetrics | None = None


def get_subscription_metrics() -> SubscriptionMetrics:
    """Get the shared metrics collector."""
    global _metrics
    if _metrics is None:
        _metrics = SubscriptionMetrics()
    return _metrics


__all__ = ["SubscriptionMetrics", "get_subscription_metrics"]
