"""
Tests for notification hand-off and the metrics collector.
"""

from unittest.mock import MagicMock, patch

import pytest

from dropmarket.subscriptions.enums import NotificationType
from dropmarket.subscriptions.metrics import SubscriptionMetrics
from dropmarket.subscriptions.notifications import (
    CeleryNotifier,
    LoggingNotifier,
    NotificationDispatcher,
)
from tests.subscriptions.factories import RecordingNotifier

pytestmark = pytest.mark.unit


@pytest.mark.asyncio
class TestNotificationDispatcher:
    """Test fire-and-forget delivery."""

    async def test_delivers(self):
        notifier = RecordingNotifier()

        delivered = await NotificationDispatcher(notifier).notify(
            "user-1", NotificationType.PAYMENT_DUE, {"drop_index": 1}
        )

        assert delivered is True
        assert notifier.sent == [("user-1", NotificationType.PAYMENT_DUE, {"drop_index": 1})]

    async def test_failure_is_swallowed(self):
        notifier = RecordingNotifier()
        notifier.fail = True

        delivered = await NotificationDispatcher(notifier).notify(
            "user-1", NotificationType.PAYMENT_SUCCESS, {}
        )

        assert delivered is False

    async def test_logging_notifier(self):
        assert await LoggingNotifier().send("user-1", NotificationType.PAYMENT_DUE, {}) is None

    async def test_celery_notifier_publishes_task(self):
        with patch("dropmarket.subscriptions.notifications.celery_app") as mock_app:
            await CeleryNotifier(task_name="notify.deliver", queue="notify").send(
                "user-1", NotificationType.SUBSCRIPTION_PAUSED, {"subscription_id": "sub-1"}
            )

        mock_app.send_task.assert_called_once_with(
            "notify.deliver",
            kwargs={
                "user_id": "user-1",
                "event_type": "subscription_paused",
                "payload": {"subscription_id": "sub-1"},
            },
            queue="notify",
        )


def mock_meter() -> MagicMock:
    meter = MagicMock()
    meter.create_counter.side_effect = lambda **kwargs: MagicMock(name=kwargs["name"])
    meter.create_histogram.side_effect = lambda **kwargs: MagicMock(name=kwargs["name"])
    return meter


class TestSubscriptionMetrics:
    """Test instrument recording against a mock meter."""

    def test_drop_processed_records_amount_and_completion(self):
        metrics = SubscriptionMetrics(meter=mock_meter())

        metrics.record_drop_processed("sub-1", 5000.0, completed=True, forced=False)

        metrics.drop_processed_counter.add.assert_called_with(
            1, {"forced": False, "completed": True}
        )
        metrics.drop_amount_histogram.record.assert_called_with(
            5000.0, {"forced": False, "completed": True}
        )
        metrics.subscription_completed_counter.add.assert_called_with(1)

    def test_conflict_resolution_attributes(self):
        metrics = SubscriptionMetrics(meter=mock_meter())

        metrics.record_conflict_resolved("schedule_conflict", "adjust_schedule", automatic=True)

        metrics.conflict_resolved_counter.add.assert_called_once_with(
            1,
            {"type": "schedule_conflict", "resolution": "adjust_schedule", "automatic": True},
        )
