"""
Notification dispatch.

Delivery itself belongs to the notification service. The engine only hands
off typed events; a failed hand-off is logged and never fails the payment
that triggered it.
"""

from typing import Any

import structlog

from dropmarket.celery_app import celery_app
from dropmarket.settings import settings
from dropmarket.subscriptions.enums import NotificationType
from dropmarket.subscriptions.interfaces import Notifier

logger = structlog.get_logger(__name__)


class LoggingNotifier:
    """Notifier that only logs; default for local runs."""

    async def send(
        self, user_id: str, event_type: NotificationType, payload: dict[str, Any]
    ) -> None:
        logger.info(
            "notification.logged",
            user_id=user_id,
            event_type=event_type.value,
            payload=payload,
        )


class CeleryNotifier:
    """Publishes notification events to the notification service's Celery task."""

    def __init__(self, task_name: str | None = None, queue: str | None = None) -> None:
        self.task_name = task_name or settings.subscriptions.notification_task_name
        self.queue = queue or settings.subscriptions.notification_queue

    async def send(
        self, user_id: str, event_type: NotificationType, payload: dict[str, Any]
    ) -> None:
        celery_app.send_task(
            self.task_name,
            kwargs={"user_id": user_id, "event_type": event_type.value, "payload": payload},
            queue=self.queue,
        )


class NotificationDispatcher:
    """Fire-and-forget wrapper around a ``Notifier``."""

    def __init__(self, notifier: Notifier) -> None:
        self.notifier = notifier

    async def notify(
        self, user_id: str, event_type: NotificationType, payload: dict[str, Any]
    ) -> bool:
        try:
            await self.notifier.send(user_id, event_type, payload)
        except Exception as e:
            logger.warning(
                "notification.dispatch_failed",
                user_id=user_id,
                event_type=event_type.value,
                error=str(e),
            )
            return False
        logger.debug("notification.dispatched", user_id=user_id, event_type=event_type.value)
        return True
