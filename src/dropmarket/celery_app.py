"""
Celery application configuration.

Hosts the daily drop sweep, delayed payment retries, payment reminders and the
periodic conflict scan.
"""

from typing import Any

import structlog
from celery import Celery
from celery.schedules import crontab
from kombu import Queue

from dropmarket.settings import settings

celery_app = Celery(
    "dropmarket",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["dropmarket.subscriptions.tasks"],
)

celery_app.conf.update(
    # Task routing
    task_routes={
        "subscriptions.*": {"queue": "subscriptions"},
        settings.subscriptions.notification_task_name: {
            "queue": settings.subscriptions.notification_queue
        },
    },
    task_default_queue="default",
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("subscriptions", routing_key="subscriptions"),
        Queue(settings.subscriptions.notification_queue, routing_key="notifications"),
    ),
    # Task execution settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.celery.timezone,
    enable_utc=True,
    # Task result settings
    result_expires=3600,  # 1 hour
    task_track_started=True,
    task_time_limit=settings.celery.task_time_limit,
    task_soft_time_limit=settings.celery.task_soft_time_limit,
    # Worker settings
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,
    # Monitoring
    worker_send_task_events=True,
    task_send_sent_event=True,
)


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Register the recurring subscription jobs."""
    from dropmarket.subscriptions.tasks import (
        process_due_drops_task,
        scan_conflicts_task,
        send_payment_reminders_task,
    )

    config = settings.subscriptions

    # Daily drop sweep
    sender.add_periodic_task(
        crontab(hour=config.sweep_hour, minute=config.sweep_minute),
        process_due_drops_task.s(),
        name="subscriptions-process-due-drops",
    )

    # Reminders go out an hour after the sweep so paid drops are not reminded
    sender.add_periodic_task(
        crontab(hour=(config.sweep_hour + 1) % 24, minute=config.sweep_minute),
        send_payment_reminders_task.s(),
        name="subscriptions-send-payment-reminders",
    )

    sender.add_periodic_task(
        float(config.conflict_scan_interval_hours * 3600),
        scan_conflicts_task.s(),
        name="subscriptions-scan-conflicts",
    )

    logger = structlog.get_logger(__name__)
    logger.info(
        "celery.worker.configured",
        broker=settings.celery.broker_url,
        queues=["default", "subscriptions", config.notification_queue],
        periodic_tasks=[
            "subscriptions-process-due-drops",
            "subscriptions-send-payment-reminders",
            "subscriptions-scan-conflicts",
        ],
    )


if __name__ == "__main__":
    # For running worker directly: python -m dropmarket.celery_app worker
    celery_app.start()
