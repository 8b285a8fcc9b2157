"""
Celery tasks for the drop engine.

Each task runs one async engine operation to completion on a fresh event loop
and returns a JSON-friendly summary.
"""

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

import structlog
from celery import Task

from dropmarket.celery_app import celery_app
from dropmarket.redis_client import redis_manager
from dropmarket.subscriptions.engine import get_subscription_engine
from dropmarket.subscriptions.exceptions import RetryNotEligibleError
from dropmarket.subscriptions.models import RetryJob
from dropmarket.subscriptions.retry import RETRY_TASK_NAME

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def run_async(operation: Awaitable[T]) -> T:
    """Run ``operation`` on a new event loop, then drop the Redis connections it opened."""

    async def _main() -> T:
        try:
            return await operation
        finally:
            await redis_manager.release_connections()

    return asyncio.run(_main())


@celery_app.task(name="subscriptions.process_due_drops")
def process_due_drops_task() -> dict[str, Any]:
    """Daily sweep over drops due today."""
    engine = get_subscription_engine()
    report = run_async(engine.sweep.run_sweep())
    return report.model_dump(mode="json")


@celery_app.task(bind=True, name=RETRY_TASK_NAME, max_retries=None)
def retry_drop_payment_task(self: Task, job: dict[str, Any]) -> dict[str, Any]:
    """Execute one delayed retry; re-queued if it fires before its backoff."""
    retry_job = RetryJob.model_validate(job)
    engine = get_subscription_engine()
    try:
        result = run_async(engine.retry.execute_retry(retry_job))
    except RetryNotEligibleError as e:
        logger.info("subscription.retry.requeued", job_key=retry_job.job_key)
        raise self.retry(exc=e, eta=retry_job.eligible_at)
    return result.model_dump(mode="json")


@celery_app.task(name="subscriptions.send_payment_reminders")
def send_payment_reminders_task() -> dict[str, Any]:
    """Remind owners of upcoming drops."""
    engine = get_subscription_engine()
    sent = run_async(engine.sweep.send_payment_reminders())
    return {"status": "ok", "sent": sent}


@celery_app.task(name="subscriptions.scan_conflicts")
def scan_conflicts_task() -> dict[str, Any]:
    """Periodic conflict detection over active and paused subscriptions."""
    engine = get_subscription_engine()
    report = run_async(engine.conflicts.scan_all())
    return report.model_dump(mode="json")


__all__ = [
    "process_due_drops_task",
    "retry_drop_payment_task",
    "scan_conflicts_task",
    "send_payment_reminders_task",
]
