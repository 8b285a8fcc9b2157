"""
Retry coordinator.

Failed automatic drop executions are retried with exponential backoff: retry
*n* becomes eligible ``retry_backoff_base ** n`` hours after the failure.
After ``max_retry_attempts`` failed retries the subscription is paused and the
owner gets the final failure notice. A retry job re-checks the subscription
when it runs, so jobs for cancelled or completed subscriptions are no-ops.

Failure bookkeeping writes the drop list back, so it runs under the same
per-subscription lock as the drop processor.
"""

import heapq
import itertools
from collections.abc import Callable
from datetime import datetime, timedelta

import structlog

from dropmarket.celery_app import celery_app
from dropmarket.settings import settings
from dropmarket.subscriptions.enums import SubscriptionStatus
from dropmarket.subscriptions.exceptions import (
    RetryNotEligibleError,
    SubscriptionIntegrityError,
    SubscriptionValidationError,
)
from dropmarket.subscriptions.interfaces import LockManager, RetryQueue, SubscriptionStore
from dropmarket.subscriptions.lifecycle import SystemActions
from dropmarket.subscriptions.metrics import SubscriptionMetrics
from dropmarket.subscriptions.models import (
    Actor,
    Drop,
    ProcessDropOptions,
    RetryJob,
    RetryResult,
    Subscription,
)
from dropmarket.subscriptions.processor import DropProcessor

logger = structlog.get_logger(__name__)

RETRY_TASK_NAME = "subscriptions.retry_drop_payment"


class InMemoryRetryQueue:
    """Delayed queue ordered by eligibility time."""

    def __init__(self) -> None:
        self._heap: list[tuple[datetime, int, RetryJob]] = []
        self._keys: set[str] = set()
        self._counter = itertools.count()

    async def enqueue(self, job: RetryJob) -> None:
        if job.job_key in self._keys:
            logger.debug("subscription.retry.duplicate_job", job_key=job.job_key)
            return
        self._keys.add(job.job_key)
        heapq.heappush(self._heap, (job.eligible_at, next(self._counter), job))

    def pop_due(self, now: datetime) -> list[RetryJob]:
        """Remove and return jobs whose eligible time has passed."""
        due: list[RetryJob] = []
        while self._heap and self._heap[0][0] <= now:
            _, _, job = heapq.heappop(self._heap)
            self._keys.discard(job.job_key)
            due.append(job)
        return due

    def pending(self) -> list[RetryJob]:
        return [job for _, _, job in sorted(self._heap)]

    def __len__(self) -> int:
        return len(self._heap)


class CeleryRetryQueue:
    """Enqueues retries as Celery tasks with an ETA; the job key is the task id."""

    def __init__(self, task_name: str = RETRY_TASK_NAME) -> None:
        self.task_name = task_name

    async def enqueue(self, job: RetryJob) -> None:
        celery_app.send_task(
            self.task_name,
            kwargs={"job": job.model_dump(mode="json")},
            eta=job.eligible_at,
            task_id=job.job_key,
        )


class RetryCoordinator:
    """Schedules, executes and exhausts drop retries."""

    def __init__(
        self,
        queue: RetryQueue,
        subscriptions: SubscriptionStore,
        processor: DropProcessor,
        actions: SystemActions,
        locks: LockManager,
        metrics: SubscriptionMetrics,
        clock: Callable[[], datetime],
        max_attempts: int | None = None,
        backoff_base: int | None = None,
    ) -> None:
        self.queue = queue
        self.subscriptions = subscriptions
        self.processor = processor
        self.actions = actions
        self.locks = locks
        self.metrics = metrics
        self.clock = clock
        self.max_attempts = max_attempts or settings.subscriptions.max_retry_attempts
        self.backoff_base = backoff_base or settings.subscriptions.retry_backoff_base

    def compute_delay(self, attempt: int) -> timedelta:
        """Delay before retry ``attempt``."""
        return timedelta(hours=self.backoff_base**attempt)

    async def schedule_retry(
        self, subscription_id: str, drop_index: int, attempt: int, reason: str
    ) -> RetryJob:
        job = RetryJob(
            subscription_id=subscription_id,
            drop_index=drop_index,
            attempt=attempt,
            max_attempts=self.max_attempts,
            reason=reason,
            eligible_at=self.clock() + self.compute_delay(attempt),
        )
        await self.queue.enqueue(job)
        self.metrics.record_retry_scheduled(attempt)
        logger.info(
            "subscription.retry.scheduled",
            subscription_id=subscription_id,
            drop_index=drop_index,
            attempt=attempt,
            max_attempts=self.max_attempts,
            eligible_at=job.eligible_at.isoformat(),
            reason=reason,
        )
        return job

    async def handle_failure(
        self, subscription_id: str, drop_index: int, failed_attempt: int, reason: str
    ) -> RetryJob | None:
        """
        React to a failed automatic attempt.

        ``failed_attempt`` is 0 for the sweep's own attempt and *n* for retry *n*.
        Must not be called while holding the subscription's lock.
        Returns the next job, or None once the retry budget is spent.
        """
        async with self.locks.hold(subscription_id):
            subscription = await self._bump_retry_count(subscription_id, drop_index)
            if failed_attempt >= self.max_attempts:
                await self._exhaust(
                    subscription, subscription_id, drop_index, failed_attempt, reason
                )
                return None

        return await self.schedule_retry(subscription_id, drop_index, failed_attempt + 1, reason)

    async def _exhaust(
        self,
        subscription: Subscription | None,
        subscription_id: str,
        drop_index: int,
        attempts: int,
        reason: str,
    ) -> None:
        self.metrics.record_retry_exhausted()
        logger.warning(
            "subscription.retry.exhausted",
            subscription_id=subscription_id,
            drop_index=drop_index,
            attempts=attempts,
            reason=reason,
        )
        if subscription is None or subscription.status != SubscriptionStatus.ACTIVE:
            return
        drop = self._drop(subscription, drop_index)
        if drop is not None and drop.is_paid:
            # Paid by another caller since the failure
            return
        await self.actions.pause_for_payment_failure(
            subscription, reason=reason, drop=drop, attempts=attempts
        )

    async def execute_retry(self, job: RetryJob) -> RetryResult:
        """
        Run one retry job.

        Raises:
            RetryNotEligibleError: The job fired before its backoff delay
        """
        now = self.clock()
        if now < job.eligible_at:
            raise RetryNotEligibleError(job.job_key, job.eligible_at, now)

        subscription = await self.subscriptions.get_by_id(job.subscription_id)
        if subscription is None:
            return self._skipped(job, "subscription not found")
        if subscription.status != SubscriptionStatus.ACTIVE or subscription.is_completed:
            return self._skipped(job, f"subscription is {subscription.status.value}")
        drop = self._drop(subscription, job.drop_index)
        if drop is None or drop.is_paid:
            return self._skipped(job, "drop already paid")

        reference = (
            f"retry_{job.attempt}_{job.subscription_id}_{job.drop_index}_{int(now.timestamp())}"
        )
        try:
            await self.processor.process_next_drop(
                job.subscription_id,
                Actor.system(),
                ProcessDropOptions(idempotency_ref=reference, expected_drop_index=job.drop_index),
            )
        except SubscriptionIntegrityError as e:
            logger.error("subscription.retry.integrity_error", job_key=job.job_key, error=e.message)
            return RetryResult(job_key=job.job_key, outcome="failed", detail=e.message)
        except SubscriptionValidationError as e:
            return self._skipped(job, e.message)
        except Exception as e:
            next_job = await self.handle_failure(
                job.subscription_id, job.drop_index, job.attempt, job.reason
            )
            return RetryResult(
                job_key=job.job_key,
                outcome="rescheduled" if next_job else "exhausted",
                detail=str(e),
                next_job=next_job,
            )

        logger.info("subscription.retry.succeeded", job_key=job.job_key, attempt=job.attempt)
        return RetryResult(job_key=job.job_key, outcome="succeeded")

    async def run_due(self, queue: InMemoryRetryQueue) -> list[RetryResult]:
        """Execute every eligible job of an in-process queue."""
        return [await self.execute_retry(job) for job in queue.pop_due(self.clock())]

    async def _bump_retry_count(
        self, subscription_id: str, drop_index: int
    ) -> Subscription | None:
        subscription = await self.subscriptions.get_by_id(subscription_id)
        if subscription is None:
            return None
        drop = self._drop(subscription, drop_index)
        if drop is None or drop.is_paid:
            return subscription
        drops = [
            d.model_copy(update={"retry_count": d.retry_count + 1}) if d.index == drop_index else d
            for d in subscription.drops
        ]
        return await self.subscriptions.update(subscription_id, {"drops": drops})

    @staticmethod
    def _drop(subscription: Subscription, drop_index: int) -> Drop | None:
        for drop in subscription.drops:
            if drop.index == drop_index:
                return drop
        return None

    @staticmethod
    def _skipped(job: RetryJob, detail: str) -> RetryResult:
        logger.info("subscription.retry.skipped", job_key=job.job_key, detail=detail)
        return RetryResult(job_key=job.job_key, outcome="skipped", detail=detail)
