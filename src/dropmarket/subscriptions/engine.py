"""
Engine assembly.

Builds the processor, retry coordinator, sweep, conflict service and
subscription service around caller-provided stores, and keeps one engine per
process for the Celery tasks and the CLI.
"""

import importlib
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog

from dropmarket.redis_client import redis_manager
from dropmarket.settings import settings
from dropmarket.subscriptions.conflicts import (
    ConflictDetector,
    ConflictRegistry,
    ConflictResolver,
    ConflictService,
)
from dropmarket.subscriptions.interfaces import (
    BalanceStore,
    LockManager,
    Notifier,
    OrderStore,
    RetryQueue,
    SubscriptionStore,
)
from dropmarket.subscriptions.lifecycle import SystemActions
from dropmarket.subscriptions.locks import InMemoryLockManager, RedisLockManager
from dropmarket.subscriptions.metrics import SubscriptionMetrics, get_subscription_metrics
from dropmarket.subscriptions.money import MoneyFormatter
from dropmarket.subscriptions.notifications import NotificationDispatcher
from dropmarket.subscriptions.processor import DropProcessor
from dropmarket.subscriptions.retry import CeleryRetryQueue, RetryCoordinator
from dropmarket.subscriptions.service import SubscriptionService
from dropmarket.subscriptions.state_machine import SubscriptionStateMachine, state_machine
from dropmarket.subscriptions.sweep import AutomaticExecutionScheduler

logger = structlog.get_logger(__name__)


def utc_clock() -> datetime:
    return datetime.now(UTC)


@dataclass
class SubscriptionEngine:
    """Every engine component, wired to the same stores and clock."""

    subscriptions: SubscriptionStore
    orders: OrderStore
    balances: BalanceStore
    retry_queue: RetryQueue
    locks: LockManager
    registry: ConflictRegistry
    actions: SystemActions
    processor: DropProcessor
    retry: RetryCoordinator
    sweep: AutomaticExecutionScheduler
    conflicts: ConflictService
    service: SubscriptionService
    machine: SubscriptionStateMachine
    metrics: SubscriptionMetrics
    money: MoneyFormatter
    clock: Callable[[], datetime]


def default_lock_manager() -> LockManager:
    """Lock manager selected by ``SUBSCRIPTIONS__LOCK_BACKEND``."""
    backend = settings.subscriptions.lock_backend.lower()
    if backend == "redis":
        return RedisLockManager(redis_manager.get_client())
    if backend == "memory":
        return InMemoryLockManager()
    raise ValueError(f"Unknown subscription lock backend: {backend}")


def build_subscription_engine(
    subscriptions: SubscriptionStore,
    orders: OrderStore,
    balances: BalanceStore,
    notifier: Notifier,
    retry_queue: RetryQueue | None = None,
    locks: LockManager | None = None,
    clock: Callable[[], datetime] | None = None,
    metrics: SubscriptionMetrics | None = None,
    money: MoneyFormatter | None = None,
) -> SubscriptionEngine:
    """
    Wire an engine around the given stores.

    Args:
        subscriptions: Subscription persistence
        orders: Order service adapter
        balances: Spendable balance adapter
        notifier: Notification hand-off
        retry_queue: Delayed retry queue (defaults to Celery ETA tasks)
        locks: Per-subscription lock manager (defaults to the configured backend)
        clock: Source of the current UTC time
        metrics: Metrics collector (defaults to the shared one)
        money: Currency formatter (defaults to the configured currency and locale)
    """
    clock = clock or utc_clock
    metrics = metrics or get_subscription_metrics()
    money = money or MoneyFormatter()
    retry_queue = retry_queue if retry_queue is not None else CeleryRetryQueue()
    locks = locks if locks is not None else default_lock_manager()

    notifications = NotificationDispatcher(notifier)
    registry = ConflictRegistry(metrics=metrics, clock=clock)
    actions = SystemActions(subscriptions, notifications, money)

    processor = DropProcessor(
        subscriptions=subscriptions,
        orders=orders,
        balances=balances,
        notifications=notifications,
        locks=locks,
        registry=registry,
        metrics=metrics,
        money=money,
        clock=clock,
    )
    retry = RetryCoordinator(
        queue=retry_queue,
        subscriptions=subscriptions,
        processor=processor,
        actions=actions,
        locks=locks,
        metrics=metrics,
        clock=clock,
    )
    sweep = AutomaticExecutionScheduler(
        subscriptions=subscriptions,
        balances=balances,
        processor=processor,
        retry=retry,
        registry=registry,
        notifications=notifications,
        metrics=metrics,
        money=money,
        clock=clock,
    )
    conflicts = ConflictService(
        subscriptions=subscriptions,
        detector=ConflictDetector(orders, balances),
        resolver=ConflictResolver(registry, actions, metrics, clock),
        registry=registry,
        actions=actions,
        locks=locks,
        metrics=metrics,
        clock=clock,
    )
    service = SubscriptionService(
        subscriptions=subscriptions,
        orders=orders,
        balances=balances,
        processor=processor,
        machine=state_machine,
        notifications=notifications,
        locks=locks,
        money=money,
        clock=clock,
    )

    return SubscriptionEngine(
        subscriptions=subscriptions,
        orders=orders,
        balances=balances,
        retry_queue=retry_queue,
        locks=locks,
        registry=registry,
        actions=actions,
        processor=processor,
        retry=retry,
        sweep=sweep,
        conflicts=conflicts,
        service=service,
        machine=state_machine,
        metrics=metrics,
        money=money,
        clock=clock,
    )


_engine: SubscriptionEngine | None = None


def set_subscription_engine(engine: SubscriptionEngine | None) -> None:
    """Register the process-wide engine (``None`` clears it)."""
    global _engine
    _engine = engine


def get_subscription_engine() -> SubscriptionEngine:
    """
    Get the process-wide engine.

    Built on first use from ``SUBSCRIPTIONS__ENGINE_FACTORY`` when nothing was
    registered.

    Raises:
        RuntimeError: No engine registered and no factory configured
    """
    global _engine
    if _engine is None:
        factory_path = settings.subscriptions.engine_factory
        if not factory_path:
            raise RuntimeError(
                "Subscription engine not configured. Call set_subscription_engine() "
                "or set SUBSCRIPTIONS__ENGINE_FACTORY."
            )
        _engine = _load_factory(factory_path)()
        logger.info("subscription.engine.built", factory=factory_path)
    return _engine


def _load_factory(path: str) -> Callable[[], SubscriptionEngine]:
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise RuntimeError(f"Engine factory must look like 'module:callable', got {path!r}")
    module = importlib.import_module(module_name)
    factory: Callable[[], SubscriptionEngine] = getattr(module, attribute)
    return factory
