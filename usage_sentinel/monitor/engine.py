"""
Wiring for a running monitor process.

Builds the clients, repository, workers and live-event primitives from a
MonitorConfig. The route layer receives the rate limiter and broadcaster
from an engine instance rather than from module globals.
"""

import logging
from datetime import timedelta
from typing import Callable, List

from usage_sentinel.clients.loki import LokiClient
from usage_sentinel.clients.loki_tail import LokiTail
from usage_sentinel.clients.notifier import Notifier
from usage_sentinel.clients.prometheus import PrometheusClient
from usage_sentinel.config.loader import MonitorConfig
from usage_sentinel.core.fanout import Broadcaster
from usage_sentinel.core.rate_limiter import RateLimiter
from usage_sentinel.storage.repository import MonitorRepository
from .budget_monitor import BudgetMonitor
from .rules import FailureTracker, RuleContext, build_rules
from .signal_evaluator import SignalEvaluator
from .tasks import BackgroundTasks

logger = logging.getLogger(__name__)


class MonitorEngine:
    """All long-lived monitor components for one process."""

    def __init__(self, config: MonitorConfig):
        self.config = config
        backends = config.backends
        signals = config.signals

        self.repository = MonitorRepository(config.storage.db_path)
        self.metrics = PrometheusClient(backends.prometheus_url, backends.query_timeout, backends.range_timeout)
        self.logs = LokiClient(backends.loki_url, backends.query_timeout, backends.range_timeout)
        self.notifier = Notifier()
        self.tasks = BackgroundTasks()
        self.tracker = FailureTracker()

        self.rate_limiter = RateLimiter(config.rate_limit.capacity, config.rate_limit.refill_rate)
        self.broadcaster = Broadcaster(config.fanout.max_subscribers)
        self.tail = LokiTail(backends.loki_url, self.broadcaster.publish)

        self.budget_monitor = BudgetMonitor(
            self.repository,
            self.metrics,
            notifier=self.notifier,
            interval=config.budget_monitor.interval_seconds,
            tasks=self.tasks
        )
        self.signal_evaluator = SignalEvaluator(
            self.repository,
            self.metrics,
            rules=build_rules(RuleContext(self.metrics, self.logs, self.tracker, signals)),
            tracker=self.tracker,
            notifier=self.notifier,
            interval=signals.interval_seconds,
            dedup_window=timedelta(minutes=signals.dedup_window_minutes),
            retention=timedelta(days=signals.retention_days),
            cleanup_interval=timedelta(seconds=signals.cleanup_interval_seconds),
            tasks=self.tasks
        )
        self._stop_fns: List[Callable[[], None]] = []

    def start(self, with_tail: bool = True) -> None:
        """Initialize storage and start the workers (and the log tail)."""
        self.repository.initialize_schema()
        self._stop_fns = [self.budget_monitor.start(), self.signal_evaluator.start()]
        if with_tail:
            self.tail.start()

    async def stop(self) -> None:
        """Stop scheduling ticks, let in-flight work finish and close clients."""
        for stop in self._stop_fns:
            stop()
        await self.budget_monitor.join()
        await self.signal_evaluator.join()
        await self.tail.stop()
        await self.tasks.drain()
        await self.metrics.aclose()
        await self.logs.aclose()
        await self.notifier.aclose()
        logger.info("Monitor engine stopped")
