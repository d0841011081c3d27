"""
Signal evaluation.

Every tick, each rule is evaluated for each active profile unless an
unacknowledged event for the same (rule, profile) fired within the dedup
window. Query failures are counted per rule and surfaced through the
``query_failure`` rule. Once a day, old events are purged.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from usage_sentinel.clients.base import MetricsBackend
from usage_sentinel.clients.notifier import Notification, Notifier
from usage_sentinel.errors import BackendError
from usage_sentinel.storage.models import SignalEvent
from usage_sentinel.storage.repository import NOTIFY_WEBHOOK_URL_KEY, MonitorRepository, utcnow
from . import queries
from .rules import FailureTracker, SignalRule, to_payload
from .tasks import BackgroundTasks
from .worker import PeriodicWorker

logger = logging.getLogger(__name__)

SIGNAL_CHECK_INTERVAL = 60.0
CLEANUP_INTERVAL = timedelta(hours=24)
RETENTION = timedelta(days=30)
DEDUP_WINDOW = timedelta(hours=1)

ALL_PROFILES = "all"


class SignalEvaluator(PeriodicWorker):
    """Periodic worker that runs the anomaly rules and persists firings."""

    name = "signal-evaluator"

    def __init__(
        self,
        repository: MonitorRepository,
        metrics: MetricsBackend,
        rules: List[SignalRule],
        tracker: FailureTracker,
        notifier: Optional[Notifier] = None,
        interval: float = SIGNAL_CHECK_INTERVAL,
        dedup_window: timedelta = DEDUP_WINDOW,
        retention: timedelta = RETENTION,
        cleanup_interval: timedelta = CLEANUP_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
        tasks: Optional[BackgroundTasks] = None
    ):
        super().__init__(interval)
        self.repository = repository
        self.metrics = metrics
        self.rules = rules
        self.tracker = tracker
        self.notifier = notifier
        self.dedup_window = dedup_window
        self.retention = retention
        self.cleanup_interval = cleanup_interval
        self.clock = clock
        self.tasks = tasks or BackgroundTasks()
        self._last_cleanup: Optional[datetime] = None

    async def tick(self) -> None:
        self._maybe_cleanup()
        await self.evaluate_all()

    async def active_profiles(self) -> List[str]:
        """Profiles currently reporting cost, or ``["all"]`` if none or on failure."""
        try:
            result = await self.metrics.query(queries.active_profiles())
        except BackendError as e:
            logger.warning("Profile discovery failed, falling back to 'all': %s", e)
            return [ALL_PROFILES]
        profiles = [s.labels.get("profile") for s in result.series]
        profiles = [p for p in profiles if isinstance(p, str) and p]
        return profiles or [ALL_PROFILES]

    async def evaluate_all(self) -> List[SignalEvent]:
        """Run one full evaluation pass.

        Returns:
            Signal events recorded during this pass
        """
        profiles = await self.active_profiles()
        recorded = []
        for rule in self.rules:
            rule_profiles = [ALL_PROFILES] if rule.profile_agnostic else profiles
            for profile in rule_profiles:
                try:
                    event = await self.evaluate_pair(rule, profile)
                except Exception:
                    logger.exception("Error evaluating rule %s for profile %s", rule.id, profile)
                    continue
                if event is not None:
                    recorded.append(event)
        return recorded

    async def evaluate_pair(self, rule: SignalRule, profile: str) -> Optional[SignalEvent]:
        """Evaluate one (rule, profile) pair and persist a firing.

        Returns:
            The recorded event, or None if skipped, not fired or failed
        """
        now = self.clock()
        if self.repository.has_recent_signal_event(rule.id, profile, now - self.dedup_window):
            return None

        try:
            outcome = await rule.evaluate(profile)
        except (BackendError, ValueError) as e:
            failures = self.tracker.record_failure(rule.id)
            logger.warning(
                "Rule %s query failed for profile %s (%d consecutive): %s",
                rule.id, profile, failures, e
            )
            return None
        self.tracker.record_success(rule.id)

        if not outcome.fired:
            return None

        payload = to_payload(outcome.evidence)
        event = self.repository.insert_signal_event(rule.id, profile, payload, fired_at=now)
        logger.info("Signal fired: %s / profile=%s %s", rule.id, profile, payload)
        self._notify(rule, profile)
        return event

    def _notify(self, rule: SignalRule, profile: str) -> None:
        if self.notifier is None:
            return
        target = self.repository.get_setting(NOTIFY_WEBHOOK_URL_KEY)
        if not target:
            return
        notification = Notification(
            method="webhook",
            target=target,
            title=f"Signal: {rule.name} ({profile})",
            message=rule.description,
            severity=rule.severity
        )
        self.tasks.spawn(self.notifier.notify(notification), name=f"signal-{rule.id}-{profile}")

    def cleanup(self) -> int:
        """Delete events older than the retention period."""
        removed = self.repository.delete_signal_events_before(self.clock() - self.retention)
        if removed:
            logger.info("Purged %d signal events older than %d days", removed, self.retention.days)
        return removed

    def _maybe_cleanup(self) -> None:
        now = self.clock()
        if self._last_cleanup is not None and now - self._last_cleanup < self.cleanup_interval:
            return
        self._last_cleanup = now
        try:
            self.cleanup()
        except Exception:
            logger.exception("Signal event cleanup failed")
