"""
Budget threshold monitoring.

Every tick, each budget's spend over its period is compared against the
budget's alert threshold and the hard 100% line. Each threshold is checked
independently and alerts at most once per 24 hours.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from usage_sentinel.clients.base import MetricsBackend
from usage_sentinel.clients.notifier import Notification, Notifier, Severity
from usage_sentinel.errors import BackendError
from usage_sentinel.storage.models import Budget, BudgetAlert
from usage_sentinel.storage.repository import MonitorRepository, utcnow
from . import queries
from .tasks import BackgroundTasks
from .worker import PeriodicWorker

logger = logging.getLogger(__name__)

BUDGET_CHECK_INTERVAL = 60.0
ALERT_DEDUP_WINDOW = timedelta(hours=24)
OVERAGE_THRESHOLD = 100


class BudgetMonitor(PeriodicWorker):
    """Periodic worker that raises budget alerts."""

    name = "budget-monitor"

    def __init__(
        self,
        repository: MonitorRepository,
        metrics: MetricsBackend,
        notifier: Optional[Notifier] = None,
        interval: float = BUDGET_CHECK_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
        tasks: Optional[BackgroundTasks] = None
    ):
        super().__init__(interval)
        self.repository = repository
        self.metrics = metrics
        self.notifier = notifier
        self.clock = clock
        self.tasks = tasks or BackgroundTasks()

    async def tick(self) -> None:
        budgets = self.repository.list_budgets()
        for budget in budgets:
            try:
                await self.check_budget(budget)
            except Exception:
                logger.exception("Error checking budget %s", budget.id)

    async def current_spend(self, budget: Budget) -> float:
        """Spend for the budget's profile over its period; 0 if the backend fails."""
        window = queries.period_window(budget.period.value)
        try:
            result = await self.metrics.query(queries.spend(budget.profile, window))
            return result.scalar()
        except (BackendError, ValueError) as e:
            logger.warning("Spend query failed for budget %s, treating as 0: %s", budget.id, e)
            return 0.0

    async def check_budget(self, budget: Budget) -> List[BudgetAlert]:
        """Evaluate one budget and record any new alerts.

        Returns:
            Alerts inserted during this check
        """
        if budget.amount_usd <= 0:
            logger.warning("Skipping budget %s with non-positive amount", budget.id)
            return []

        spend = await self.current_spend(budget)
        pct = spend / budget.amount_usd * 100
        now = self.clock()

        fired = []
        for threshold in dict.fromkeys([budget.alert_threshold_pct, OVERAGE_THRESHOLD]):
            if pct < threshold:
                continue
            if self.repository.has_recent_budget_alert(budget.id, threshold, now - ALERT_DEDUP_WINDOW):
                continue

            alert = self.repository.insert_budget_alert(budget.id, spend, threshold, triggered_at=now)
            fired.append(alert)
            logger.info(
                "Budget alert: %s budget %s $%.2f / $%.2f (%.1f%%) - threshold %d%%",
                budget.period.value, budget.id, spend, budget.amount_usd, pct, threshold
            )
            self._notify(budget, alert, pct)
        return fired

    def _notify(self, budget: Budget, alert: BudgetAlert, pct: float) -> None:
        if self.notifier is None:
            return
        notification = Notification(
            method=budget.notify_method.value,
            target=budget.notify_url,
            title=f"Budget {alert.threshold_pct}% reached ({budget.profile})",
            message=(
                f"{budget.period.value.capitalize()} spend ${alert.current_amount_usd:.2f} "
                f"of ${budget.amount_usd:.2f} ({pct:.1f}%)"
            ),
            severity=Severity.CRITICAL if alert.threshold_pct >= OVERAGE_THRESHOLD else Severity.WARNING
        )
        self.tasks.spawn(self._deliver(alert, notification), name=f"budget-alert-{alert.id}")

    async def _deliver(self, alert: BudgetAlert, notification: Notification) -> None:
        if await self.notifier.notify(notification):
            self.repository.mark_alert_notified(alert.id)
