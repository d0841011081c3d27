"""
Data models for storage layer.

Defines the rows read and written by the monitoring workers.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class BudgetPeriod(Enum):
    """Spend window a budget is measured over."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class NotifyMethod(Enum):
    """Where a budget alert is delivered."""
    DASHBOARD = "dashboard"
    SLACK = "slack"
    WEBHOOK = "webhook"


@dataclass(frozen=True)
class Budget:
    """Spend budget for a profile over a rolling period.
    
    Read-only to the budget monitor; created and edited by operators.
    """
    id: int
    profile: str
    period: BudgetPeriod
    amount_usd: float
    alert_threshold_pct: int = 80
    notify_method: NotifyMethod = NotifyMethod.DASHBOARD
    notify_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class BudgetAlert:
    """Record of a budget crossing one of its thresholds.
    
    At most one alert exists per (budget, threshold) per 24 hours.
    Only the notified flag changes after insertion.
    """
    id: int
    budget_id: int
    triggered_at: datetime
    current_amount_usd: float
    threshold_pct: int
    notified: bool = False


@dataclass(frozen=True)
class SignalEvent:
    """Persisted firing of an anomaly rule.
    
    ``data`` is the rule's evidence in its serialized form; use
    ``usage_sentinel.monitor.rules.evidence_from_payload`` to decode it.
    """
    id: int
    rule_id: str
    profile: str
    fired_at: datetime
    data: Dict[str, Any]
    acknowledged: bool = False
