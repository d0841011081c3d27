"""
Repository pattern for data access.

Handles database operations for budgets, budget alerts, signal events and
settings. Every write is a single statement; callers that need
check-then-insert semantics accept that the pair is best effort.
"""

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import Budget, BudgetAlert, BudgetPeriod, NotifyMethod, SignalEvent

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

NOTIFY_WEBHOOK_URL_KEY = "notify_webhook_url"


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching stored timestamps."""
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def _format_ts(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, TIMESTAMP_FORMAT)


_SCHEMA = """
    CREATE TABLE IF NOT EXISTS budgets (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        profile TEXT NOT NULL DEFAULT 'all',
        period TEXT NOT NULL CHECK(period IN ('daily', 'weekly', 'monthly')),
        amount_usd REAL NOT NULL,
        alert_threshold_pct INTEGER NOT NULL DEFAULT 80,
        notify_method TEXT NOT NULL DEFAULT 'dashboard',
        notify_url TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS budget_alerts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        budget_id INTEGER NOT NULL REFERENCES budgets(id) ON DELETE CASCADE,
        triggered_at TEXT NOT NULL,
        current_amount_usd REAL NOT NULL,
        threshold_pct INTEGER NOT NULL,
        notified INTEGER NOT NULL DEFAULT 0
    );

    CREATE INDEX IF NOT EXISTS idx_budget_alerts_budget_id ON budget_alerts(budget_id);
    CREATE INDEX IF NOT EXISTS idx_budget_alerts_triggered_at ON budget_alerts(triggered_at);

    CREATE TABLE IF NOT EXISTS signal_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        rule_id TEXT NOT NULL,
        profile TEXT NOT NULL DEFAULT 'all',
        fired_at TEXT NOT NULL,
        data TEXT NOT NULL DEFAULT '{}',
        acknowledged INTEGER NOT NULL DEFAULT 0
    );

    CREATE INDEX IF NOT EXISTS idx_signal_events_rule_profile
    ON signal_events(rule_id, profile, fired_at);

    CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
"""


class MonitorRepository:
    """Repository for the monitoring engine's relational state.

    Opens a short-lived connection per operation, so an instance can be
    shared between the workers and the route layer.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create all tables and indexes if they don't exist."""
        conn = get_connection(self.db_path)
        try:
            conn.executescript(_SCHEMA)
            conn.commit()
        finally:
            conn.close()

    # =========================================================================
    # Budgets
    # =========================================================================

    def create_budget(
        self,
        period: BudgetPeriod,
        amount_usd: float,
        profile: str = "all",
        alert_threshold_pct: int = 80,
        notify_method: NotifyMethod = NotifyMethod.DASHBOARD,
        notify_url: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Budget:
        """Insert a budget and return it with its assigned id.

        Raises:
            ValueError: If amount or threshold is not positive, or a
                non-dashboard notification has no URL
        """
        if amount_usd <= 0:
            raise ValueError("amount_usd must be > 0")
        if alert_threshold_pct <= 0:
            raise ValueError("alert_threshold_pct must be > 0")
        if notify_method != NotifyMethod.DASHBOARD and not notify_url:
            raise ValueError(f"notify_method '{notify_method.value}' requires notify_url")

        stamp = _format_ts(now or utcnow())
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT INTO budgets
                (profile, period, amount_usd, alert_threshold_pct,
                 notify_method, notify_url, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                profile,
                period.value,
                amount_usd,
                alert_threshold_pct,
                notify_method.value,
                notify_url,
                stamp,
                stamp
            ))
            conn.commit()
            budget_id = cursor.lastrowid
        finally:
            conn.close()
        return self.get_budget(budget_id)

    def get_budget(self, budget_id: int) -> Optional[Budget]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT * FROM budgets WHERE id = ?", (budget_id,)).fetchone()
            return _row_to_budget(row) if row else None
        finally:
            conn.close()

    def list_budgets(self) -> List[Budget]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("SELECT * FROM budgets ORDER BY id").fetchall()
            return [_row_to_budget(row) for row in rows]
        finally:
            conn.close()

    def update_budget(
        self,
        budget_id: int,
        amount_usd: Optional[float] = None,
        alert_threshold_pct: Optional[int] = None,
        notify_method: Optional[NotifyMethod] = None,
        notify_url: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Optional[Budget]:
        """Update the given fields of a budget, leaving the others unchanged.

        Returns:
            The updated budget, or None if it does not exist
        """
        if amount_usd is not None and amount_usd <= 0:
            raise ValueError("amount_usd must be > 0")
        if alert_threshold_pct is not None and alert_threshold_pct <= 0:
            raise ValueError("alert_threshold_pct must be > 0")

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE budgets SET
                    amount_usd = COALESCE(?, amount_usd),
                    alert_threshold_pct = COALESCE(?, alert_threshold_pct),
                    notify_method = COALESCE(?, notify_method),
                    notify_url = COALESCE(?, notify_url),
                    updated_at = ?
                WHERE id = ?
            """, (
                amount_usd,
                alert_threshold_pct,
                notify_method.value if notify_method else None,
                notify_url,
                _format_ts(now or utcnow()),
                budget_id
            ))
            conn.commit()
            if cursor.rowcount == 0:
                return None
        finally:
            conn.close()
        return self.get_budget(budget_id)

    def delete_budget(self, budget_id: int) -> bool:
        """Delete a budget and, through the foreign key, its alerts."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM budgets WHERE id = ?", (budget_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    # =========================================================================
    # Budget alerts
    # =========================================================================

    def has_recent_budget_alert(self, budget_id: int, threshold_pct: int, since: datetime) -> bool:
        """Check whether an alert for (budget, threshold) fired after ``since``."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT 1 FROM budget_alerts
                WHERE budget_id = ? AND threshold_pct = ? AND triggered_at > ?
                LIMIT 1
            """, (budget_id, threshold_pct, _format_ts(since))).fetchone()
            return row is not None
        finally:
            conn.close()

    def insert_budget_alert(
        self,
        budget_id: int,
        current_amount_usd: float,
        threshold_pct: int,
        triggered_at: Optional[datetime] = None
    ) -> BudgetAlert:
        triggered_at = triggered_at or utcnow()
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT INTO budget_alerts
                (budget_id, triggered_at, current_amount_usd, threshold_pct)
                VALUES (?, ?, ?, ?)
            """, (budget_id, _format_ts(triggered_at), current_amount_usd, threshold_pct))
            conn.commit()
            alert_id = cursor.lastrowid
        finally:
            conn.close()
        return BudgetAlert(
            id=alert_id,
            budget_id=budget_id,
            triggered_at=_parse_ts(_format_ts(triggered_at)),
            current_amount_usd=current_amount_usd,
            threshold_pct=threshold_pct,
            notified=False
        )

    def mark_alert_notified(self, alert_id: int) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("UPDATE budget_alerts SET notified = 1 WHERE id = ?", (alert_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def list_budget_alerts(self, budget_id: Optional[int] = None, limit: int = 50) -> List[BudgetAlert]:
        """Most recent budget alerts first, optionally for a single budget."""
        conn = get_connection(self.db_path)
        try:
            query = "SELECT * FROM budget_alerts"
            params: List[Any] = []
            if budget_id is not None:
                query += " WHERE budget_id = ?"
                params.append(budget_id)
            query += " ORDER BY triggered_at DESC, id DESC LIMIT ?"
            params.append(limit)
            return [_row_to_alert(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    # =========================================================================
    # Signal events
    # =========================================================================

    def has_recent_signal_event(self, rule_id: str, profile: str, since: datetime) -> bool:
        """Check for an unacknowledged event for (rule, profile) fired after ``since``."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT 1 FROM signal_events
                WHERE rule_id = ? AND profile = ? AND fired_at > ? AND acknowledged = 0
                LIMIT 1
            """, (rule_id, profile, _format_ts(since))).fetchone()
            return row is not None
        finally:
            conn.close()

    def insert_signal_event(
        self,
        rule_id: str,
        profile: str,
        data: Dict[str, Any],
        fired_at: Optional[datetime] = None
    ) -> SignalEvent:
        fired_at = fired_at or utcnow()
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT INTO signal_events (rule_id, profile, fired_at, data)
                VALUES (?, ?, ?, ?)
            """, (rule_id, profile, _format_ts(fired_at), json.dumps(data)))
            conn.commit()
            event_id = cursor.lastrowid
        finally:
            conn.close()
        return SignalEvent(
            id=event_id,
            rule_id=rule_id,
            profile=profile,
            fired_at=_parse_ts(_format_ts(fired_at)),
            data=data,
            acknowledged=False
        )

    def get_signal_event(self, event_id: int) -> Optional[SignalEvent]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT * FROM signal_events WHERE id = ?", (event_id,)).fetchone()
            return _row_to_signal(row) if row else None
        finally:
            conn.close()

    def list_signal_events(
        self,
        rule_id: Optional[str] = None,
        acknowledged: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[SignalEvent]:
        """List signal events, newest first, with optional filtering.

        Args:
            rule_id: Optional filter for a specific rule
            acknowledged: Optional filter on the acknowledged flag
            limit: Maximum number of events to return
            offset: Number of events to skip

        Returns:
            List of signal events ordered by fired_at (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = "SELECT * FROM signal_events"
            params: List[Any] = []
            conditions = []

            if rule_id:
                conditions.append("rule_id = ?")
                params.append(rule_id)
            if acknowledged is not None:
                conditions.append("acknowledged = ?")
                params.append(1 if acknowledged else 0)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY fired_at DESC, id DESC LIMIT ? OFFSET ?"
            params.extend([limit, offset])

            return [_row_to_signal(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def acknowledge_signal_event(self, event_id: int) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE signal_events SET acknowledged = 1 WHERE id = ?", (event_id,)
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def delete_signal_events_before(self, cutoff: datetime) -> int:
        """Delete signal events fired before ``cutoff``; returns the count removed."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM signal_events WHERE fired_at < ?", (_format_ts(cutoff),)
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    # =========================================================================
    # Settings
    # =========================================================================

    def get_setting(self, key: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
            return row["value"] if row else None
        finally:
            conn.close()

    def set_setting(self, key: str, value: str, now: Optional[datetime] = None) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """, (key, value, _format_ts(now or utcnow())))
            conn.commit()
        finally:
            conn.close()


def _row_to_budget(row: sqlite3.Row) -> Budget:
    return Budget(
        id=row["id"],
        profile=row["profile"],
        period=BudgetPeriod(row["period"]),
        amount_usd=row["amount_usd"],
        alert_threshold_pct=row["alert_threshold_pct"],
        notify_method=NotifyMethod(row["notify_method"]),
        notify_url=row["notify_url"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"])
    )


def _row_to_alert(row: sqlite3.Row) -> BudgetAlert:
    return BudgetAlert(
        id=row["id"],
        budget_id=row["budget_id"],
        triggered_at=_parse_ts(row["triggered_at"]),
        current_amount_usd=row["current_amount_usd"],
        threshold_pct=row["threshold_pct"],
        notified=bool(row["notified"])
    )


def _row_to_signal(row: sqlite3.Row) -> SignalEvent:
    return SignalEvent(
        id=row["id"],
        rule_id=row["rule_id"],
        profile=row["profile"],
        fired_at=_parse_ts(row["fired_at"]),
        data=json.loads(row["data"]) if row["data"] else {},
        acknowledged=bool(row["acknowledged"])
    )
