"""
Best-effort alert delivery.

Sends budget alerts and signals to Slack or a generic webhook. Delivery
failures are logged, never raised, so a broken sink cannot fail a worker
tick.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

NOTIFY_TIMEOUT = 10.0


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


_SLACK_EMOJI = {
    Severity.INFO: ":information_source:",
    Severity.WARNING: ":warning:",
    Severity.CRITICAL: ":rotating_light:",
}

_SLACK_COLOR = {
    Severity.INFO: "good",
    Severity.WARNING: "warning",
    Severity.CRITICAL: "danger",
}


@dataclass(frozen=True)
class Notification:
    """A message bound for one notification target."""
    method: str  # "dashboard", "slack" or "webhook"
    title: str
    message: str
    target: Optional[str] = None
    severity: Severity = Severity.INFO


class Notifier:
    """Delivers notifications over HTTP."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = NOTIFY_TIMEOUT):
        self._client = client or httpx.AsyncClient()
        self.timeout = timeout

    async def notify(self, notification: Notification) -> bool:
        """Deliver ``notification``.

        Dashboard notifications need no delivery: the alert row is already
        what the dashboard shows.

        Returns:
            True if an external sink accepted the notification
        """
        if notification.method == "dashboard":
            return False

        if not notification.target:
            logger.error("method=%s requires a URL but none was provided", notification.method)
            return False

        if notification.method == "slack":
            body = _slack_body(notification)
        elif notification.method == "webhook":
            body = {
                "title": notification.title,
                "message": notification.message,
                "severity": notification.severity.value,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        else:
            logger.error("Unknown notification method: %s", notification.method)
            return False

        try:
            response = await self._client.post(notification.target, json=body, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.error("Failed to send %s notification: %s", notification.method, e)
            return False

        if response.status_code >= 400:
            logger.error(
                "%s target returned %d: %s",
                notification.method, response.status_code, response.text[:200]
            )
            return False
        return True

    async def aclose(self) -> None:
        await self._client.aclose()


def _slack_body(notification: Notification) -> dict:
    emoji = _SLACK_EMOJI.get(notification.severity, ":information_source:")
    return {
        "text": f"{emoji} *{notification.title}*",
        "attachments": [
            {
                "color": _SLACK_COLOR.get(notification.severity, "good"),
                "text": notification.message,
                "footer": "usage-sentinel",
                "ts": int(datetime.now(timezone.utc).timestamp()),
            }
        ],
    }
