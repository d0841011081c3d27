"""
Live log tail.

Subscribes to Loki's websocket tail endpoint and hands every parsed batch
of events to a callback, typically ``Broadcaster.publish``.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import websockets

logger = logging.getLogger(__name__)

DEFAULT_TAIL_QUERY = '{service_name="claude-code"}'
RECONNECT_DELAY = 3.0

EventCallback = Callable[[List[Dict[str, Any]]], Any]


def parse_tail_response(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Flatten a tail frame into events keyed by nanosecond ``timestamp``.

    Streams whose labels carry ``event_name`` already hold the event
    metadata; otherwise the line itself is decoded as JSON, falling back
    to ``raw`` for plain text lines.
    """
    events = []
    for stream in data.get("streams") or []:
        labels = stream.get("stream") or {}
        for ts_nano, line in stream.get("values", []):
            if labels.get("event_name"):
                events.append({"timestamp": ts_nano, **labels})
                continue
            try:
                decoded = json.loads(line)
            except (TypeError, ValueError):
                decoded = None
            if isinstance(decoded, dict):
                events.append({"timestamp": ts_nano, **decoded})
            else:
                events.append({"timestamp": ts_nano, "raw": line})
    return events


def build_tail_url(base_url: str, query: str = DEFAULT_TAIL_QUERY, limit: int = 100) -> str:
    ws_base = base_url.rstrip("/").replace("http", "ws", 1)
    params = urlencode({
        "query": query,
        "delay_for": 0,
        "limit": limit,
        "start": time.time_ns(),
    })
    return f"{ws_base}/loki/api/v1/tail?{params}"


class LokiTail:
    """Reconnecting websocket subscription to the log backend."""

    def __init__(
        self,
        base_url: str,
        on_events: EventCallback,
        query: str = DEFAULT_TAIL_QUERY,
        reconnect_delay: float = RECONNECT_DELAY
    ):
        self.base_url = base_url
        self.query = query
        self.reconnect_delay = reconnect_delay
        self._on_events = on_events
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._run(), name="loki-tail")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Log tail task ended with an error")
            self._task = None

    def handle_message(self, message: Any) -> None:
        """Parse one tail frame and forward its events."""
        try:
            events = parse_tail_response(json.loads(message))
        except (TypeError, ValueError, AttributeError) as e:
            logger.error("Tail parse error: %s", e)
            return
        if events:
            self._on_events(events)

    async def _run(self) -> None:
        while self._running:
            url = build_tail_url(self.base_url, self.query)
            try:
                async with websockets.connect(url) as ws:
                    logger.info("Connected to log tail")
                    async for message in ws:
                        self.handle_message(message)
                logger.warning("Tail connection closed, reconnecting in %.0fs", self.reconnect_delay)
            except (OSError, websockets.WebSocketException) as e:
                logger.error("Tail websocket error: %s", e)
            except Exception:
                logger.exception("Unexpected log tail failure")
            if self._running:
                await asyncio.sleep(self.reconnect_delay)
