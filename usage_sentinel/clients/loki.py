"""
Loki HTTP API client.

Implements the log backend contract: instant and range LogQL queries.
"""

import os
from typing import Optional, Union

import httpx

from .http import get_json
from .results import LogResult, parse_log_payload

DEFAULT_LOKI_URL = "http://localhost:3100"
QUERY_TIMEOUT = 10.0
RANGE_TIMEOUT = 30.0


class LokiClient:
    """Async client for ``/loki/api/v1/query`` and ``/loki/api/v1/query_range``."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        query_timeout: float = QUERY_TIMEOUT,
        range_timeout: float = RANGE_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = (base_url or os.environ.get("LOKI_URL", DEFAULT_LOKI_URL)).rstrip("/")
        self.query_timeout = query_timeout
        self.range_timeout = range_timeout
        self._client = client or httpx.AsyncClient()

    async def query(self, expr: str, limit: int = 100) -> LogResult:
        """Run an instant LogQL query.

        Raises:
            BackendError: If the query fails for any reason
        """
        payload = await get_json(
            self._client, f"{self.base_url}/loki/api/v1/query",
            {"query": expr, "limit": str(limit)},
            self.query_timeout, "loki", expr
        )
        return parse_log_payload(payload, expr)

    async def query_range(
        self,
        expr: str,
        start: Union[int, str],
        end: Union[int, str],
        limit: int = 100,
        direction: str = "backward"
    ) -> LogResult:
        """Run a range LogQL query; ``start``/``end`` are nanosecond or RFC3339 times.

        Raises:
            BackendError: If the query fails for any reason
            ValueError: If ``direction`` is not forward or backward
        """
        if direction not in ("forward", "backward"):
            raise ValueError("direction must be 'forward' or 'backward'")
        params = {
            "query": expr,
            "start": str(start),
            "end": str(end),
            "limit": str(limit),
            "direction": direction,
        }
        payload = await get_json(
            self._client, f"{self.base_url}/loki/api/v1/query_range", params,
            self.range_timeout, "loki", expr
        )
        return parse_log_payload(payload, expr)

    async def aclose(self) -> None:
        await self._client.aclose()
