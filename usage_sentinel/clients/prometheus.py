"""
Prometheus HTTP API client.

Implements the metrics backend contract used by the workers: instant
queries and range queries, both returning parsed series.
"""

import os
from typing import Optional, Union

import httpx

from .http import get_json
from .results import MetricResult, parse_metric_payload

DEFAULT_PROMETHEUS_URL = "http://localhost:9090"
QUERY_TIMEOUT = 10.0
RANGE_TIMEOUT = 30.0


class PrometheusClient:
    """Async client for ``/api/v1/query`` and ``/api/v1/query_range``."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        query_timeout: float = QUERY_TIMEOUT,
        range_timeout: float = RANGE_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None
    ):
        """Initialize the client.

        Args:
            base_url: Prometheus server URL (defaults to ``PROMETHEUS_URL``)
            query_timeout: Seconds allowed for an instant query
            range_timeout: Seconds allowed for a range query
            client: Optional pre-built httpx client, mainly for tests
        """
        self.base_url = (base_url or os.environ.get("PROMETHEUS_URL", DEFAULT_PROMETHEUS_URL)).rstrip("/")
        self.query_timeout = query_timeout
        self.range_timeout = range_timeout
        self._client = client or httpx.AsyncClient()

    async def query(self, expr: str, time: Optional[str] = None) -> MetricResult:
        """Run an instant query.

        Raises:
            BackendError: If the query fails for any reason
        """
        params = {"query": expr}
        if time:
            params["time"] = time
        payload = await get_json(
            self._client, f"{self.base_url}/api/v1/query", params,
            self.query_timeout, "prometheus", expr
        )
        return parse_metric_payload(payload, "prometheus", expr)

    async def query_range(
        self,
        expr: str,
        start: Union[int, float, str],
        end: Union[int, float, str],
        step: Union[int, float, str]
    ) -> MetricResult:
        """Run a range query between ``start`` and ``end`` (unix seconds).

        Raises:
            BackendError: If the query fails for any reason
        """
        params = {"query": expr, "start": str(start), "end": str(end), "step": str(step)}
        payload = await get_json(
            self._client, f"{self.base_url}/api/v1/query_range", params,
            self.range_timeout, "prometheus", expr
        )
        return parse_metric_payload(payload, "prometheus", expr)

    async def aclose(self) -> None:
        await self._client.aclose()
