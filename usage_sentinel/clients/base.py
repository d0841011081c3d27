"""
Backend contracts consumed by the workers.

Any object with these coroutine methods can stand in for the real clients.
"""

from typing import Protocol, Union

from .results import LogResult, MetricResult


class MetricsBackend(Protocol):
    async def query(self, expr: str) -> MetricResult:
        ...

    async def query_range(
        self,
        expr: str,
        start: Union[int, float, str],
        end: Union[int, float, str],
        step: Union[int, float, str]
    ) -> MetricResult:
        ...


class LogBackend(Protocol):
    async def query(self, expr: str, limit: int = 100) -> LogResult:
        ...

    async def query_range(
        self,
        expr: str,
        start: Union[int, str],
        end: Union[int, str],
        limit: int = 100,
        direction: str = "backward"
    ) -> LogResult:
        ...
