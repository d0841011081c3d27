"""
Query result shapes shared by the metrics and log backends.

Both Prometheus and Loki answer with ``{"status", "data": {"resultType",
"result"}}``; these dataclasses are the parsed form the workers consume.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from usage_sentinel.errors import BackendError

Sample = Tuple[int, Optional[str]]


@dataclass(frozen=True)
class Series:
    """One labelled series: ``value`` for instant queries, ``values`` for ranges."""
    labels: Dict[str, str]
    value: Optional[Sample] = None
    values: List[Sample] = field(default_factory=list)


@dataclass(frozen=True)
class MetricResult:
    """Parsed vector or matrix result."""
    series: List[Series] = field(default_factory=list)

    def scalar(self, default: float = 0.0) -> float:
        """Numeric value of the first series, or ``default`` when there is none."""
        if not self.series or self.series[0].value is None:
            return default
        raw = self.series[0].value[1]
        if raw is None:
            return default
        return float(raw)

    def __len__(self) -> int:
        return len(self.series)


@dataclass(frozen=True)
class LogStream:
    """Log lines sharing one label set; values are (nanosecond timestamp, line)."""
    labels: Dict[str, str]
    values: List[Tuple[str, str]] = field(default_factory=list)


@dataclass(frozen=True)
class LogResult:
    """Parsed log query result.

    Stream selectors fill ``streams``; metric LogQL such as
    ``count_over_time`` fills ``series``.
    """
    streams: List[LogStream] = field(default_factory=list)
    series: List[Series] = field(default_factory=list)

    def scalar(self, default: float = 0.0) -> float:
        return MetricResult(series=self.series).scalar(default)


def _sample(raw: Any) -> Sample:
    return (int(float(raw[0])), None if raw[1] is None else str(raw[1]))


def _data(payload: Any, backend: str, expr: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise BackendError(f"{backend} returned a non-object body", backend, expr)
    if payload.get("status", "success") != "success":
        error = payload.get("error") or "unknown error"
        raise BackendError(f"{backend} query failed: {error}", backend, expr)
    data = payload.get("data")
    if not isinstance(data, dict):
        raise BackendError(f"{backend} response missing 'data'", backend, expr)
    return data


def parse_series(items: List[Dict[str, Any]]) -> List[Series]:
    series = []
    for item in items:
        labels = item.get("metric") or {}
        if "value" in item:
            series.append(Series(labels=labels, value=_sample(item["value"])))
        else:
            series.append(Series(labels=labels, values=[_sample(v) for v in item.get("values", [])]))
    return series


def parse_metric_payload(payload: Any, backend: str = "prometheus", expr: str = "") -> MetricResult:
    """Parse a Prometheus-style query response.

    Raises:
        BackendError: If the response is not a successful vector/matrix/scalar
    """
    data = _data(payload, backend, expr)
    result_type = data.get("resultType")
    result = data.get("result", [])
    try:
        if result_type in ("scalar", "string"):
            return MetricResult(series=[Series(labels={}, value=_sample(result))])
        return MetricResult(series=parse_series(result))
    except (TypeError, ValueError, IndexError, KeyError) as e:
        raise BackendError(f"{backend} returned a malformed result: {e}", backend, expr)


def parse_log_payload(payload: Any, expr: str = "") -> LogResult:
    """Parse a Loki query response into streams or metric series.

    Raises:
        BackendError: If the response is not a successful Loki result
    """
    data = _data(payload, "loki", expr)
    result_type = data.get("resultType")
    result = data.get("result", [])
    try:
        if result_type == "streams":
            return LogResult(streams=[
                LogStream(
                    labels=item.get("stream") or {},
                    values=[(str(ts), line) for ts, line in item.get("values", [])]
                )
                for item in result
            ])
        if result_type == "scalar":
            return LogResult(series=[Series(labels={}, value=_sample(result))])
        return LogResult(series=parse_series(result))
    except (TypeError, ValueError, IndexError, KeyError) as e:
        raise BackendError(f"loki returned a malformed result: {e}", "loki", expr)
