"""
Backend clients for usage-sentinel.

Async access to the metrics store, the log store and notification sinks.
"""

from .loki import LokiClient
from .notifier import Notification, Notifier
from .prometheus import PrometheusClient
from .results import LogResult, LogStream, MetricResult, Series

__all__ = [
    "LokiClient",
    "LogResult",
    "LogStream",
    "MetricResult",
    "Notification",
    "Notifier",
    "PrometheusClient",
    "Series",
]
