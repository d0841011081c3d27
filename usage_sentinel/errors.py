"""
Exception hierarchy for the monitoring engine.

Backend failures are recovered by the workers; capacity errors are surfaced
to the immediate caller.
"""

from typing import Optional


class SentinelError(Exception):
    """Base class for all usage-sentinel errors."""


class BackendError(SentinelError):
    """Raised when a metrics or log backend query fails."""

    def __init__(self, message: str, backend: str, expr: Optional[str] = None):
        super().__init__(message)
        self.backend = backend
        self.expr = expr


class CapacityExceeded(SentinelError):
    """Raised when a bounded resource has no room for another subscriber."""

    def __init__(self, message: str, limit: int):
        super().__init__(message)
        self.limit = limit


class RateLimitExceeded(SentinelError):
    """Raised when a client has exhausted its token bucket."""

    def __init__(self, key: str, retry_after: int):
        super().__init__(f"Rate limit exceeded for {key}, retry after {retry_after}s")
        self.key = key
        self.retry_after = retry_after


class SinkClosed(SentinelError):
    """Raised when pushing to a subscription that can no longer receive."""
