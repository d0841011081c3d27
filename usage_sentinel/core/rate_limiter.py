"""
Token-bucket rate limiting.

Throttles callers per client key with continuous refill. This is a soft
throttle for the route layer, not an authorization boundary; bucket state
lives in memory and is lost on restart.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from usage_sentinel.errors import RateLimitExceeded

DEFAULT_CAPACITY = 60
DEFAULT_REFILL_RATE = 1.0

# Retry hint when a bucket never refills
FALLBACK_RETRY_AFTER = 60

# Seconds a full bucket may sit untouched before it is forgotten
DEFAULT_IDLE_TTL = 600.0


class TokenBucket:
    """Bucket of ``capacity`` tokens refilled at ``refill_rate`` tokens per second.

    Refill is lazy: it is computed from the time elapsed since the last
    refill whenever the bucket is touched, so bursts after idle periods are
    allowed up to ``capacity``.
    """

    def __init__(
        self,
        capacity: float,
        refill_rate: float,
        clock: Callable[[], float] = time.monotonic
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if refill_rate < 0:
            raise ValueError("refill_rate cannot be negative")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self._clock = clock
        self.tokens = float(capacity)
        self.last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def consume(self) -> bool:
        """Take one token if any is available.

        Returns:
            True if the request is allowed, False if it is denied
        """
        self._refill()
        if self.tokens > 0:
            self.tokens -= 1
            return True
        return False

    def remaining(self) -> int:
        """Whole tokens currently available."""
        self._refill()
        return math.floor(self.tokens)

    def retry_after(self) -> int:
        """Seconds until at least one token is available again."""
        self._refill()
        if self.tokens > 0:
            return 0
        if self.refill_rate == 0:
            return FALLBACK_RETRY_AFTER
        return max(1, math.ceil((1 - self.tokens) / self.refill_rate))

    def is_idle(self, now: float, ttl: float) -> bool:
        """Whether the bucket went untouched for ``ttl`` seconds and is full again."""
        elapsed = now - self.last_refill
        return elapsed >= ttl and self.tokens + elapsed * self.refill_rate >= self.capacity


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a rate-limit check for one request."""
    allowed: bool
    remaining: int
    retry_after: int


class RateLimiter:
    """Per-client token buckets owned by one limiter instance.

    Buckets are created lazily with full capacity on a key's first request.
    Each bucket is guarded by its own lock so concurrent requests for the
    same key cannot lose updates.

    Buckets that have been idle for ``idle_ttl`` seconds and have refilled
    to capacity are dropped when new keys arrive; a dropped key starts over
    with a full bucket, which is the state it was already in.
    """

    def __init__(
        self,
        capacity: float = DEFAULT_CAPACITY,
        refill_rate: float = DEFAULT_REFILL_RATE,
        clock: Callable[[], float] = time.monotonic,
        idle_ttl: float = DEFAULT_IDLE_TTL
    ):
        if idle_ttl <= 0:
            raise ValueError("idle_ttl must be > 0")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.idle_ttl = idle_ttl
        self._clock = clock
        self._buckets: Dict[str, TokenBucket] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._last_sweep = clock()

    def _sweep_idle(self) -> None:
        # Caller holds _registry_lock
        now = self._clock()
        if now - self._last_sweep < self.idle_ttl:
            return
        self._last_sweep = now
        for key in [k for k, b in self._buckets.items() if b.is_idle(now, self.idle_ttl)]:
            if self._locks[key].locked():
                continue
            del self._buckets[key]
            del self._locks[key]

    def _bucket(self, key: str):
        with self._registry_lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                self._sweep_idle()
                bucket = TokenBucket(self.capacity, self.refill_rate, self._clock)
                self._buckets[key] = bucket
                self._locks[key] = threading.Lock()
            return bucket, self._locks[key]

    def check(self, key: str) -> RateLimitDecision:
        """Consume a token for ``key`` and report the outcome."""
        bucket, lock = self._bucket(key)
        with lock:
            if bucket.consume():
                return RateLimitDecision(allowed=True, remaining=bucket.remaining(), retry_after=0)
            return RateLimitDecision(allowed=False, remaining=0, retry_after=bucket.retry_after())

    def enforce(self, key: str) -> RateLimitDecision:
        """Like :meth:`check`, but raise on denial.

        Raises:
            RateLimitExceeded: If the bucket for ``key`` is empty
        """
        decision = self.check(key)
        if not decision.allowed:
            raise RateLimitExceeded(key, decision.retry_after)
        return decision

    def remaining(self, key: str) -> int:
        bucket, lock = self._bucket(key)
        with lock:
            return bucket.remaining()

    def bucket_count(self) -> int:
        with self._registry_lock:
            return len(self._buckets)

    def reset(self, key: Optional[str] = None) -> None:
        """Forget one client's bucket, or all of them."""
        with self._registry_lock:
            if key is None:
                self._buckets.clear()
                self._locks.clear()
            else:
                self._buckets.pop(key, None)
                self._locks.pop(key, None)


def client_key(headers: Mapping[str, str]) -> str:
    """Derive the rate-limit key for a request from its proxy headers."""
    lowered = {k.lower(): v for k, v in headers.items()}
    forwarded = lowered.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip() if forwarded else ""
    if first:
        return first
    real_ip = lowered.get("x-real-ip", "").strip()
    return real_ip or "unknown"
