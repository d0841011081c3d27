"""
Unit tests for token-bucket rate limiting.

Uses a controllable clock so refill behavior is deterministic.
"""

import threading

import pytest

from usage_sentinel.core.rate_limiter import (
    FALLBACK_RETRY_AFTER,
    RateLimiter,
    TokenBucket,
    client_key
)
from usage_sentinel.errors import RateLimitExceeded


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestTokenBucket:
    """Test single-bucket semantics."""

    def test_invalid_parameters(self):
        """Non-positive capacity or negative refill rate is rejected."""
        with pytest.raises(ValueError):
            TokenBucket(0, 1.0)
        with pytest.raises(ValueError):
            TokenBucket(5, -1.0)

    def test_monotonic_denial_without_refill(self):
        """Capacity N with refill 0 allows exactly N then denies until time advances."""
        clock = FakeClock()
        bucket = TokenBucket(5, 0.0, clock)
        assert [bucket.consume() for _ in range(5)] == [True] * 5
        assert not any(bucket.consume() for _ in range(10))
        clock.advance(3600)
        assert bucket.consume() is False

    def test_remaining_capped_at_capacity(self):
        """Arbitrarily long idle time never exceeds capacity."""
        clock = FakeClock()
        bucket = TokenBucket(10, 5.0, clock)
        bucket.consume()
        clock.advance(10 ** 6)
        assert bucket.remaining() == 10

    def test_resumption_after_one_refill_interval(self):
        """After exhaustion, 1/refill_rate seconds allow exactly one more consume."""
        clock = FakeClock()
        bucket = TokenBucket(3, 2.0, clock)
        for _ in range(3):
            assert bucket.consume()
        assert bucket.consume() is False

        clock.advance(0.5)
        assert bucket.consume() is True
        assert bucket.consume() is False

    def test_remaining_floors(self):
        """remaining() reports whole tokens."""
        clock = FakeClock()
        bucket = TokenBucket(10, 1.0, clock)
        for _ in range(10):
            bucket.consume()
        clock.advance(2.7)
        assert bucket.remaining() == 2

    def test_retry_after(self):
        """retry_after reflects the refill rate, with a fallback when it is 0."""
        clock = FakeClock()
        bucket = TokenBucket(1, 0.25, clock)
        assert bucket.retry_after() == 0
        bucket.consume()
        assert bucket.retry_after() == 4

        frozen = TokenBucket(1, 0.0, clock)
        frozen.consume()
        assert frozen.retry_after() == FALLBACK_RETRY_AFTER


class TestRateLimiter:
    """Test per-key limiter behavior."""

    def test_buckets_created_lazily_per_key(self):
        """Each key gets its own full bucket on first use."""
        limiter = RateLimiter(capacity=2, refill_rate=0.0, clock=FakeClock())
        assert limiter.bucket_count() == 0
        assert limiter.check("a").allowed
        assert limiter.check("a").allowed
        assert not limiter.check("a").allowed
        assert limiter.check("b").allowed
        assert limiter.bucket_count() == 2

    def test_decision_fields(self):
        """Allowed decisions carry remaining tokens; denials carry a retry hint."""
        limiter = RateLimiter(capacity=2, refill_rate=1.0, clock=FakeClock())
        first = limiter.check("ip")
        assert first.allowed and first.remaining == 1 and first.retry_after == 0
        limiter.check("ip")
        denied = limiter.check("ip")
        assert not denied.allowed
        assert denied.remaining == 0
        assert denied.retry_after == 1

    def test_enforce_raises(self):
        """enforce raises RateLimitExceeded on denial."""
        limiter = RateLimiter(capacity=1, refill_rate=0.5, clock=FakeClock())
        limiter.enforce("client")
        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.enforce("client")
        assert exc_info.value.key == "client"
        assert exc_info.value.retry_after == 2

    def test_reset(self):
        """reset forgets one key or all keys."""
        limiter = RateLimiter(capacity=1, refill_rate=0.0, clock=FakeClock())
        limiter.check("a")
        limiter.check("b")
        limiter.reset("a")
        assert limiter.check("a").allowed
        assert not limiter.check("b").allowed
        limiter.reset()
        assert limiter.bucket_count() == 0

    def test_concurrent_consumers_do_not_lose_updates(self):
        """Threads sharing a key never get more than capacity allowances."""
        limiter = RateLimiter(capacity=100, refill_rate=0.0, clock=FakeClock())
        allowed = []
        lock = threading.Lock()

        def worker():
            for _ in range(50):
                decision = limiter.check("shared")
                with lock:
                    allowed.append(decision.allowed)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(allowed) == 100

    def test_idle_full_buckets_dropped(self):
        """Buckets untouched past idle_ttl and refilled are forgotten when new keys arrive."""
        clock = FakeClock()
        limiter = RateLimiter(capacity=5, refill_rate=1.0, clock=clock, idle_ttl=60)
        for key in ("a", "b", "c"):
            limiter.check(key)
        assert limiter.bucket_count() == 3

        clock.advance(61)
        limiter.check("d")
        assert limiter.bucket_count() == 1
        assert limiter.remaining("a") == 5

    def test_drained_buckets_kept(self):
        """A bucket that has not refilled survives a sweep so its throttle holds."""
        clock = FakeClock()
        limiter = RateLimiter(capacity=5, refill_rate=0.0, clock=clock, idle_ttl=60)
        for _ in range(5):
            limiter.check("busy")
        limiter.remaining("quiet")

        clock.advance(61)
        limiter.check("new")
        assert limiter.bucket_count() == 2
        assert not limiter.check("busy").allowed

    def test_invalid_idle_ttl(self):
        with pytest.raises(ValueError):
            RateLimiter(idle_ttl=0)


class TestClientKey:
    """Test client key derivation from headers."""

    def test_forwarded_for_first_entry(self):
        assert client_key({"X-Forwarded-For": "10.0.0.1, 172.16.0.1"}) == "10.0.0.1"

    def test_real_ip_fallback(self):
        assert client_key({"x-real-ip": " 192.168.1.5 "}) == "192.168.1.5"

    def test_unknown(self):
        assert client_key({}) == "unknown"
        assert client_key({"X-Forwarded-For": ""}) == "unknown"
