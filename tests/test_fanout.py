"""
Unit tests for the live-event broadcaster and log sanitizer.
"""

import asyncio
import json

import pytest

from usage_sentinel.core.fanout import Broadcaster, Subscription, format_sse
from usage_sentinel.core.sanitizer import REDACTED, sanitize_event, sanitize_log_content
from usage_sentinel.errors import CapacityExceeded, SinkClosed


class TestSanitizer:
    """Test secret redaction."""

    def test_api_key_assignment(self):
        assert sanitize_log_content("api_key=abc123secret done") == f"{REDACTED} done"

    def test_bearer_token(self):
        assert "xyz.token" not in sanitize_log_content("sent Bearer xyz.token to upstream")

    def test_authorization_header_rest_of_line(self):
        assert sanitize_log_content("Authorization: Basic Zm9vOmJhcg==") == REDACTED

    def test_provider_keys_and_jwts(self):
        line = (
            "key sk-abcdefghijklmnopqrstuvwxyz and "
            "gh ghp_" + "a" * 36 + " jwt eyJhbGciOi.eyJzdWIi.c2lnbmF0dXJl"
        )
        result = sanitize_log_content(line)
        assert "sk-abcdefghij" not in result
        assert "ghp_" not in result
        assert "eyJ" not in result
        assert result.count(REDACTED) == 3

    def test_plain_text_untouched(self):
        assert sanitize_log_content("model=claude latency_ms=120") == "model=claude latency_ms=120"

    def test_event_strings_sanitized_without_mutation(self):
        """Only strings change and the input dict is not modified."""
        event = {"body": "password: hunter2", "status": 200, "tags": ["token=x"]}
        cleaned = sanitize_event(event)
        assert cleaned["body"] == REDACTED
        assert cleaned["status"] == 200
        assert cleaned["tags"] == [REDACTED]
        assert event["body"] == "password: hunter2"
        assert event["tags"] == ["token=x"]

    def test_nested_values_sanitized(self):
        """Strings inside nested dicts and lists are redacted as well."""
        event = {
            "request": {"headers": {"auth": "Bearer abc123"}, "attempt": 2},
            "args": ["password=x", 3, {"note": "api_key: k1"}],
            "ok": True,
        }
        cleaned = sanitize_event(event)
        assert cleaned == {
            "request": {"headers": {"auth": REDACTED}, "attempt": 2},
            "args": [REDACTED, 3, {"note": REDACTED}],
            "ok": True,
        }
        assert event["request"]["headers"]["auth"] == "Bearer abc123"
        assert event["args"][0] == "password=x"


class TestSubscription:
    """Test single-sink behavior."""

    def test_push_after_close_raises(self):
        async def scenario():
            sub = Subscription()
            sub.close()
            with pytest.raises(SinkClosed):
                sub.push([{"a": 1}])

        asyncio.run(scenario())

    def test_full_queue_closes_sink(self):
        async def scenario():
            sub = Subscription(max_queue=1)
            sub.push([{"n": 1}])
            with pytest.raises(SinkClosed):
                sub.push([{"n": 2}])
            assert sub.closed

        asyncio.run(scenario())

    def test_stream_yields_sse_frames(self):
        async def scenario():
            sub = Subscription()
            sub.push([{"n": 1}])
            sub.push([{"n": 2}])
            sub.close()
            return [frame async for frame in sub.stream()]

        frames = asyncio.run(scenario())
        assert frames == [format_sse([{"n": 1}]), format_sse([{"n": 2}])]
        assert frames[0].startswith("data: ") and frames[0].endswith("\n\n")
        assert json.loads(frames[0][len("data: "):]) == [{"n": 1}]


class TestBroadcaster:
    """Test bounded fan-out."""

    def test_invalid_bound(self):
        with pytest.raises(ValueError):
            Broadcaster(max_subscribers=0)

    def test_capacity_bound(self):
        """Subscriptions beyond the bound raise CapacityExceeded."""
        async def scenario():
            broadcaster = Broadcaster(max_subscribers=3)
            subs = [broadcaster.subscribe() for _ in range(3)]
            with pytest.raises(CapacityExceeded) as exc_info:
                broadcaster.subscribe()
            assert exc_info.value.limit == 3
            assert broadcaster.subscriber_count == 3

            broadcaster.unsubscribe(subs[0])
            broadcaster.subscribe()
            assert broadcaster.subscriber_count == 3

        asyncio.run(scenario())

    def test_publish_sanitizes_and_delivers_in_order(self):
        """Every subscriber sees sanitized batches in upstream order."""
        async def scenario():
            broadcaster = Broadcaster()
            a = broadcaster.subscribe()
            b = broadcaster.subscribe()
            assert broadcaster.publish([{"msg": "first", "secret": "x"}]) == 2
            assert broadcaster.publish([{"msg": "api_key=leaked"}]) == 2
            return [a.get_nowait(), a.get_nowait()], [b.get_nowait(), b.get_nowait()]

        batches_a, batches_b = asyncio.run(scenario())
        assert batches_a == batches_b
        assert batches_a[0][0]["msg"] == "first"
        assert batches_a[1][0]["msg"] == REDACTED

    def test_closed_sink_removed_on_publish(self):
        """A failing push removes the sink; the others still receive."""
        async def scenario():
            broadcaster = Broadcaster()
            live = broadcaster.subscribe()
            dead = broadcaster.subscribe()
            dead.close()
            delivered = broadcaster.publish([{"n": 1}])
            return delivered, broadcaster.subscriber_count, live.get_nowait()

        delivered, count, batch = asyncio.run(scenario())
        assert delivered == 1
        assert count == 1
        assert batch == [{"n": 1}]
