"""
Unit tests for the anomaly rules.

Backends are replaced by in-process fakes that answer by expression.
"""

import asyncio

import pytest

from usage_sentinel.clients.results import LogResult, MetricResult, Series
from usage_sentinel.config.loader import SignalConfig
from usage_sentinel.errors import BackendError
from usage_sentinel.monitor import queries
from usage_sentinel.monitor.rules import (
    RULE_TYPES,
    ApiErrorBurstRule,
    CacheEfficiencyDropRule,
    CacheEfficiencyEvidence,
    CostSpikeEvidence,
    CostSpikeRule,
    DataCollectionStoppedRule,
    FailureTracker,
    QueryFailureRule,
    RuleContext,
    build_rules,
    evidence_from_payload,
    to_payload
)


def _vector(value):
    return [Series(labels={}, value=(1700000000, str(value)))]


class FakeMetrics:
    """Answers instant queries from a mapping of expression to value."""

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.calls = []

    async def query(self, expr, time=None):
        self.calls.append(expr)
        value = self.responses.get(expr, 0)
        if isinstance(value, Exception):
            raise value
        if isinstance(value, MetricResult):
            return value
        return MetricResult(series=_vector(value))

    async def query_range(self, expr, start, end, step):
        raise NotImplementedError


class FakeLogs:
    def __init__(self, responses=None):
        self.responses = responses or {}
        self.calls = []

    async def query(self, expr, limit=100):
        self.calls.append((expr, limit))
        value = self.responses.get(expr, 0)
        if isinstance(value, Exception):
            raise value
        return LogResult(series=_vector(value))

    async def query_range(self, expr, start, end, limit=100, direction="backward"):
        raise NotImplementedError


def evaluate(rule, profile="all"):
    return asyncio.run(rule.evaluate(profile))


class TestRegistry:
    """Test rule registration order and construction."""

    def test_order(self):
        assert list(RULE_TYPES) == [
            "query_failure",
            "cost_spike",
            "api_error_burst",
            "data_collection_stopped",
            "cache_efficiency_drop",
        ]

    def test_build_rules_uses_config(self):
        config = SignalConfig(failure_threshold=7, cost_spike_multiplier=5.0)
        rules = build_rules(RuleContext(FakeMetrics(), FakeLogs(), FailureTracker(), config))
        assert [r.id for r in rules] == list(RULE_TYPES)
        assert rules[0].threshold == 7
        assert rules[1].multiplier == 5.0

    def test_profile_agnostic_rules(self):
        agnostic = {rule_id for rule_id, cls in RULE_TYPES.items() if cls.profile_agnostic}
        assert agnostic == {"query_failure", "data_collection_stopped"}


class TestCostSpikeRule:
    """Test cost spike gating and ratio."""

    def test_below_floor_skips_history_query(self):
        """Exactly one backend query when current cost is at or under the floor."""
        metrics = FakeMetrics({queries.spend("all", "1h"): 2.0})
        outcome = evaluate(CostSpikeRule(metrics))
        assert outcome.fired is False
        assert outcome.evidence == CostSpikeEvidence(current_cost=2.0)
        assert len(metrics.calls) == 1

    def test_fires_above_multiplier(self):
        metrics = FakeMetrics({
            queries.spend("team-a", "1h"): 12.0,
            queries.hourly_spend_max("team-a"): 3.0,
        })
        outcome = evaluate(CostSpikeRule(metrics), "team-a")
        assert outcome.fired is True
        assert outcome.evidence.ratio == 4.0
        assert len(metrics.calls) == 2

    def test_not_fired_at_multiplier(self):
        metrics = FakeMetrics({
            queries.spend("all", "1h"): 9.0,
            queries.hourly_spend_max("all"): 3.0,
        })
        assert evaluate(CostSpikeRule(metrics)).fired is False

    def test_no_history_does_not_fire(self):
        """Without a positive historical max there is nothing to compare against."""
        metrics = FakeMetrics({queries.spend("all", "1h"): 50.0})
        outcome = evaluate(CostSpikeRule(metrics))
        assert outcome.fired is False
        assert outcome.evidence.historical_max == 0.0
        assert outcome.evidence.ratio is None

    def test_backend_error_propagates(self):
        metrics = FakeMetrics({queries.spend("all", "1h"): BackendError("down", "prometheus")})
        with pytest.raises(BackendError):
            evaluate(CostSpikeRule(metrics))


class TestApiErrorBurstRule:
    """Test server-error and rate-limit thresholds."""

    @pytest.mark.parametrize("server,limited,fired", [
        (0, 0, False),
        (4, 19, False),
        (5, 0, True),
        (0, 20, True),
        (10, 30, True),
    ])
    def test_thresholds(self, server, limited, fired):
        logs = FakeLogs({
            queries.server_error_count("all"): server,
            queries.rate_limit_count("all"): limited,
        })
        outcome = evaluate(ApiErrorBurstRule(logs))
        assert outcome.fired is fired
        assert outcome.evidence.server_errors == server
        assert outcome.evidence.rate_limit_errors == limited

    def test_queries_request_single_line(self):
        logs = FakeLogs()
        evaluate(ApiErrorBurstRule(logs), "team-a")
        assert [limit for _, limit in logs.calls] == [1, 1]
        assert all('profile="team-a"' in expr for expr, _ in logs.calls)


class TestDataCollectionStoppedRule:
    """Test collector liveness."""

    def test_fires_when_any_instance_down(self):
        down = MetricResult(series=[
            Series(labels={"instance": "a"}, value=(1, "0")),
            Series(labels={"instance": "b"}, value=(1, "0")),
        ])
        outcome = evaluate(DataCollectionStoppedRule(FakeMetrics({queries.collector_down(): down})))
        assert outcome.fired is True
        assert outcome.evidence.down_instances == 2

    def test_quiet_when_empty(self):
        outcome = evaluate(DataCollectionStoppedRule(FakeMetrics({queries.collector_down(): MetricResult()})))
        assert outcome.fired is False


class TestCacheEfficiencyDropRule:
    """Test cache hit ratio."""

    def _metrics(self, cache_read, total, profile="all"):
        return FakeMetrics({
            queries.token_increase(queries.CACHE_READ_METRIC, profile, "15m"): cache_read,
            queries.token_increase(queries.TOKEN_METRIC, profile, "15m"): total,
        })

    @pytest.mark.parametrize("cache_read", [0, 10, 10 ** 6])
    def test_no_traffic_never_fires(self, cache_read):
        outcome = evaluate(CacheEfficiencyDropRule(self._metrics(cache_read, 0)))
        assert outcome.fired is False
        assert outcome.evidence.ratio is None

    def test_low_ratio_fires(self):
        outcome = evaluate(CacheEfficiencyDropRule(self._metrics(20, 100)))
        assert outcome.fired is True
        assert outcome.evidence == CacheEfficiencyEvidence(cache_read=20.0, total_tokens=100.0, ratio=0.2)

    def test_healthy_ratio(self):
        assert evaluate(CacheEfficiencyDropRule(self._metrics(30, 100))).fired is False


class TestQueryFailureRule:
    """Test consecutive-failure surfacing."""

    def test_fires_at_threshold(self):
        tracker = FailureTracker()
        rule = QueryFailureRule(tracker, threshold=3)
        tracker.record_failure("cost_spike")
        tracker.record_failure("cost_spike")
        assert evaluate(rule).fired is False

        tracker.record_failure("cost_spike")
        outcome = evaluate(rule)
        assert outcome.fired is True
        assert outcome.evidence.failures == {"cost_spike": 3}

    def test_success_resets(self):
        tracker = FailureTracker()
        for _ in range(5):
            tracker.record_failure("api_error_burst")
        tracker.record_success("api_error_burst")
        assert tracker.count("api_error_burst") == 0
        assert evaluate(QueryFailureRule(tracker, 3)).fired is False


class TestEvidencePayload:
    """Test evidence serialization at the storage boundary."""

    def test_round_trip_by_rule_id(self):
        evidence = CostSpikeEvidence(current_cost=9.0, historical_max=2.0, ratio=4.5)
        assert evidence_from_payload("cost_spike", to_payload(evidence)) == evidence

    def test_unknown_rule(self):
        with pytest.raises(KeyError):
            evidence_from_payload("budget_exceeded", {})

    def test_mismatched_payload(self):
        with pytest.raises(TypeError):
            evidence_from_payload("cache_efficiency_drop", {"current_cost": 1.0})
