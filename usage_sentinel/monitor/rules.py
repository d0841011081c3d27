"""
Anomaly rules evaluated by the signal evaluator.

Each rule id has one rule class and one evidence dataclass. Evidence is only
turned into a plain dict at the storage boundary (``to_payload``) and is
decoded back by rule id (``evidence_from_payload``).

Rules:
- query_failure (meta, profile-agnostic): a rule's queries failed N times in a row
- cost_spike: 1h spend > floor AND > multiplier * 7d hourly max
- api_error_burst: >= 5 server errors OR >= 20 rate limits in 5 minutes
- data_collection_stopped (profile-agnostic): collector reports down
- cache_efficiency_drop: cache-read share of tokens < 0.3 over 15 minutes
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Type, Union

from usage_sentinel.clients.base import LogBackend, MetricsBackend
from usage_sentinel.clients.notifier import Severity
from usage_sentinel.config.loader import SignalConfig
from . import queries


# =============================================================================
# Evidence
# =============================================================================

@dataclass(frozen=True)
class QueryFailureEvidence:
    failures: Dict[str, int]
    threshold: int


@dataclass(frozen=True)
class CostSpikeEvidence:
    current_cost: float
    historical_max: Optional[float] = None
    ratio: Optional[float] = None


@dataclass(frozen=True)
class ApiErrorBurstEvidence:
    server_errors: float
    rate_limit_errors: float


@dataclass(frozen=True)
class DataCollectionStoppedEvidence:
    down_instances: int


@dataclass(frozen=True)
class CacheEfficiencyEvidence:
    cache_read: float
    total_tokens: float
    ratio: Optional[float]


Evidence = Union[
    QueryFailureEvidence,
    CostSpikeEvidence,
    ApiErrorBurstEvidence,
    DataCollectionStoppedEvidence,
    CacheEfficiencyEvidence,
]


@dataclass(frozen=True)
class RuleOutcome:
    """Result of evaluating one rule for one profile."""
    fired: bool
    evidence: Evidence


def to_payload(evidence: Evidence) -> Dict[str, Any]:
    """Serialize evidence for the signal_events.data column."""
    return asdict(evidence)


def evidence_from_payload(rule_id: str, payload: Dict[str, Any]) -> Evidence:
    """Decode a stored payload into the evidence type of ``rule_id``.

    Raises:
        KeyError: If ``rule_id`` is not a known rule
        TypeError: If the payload does not match the rule's evidence fields
    """
    return RULE_TYPES[rule_id].evidence_type(**payload)


# =============================================================================
# Failure tracking
# =============================================================================

@dataclass
class FailureTracker:
    """Consecutive query-failure counts per rule id."""
    _counts: Dict[str, int] = field(default_factory=dict)

    def record_failure(self, rule_id: str) -> int:
        self._counts[rule_id] = self._counts.get(rule_id, 0) + 1
        return self._counts[rule_id]

    def record_success(self, rule_id: str) -> None:
        self._counts.pop(rule_id, None)

    def count(self, rule_id: str) -> int:
        return self._counts.get(rule_id, 0)

    def failing(self, threshold: int) -> Dict[str, int]:
        """Rules whose consecutive failure count has reached ``threshold``."""
        return {rule_id: n for rule_id, n in self._counts.items() if n >= threshold}


# =============================================================================
# Rules
# =============================================================================

@dataclass
class RuleContext:
    """Everything a rule may need to be constructed."""
    metrics: MetricsBackend
    logs: LogBackend
    tracker: FailureTracker
    config: SignalConfig = field(default_factory=SignalConfig)


class SignalRule(ABC):
    """One anomaly rule.

    ``evaluate`` raises ``BackendError`` when a query fails; the evaluator
    counts those failures rather than the rule swallowing them.
    """

    id: str = ""
    name: str = ""
    description: str = ""
    severity: Severity = Severity.WARNING
    profile_agnostic: bool = False
    evidence_type: Type = type(None)

    @classmethod
    @abstractmethod
    def from_context(cls, ctx: RuleContext) -> "SignalRule":
        ...

    @abstractmethod
    async def evaluate(self, profile: str) -> RuleOutcome:
        ...


class QueryFailureRule(SignalRule):
    id = "query_failure"
    name = "Query failures"
    description = "A rule's backend queries have failed several times in a row"
    severity = Severity.CRITICAL
    profile_agnostic = True
    evidence_type = QueryFailureEvidence

    def __init__(self, tracker: FailureTracker, threshold: int = 3):
        self.tracker = tracker
        self.threshold = threshold

    @classmethod
    def from_context(cls, ctx: RuleContext) -> "QueryFailureRule":
        return cls(ctx.tracker, ctx.config.failure_threshold)

    async def evaluate(self, profile: str) -> RuleOutcome:
        failing = self.tracker.failing(self.threshold)
        return RuleOutcome(
            fired=bool(failing),
            evidence=QueryFailureEvidence(failures=failing, threshold=self.threshold)
        )


class CostSpikeRule(SignalRule):
    id = "cost_spike"
    name = "Cost spike"
    description = "Current 1h cost exceeds the floor and is more than 3x the hourly max of the past 7 days"
    severity = Severity.CRITICAL
    evidence_type = CostSpikeEvidence

    def __init__(self, metrics: MetricsBackend, floor_usd: float = 2.0, multiplier: float = 3.0):
        self.metrics = metrics
        self.floor_usd = floor_usd
        self.multiplier = multiplier

    @classmethod
    def from_context(cls, ctx: RuleContext) -> "CostSpikeRule":
        return cls(ctx.metrics, ctx.config.cost_spike_floor_usd, ctx.config.cost_spike_multiplier)

    async def evaluate(self, profile: str) -> RuleOutcome:
        current = (await self.metrics.query(queries.spend(profile, "1h"))).scalar()

        # Cheap hours never need the 7-day lookup
        if current <= self.floor_usd:
            return RuleOutcome(fired=False, evidence=CostSpikeEvidence(current_cost=current))

        historical_max = (await self.metrics.query(queries.hourly_spend_max(profile))).scalar()
        fired = historical_max > 0 and current > historical_max * self.multiplier
        return RuleOutcome(
            fired=fired,
            evidence=CostSpikeEvidence(
                current_cost=current,
                historical_max=historical_max,
                ratio=current / historical_max if historical_max > 0 else None
            )
        )


class ApiErrorBurstRule(SignalRule):
    id = "api_error_burst"
    name = "API error burst"
    description = "5+ server errors (HTTP >= 500) or 20+ rate limit errors (HTTP 429) in the last 5 minutes"
    severity = Severity.CRITICAL
    evidence_type = ApiErrorBurstEvidence

    def __init__(self, logs: LogBackend, server_error_threshold: int = 5, rate_limit_threshold: int = 20):
        self.logs = logs
        self.server_error_threshold = server_error_threshold
        self.rate_limit_threshold = rate_limit_threshold

    @classmethod
    def from_context(cls, ctx: RuleContext) -> "ApiErrorBurstRule":
        return cls(ctx.logs, ctx.config.server_error_threshold, ctx.config.rate_limit_threshold)

    async def evaluate(self, profile: str) -> RuleOutcome:
        server_errors = (await self.logs.query(queries.server_error_count(profile), limit=1)).scalar()
        rate_limits = (await self.logs.query(queries.rate_limit_count(profile), limit=1)).scalar()
        fired = server_errors >= self.server_error_threshold or rate_limits >= self.rate_limit_threshold
        return RuleOutcome(
            fired=fired,
            evidence=ApiErrorBurstEvidence(server_errors=server_errors, rate_limit_errors=rate_limits)
        )


class DataCollectionStoppedRule(SignalRule):
    id = "data_collection_stopped"
    name = "Data collection stopped"
    description = "The telemetry collector is reporting as down (up{job='otel-collector'} == 0)"
    severity = Severity.CRITICAL
    profile_agnostic = True
    evidence_type = DataCollectionStoppedEvidence

    def __init__(self, metrics: MetricsBackend):
        self.metrics = metrics

    @classmethod
    def from_context(cls, ctx: RuleContext) -> "DataCollectionStoppedRule":
        return cls(ctx.metrics)

    async def evaluate(self, profile: str) -> RuleOutcome:
        down = len(await self.metrics.query(queries.collector_down()))
        return RuleOutcome(fired=down > 0, evidence=DataCollectionStoppedEvidence(down_instances=down))


class CacheEfficiencyDropRule(SignalRule):
    id = "cache_efficiency_drop"
    name = "Cache efficiency drop"
    description = "Cache hit ratio has been below 0.3 for the past 15 minutes"
    severity = Severity.WARNING
    evidence_type = CacheEfficiencyEvidence

    def __init__(self, metrics: MetricsBackend, ratio_threshold: float = 0.3):
        self.metrics = metrics
        self.ratio_threshold = ratio_threshold

    @classmethod
    def from_context(cls, ctx: RuleContext) -> "CacheEfficiencyDropRule":
        return cls(ctx.metrics, ctx.config.cache_ratio_threshold)

    async def evaluate(self, profile: str) -> RuleOutcome:
        cache_read = (await self.metrics.query(
            queries.token_increase(queries.CACHE_READ_METRIC, profile, "15m")
        )).scalar()
        total = (await self.metrics.query(
            queries.token_increase(queries.TOKEN_METRIC, profile, "15m")
        )).scalar()

        # No traffic is not a cache problem
        if total == 0:
            return RuleOutcome(
                fired=False,
                evidence=CacheEfficiencyEvidence(cache_read=cache_read, total_tokens=total, ratio=None)
            )

        ratio = cache_read / total
        return RuleOutcome(
            fired=ratio < self.ratio_threshold,
            evidence=CacheEfficiencyEvidence(cache_read=cache_read, total_tokens=total, ratio=ratio)
        )


# Evaluation order; query_failure runs first so it sees the previous tick's counts
RULE_TYPES: Dict[str, Type[SignalRule]] = {
    cls.id: cls
    for cls in (
        QueryFailureRule,
        CostSpikeRule,
        ApiErrorBurstRule,
        DataCollectionStoppedRule,
        CacheEfficiencyDropRule,
    )
}


def build_rules(ctx: RuleContext) -> List[SignalRule]:
    """Instantiate every registered rule in evaluation order."""
    return [cls.from_context(ctx) for cls in RULE_TYPES.values()]
