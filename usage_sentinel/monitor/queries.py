"""
PromQL and LogQL expressions issued by the workers.
"""

COST_METRIC = "claude_code_cost_usage_USD_total"
TOKEN_METRIC = "claude_code_token_usage_tokens_total"
CACHE_READ_METRIC = "claude_code_cache_read_input_tokens_total"
LOG_SERVICE = "claude-code"

PERIOD_WINDOWS = {"daily": "24h", "weekly": "7d", "monthly": "30d"}
DEFAULT_WINDOW = "30d"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def profile_selector(profile: str) -> str:
    """``{profile="..."}`` label matcher, or nothing for the unscoped profile."""
    if profile == "all":
        return ""
    return f'{{profile="{_escape(profile)}"}}'


def period_window(period: str) -> str:
    return PERIOD_WINDOWS.get(period, DEFAULT_WINDOW)


def spend(profile: str, window: str) -> str:
    return f"sum(increase({COST_METRIC}{profile_selector(profile)}[{window}]))"


def hourly_spend_max(profile: str, lookback: str = "7d") -> str:
    return f"max_over_time({spend(profile, '1h')}[{lookback}:1h])"


def token_increase(metric: str, profile: str, window: str) -> str:
    return f"sum(increase({metric}{profile_selector(profile)}[{window}]))"


def collector_down(job: str = "otel-collector") -> str:
    return f'up{{job="{_escape(job)}"}} == 0'


def active_profiles() -> str:
    return f"group by (profile) ({COST_METRIC})"


def _log_stream(profile: str) -> str:
    selector = f'service_name="{LOG_SERVICE}"'
    if profile != "all":
        selector += f', profile="{_escape(profile)}"'
    return "{" + selector + "}"


def server_error_count(profile: str, window: str = "5m") -> str:
    return f"sum(count_over_time({_log_stream(profile)} | http_status_code >= 500 [{window}]))"


def rate_limit_count(profile: str, window: str = "5m") -> str:
    return f'sum(count_over_time({_log_stream(profile)} | http_status_code = "429" [{window}]))'
