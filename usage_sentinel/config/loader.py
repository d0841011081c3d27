"""
Configuration management and loading.

Handles monitor settings from a YAML file and environment variables.
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Type

import yaml


@dataclass(frozen=True)
class BackendConfig:
    """Where the metrics and log stores live and how long queries may take."""
    prometheus_url: str = "http://localhost:9090"
    loki_url: str = "http://localhost:3100"
    query_timeout: float = 10.0
    range_timeout: float = 30.0

    def __post_init__(self):
        """Validate timeouts are positive."""
        if self.query_timeout <= 0:
            raise ValueError("query_timeout must be > 0")
        if self.range_timeout <= 0:
            raise ValueError("range_timeout must be > 0")


@dataclass(frozen=True)
class StorageConfig:
    db_path: str = "data/usage_sentinel.db"


@dataclass(frozen=True)
class BudgetMonitorConfig:
    interval_seconds: float = 60.0

    def __post_init__(self):
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")


@dataclass(frozen=True)
class SignalConfig:
    """Rule thresholds and scheduling for the signal evaluator."""
    interval_seconds: float = 60.0
    cleanup_interval_seconds: float = 86400.0
    retention_days: int = 30
    dedup_window_minutes: int = 60
    failure_threshold: int = 3
    cost_spike_floor_usd: float = 2.0
    cost_spike_multiplier: float = 3.0
    server_error_threshold: int = 5
    rate_limit_threshold: int = 20
    cache_ratio_threshold: float = 0.3

    def __post_init__(self):
        """Validate signal settings."""
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if self.cleanup_interval_seconds <= 0:
            raise ValueError("cleanup_interval_seconds must be > 0")
        if self.retention_days <= 0:
            raise ValueError("retention_days must be > 0")
        if self.dedup_window_minutes < 0:
            raise ValueError("dedup_window_minutes cannot be negative")
        if self.failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        if self.cost_spike_floor_usd < 0:
            raise ValueError("cost_spike_floor_usd cannot be negative")
        if self.cost_spike_multiplier <= 0:
            raise ValueError("cost_spike_multiplier must be > 0")
        if self.server_error_threshold <= 0:
            raise ValueError("server_error_threshold must be > 0")
        if self.rate_limit_threshold <= 0:
            raise ValueError("rate_limit_threshold must be > 0")
        if not 0 < self.cache_ratio_threshold <= 1:
            raise ValueError("cache_ratio_threshold must be in (0, 1]")


@dataclass(frozen=True)
class RateLimitConfig:
    capacity: int = 60
    refill_rate: float = 1.0

    def __post_init__(self):
        if self.capacity <= 0:
            raise ValueError("capacity must be > 0")
        if self.refill_rate < 0:
            raise ValueError("refill_rate cannot be negative")


@dataclass(frozen=True)
class FanoutConfig:
    max_subscribers: int = 50

    def __post_init__(self):
        if self.max_subscribers <= 0:
            raise ValueError("max_subscribers must be > 0")


@dataclass(frozen=True)
class MonitorConfig:
    """Complete monitor configuration."""
    backends: BackendConfig = field(default_factory=BackendConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    budget_monitor: BudgetMonitorConfig = field(default_factory=BudgetMonitorConfig)
    signals: SignalConfig = field(default_factory=SignalConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    fanout: FanoutConfig = field(default_factory=FanoutConfig)


_SECTIONS: Dict[str, Type] = {
    "backends": BackendConfig,
    "storage": StorageConfig,
    "budget_monitor": BudgetMonitorConfig,
    "signals": SignalConfig,
    "rate_limit": RateLimitConfig,
    "fanout": FanoutConfig,
}

# Environment variable -> (section, key)
ENV_OVERRIDES = {
    "PROMETHEUS_URL": ("backends", "prometheus_url"),
    "LOKI_URL": ("backends", "loki_url"),
    "USAGE_SENTINEL_DB": ("storage", "db_path"),
}


def default_monitor_config() -> MonitorConfig:
    """Built-in defaults with environment overrides applied."""
    return apply_env_overrides(MonitorConfig())


def load_monitor_config(path: Optional[str] = None) -> MonitorConfig:
    """Load and validate monitor configuration from a YAML file.

    Strict validation rejects unknown keys so a typo in a threshold name
    fails loudly instead of silently keeping the default.

    Args:
        path: Path to YAML configuration file; defaults only when None

    Returns:
        Validated MonitorConfig object with environment overrides applied

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return default_monitor_config()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Monitor config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {
        name: _parse_section(raw_config.get(name) or {}, cls, name)
        for name, cls in _SECTIONS.items()
    }
    return apply_env_overrides(MonitorConfig(**sections))


def apply_env_overrides(config: MonitorConfig, environ: Optional[Dict[str, str]] = None) -> MonitorConfig:
    """Return ``config`` with any set override environment variables applied."""
    environ = os.environ if environ is None else environ
    for var, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            config = replace(config, **{section: replace(getattr(config, section), **{key: value})})
    return config


def _parse_section(data: Any, cls: Type, path: str) -> Any:
    """Parse and validate one configuration section.

    Args:
        data: Section data from YAML
        cls: Dataclass describing the section
        path: Path for error messages

    Returns:
        Validated section dataclass

    Raises:
        ValueError: If the section is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    known = {f.name: f for f in fields(cls)}
    unknown_keys = set(data.keys()) - set(known)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    values = {}
    for key, value in data.items():
        default = known[key].default
        if isinstance(default, str):
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"'{key}' in {path} must be a non-empty string")
            values[key] = value
        elif isinstance(default, bool) or isinstance(value, bool):
            raise ValueError(f"'{key}' in {path} must be a number")
        elif isinstance(default, int) and not isinstance(default, bool):
            if not isinstance(value, int):
                raise ValueError(f"'{key}' in {path} must be an integer")
            values[key] = value
        else:
            if not isinstance(value, (int, float)):
                raise ValueError(f"'{key}' in {path} must be a number")
            values[key] = float(value)

    return cls(**values)
