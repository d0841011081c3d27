"""
Tests for monitor engine wiring.
"""

import asyncio
import os
import tempfile
from dataclasses import replace

from usage_sentinel.config.loader import BackendConfig, MonitorConfig, SignalConfig, StorageConfig
from usage_sentinel.monitor.engine import MonitorEngine
from usage_sentinel.monitor.rules import RULE_TYPES


def _config(db_path):
    # Closed local port so backend calls fail fast
    return replace(
        MonitorConfig(),
        backends=BackendConfig(prometheus_url="http://127.0.0.1:9", loki_url="http://127.0.0.1:9", query_timeout=1.0),
        storage=StorageConfig(db_path=db_path),
        signals=SignalConfig(failure_threshold=2)
    )


class TestMonitorEngine:
    """Test construction and lifecycle."""

    def test_wiring_follows_config(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = MonitorEngine(_config(os.path.join(temp_dir, "engine.db")))
            assert engine.metrics.base_url == "http://127.0.0.1:9"
            assert engine.logs.base_url == "http://127.0.0.1:9"
            assert [r.id for r in engine.signal_evaluator.rules] == list(RULE_TYPES)
            assert engine.signal_evaluator.rules[0].threshold == 2
            assert engine.broadcaster.max_subscribers == 50
            assert engine.rate_limiter.capacity == 60

    def test_start_and_stop(self):
        """Workers start, survive unreachable backends and stop cleanly."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "engine.db")
            engine = MonitorEngine(_config(db_path))

            async def scenario():
                engine.start(with_tail=False)
                assert engine.budget_monitor.is_running
                assert engine.signal_evaluator.is_running
                await asyncio.sleep(0.1)
                await asyncio.wait_for(engine.stop(), timeout=10.0)
                assert not engine.budget_monitor.is_running
                assert not engine.signal_evaluator.is_running

            asyncio.run(scenario())
            assert os.path.exists(db_path)
