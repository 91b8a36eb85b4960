"""Shared test fixtures for the candlestick aggregation engine."""

import pytest

from candles.config import AggregationSettings, ShardSettings, SinkSettings
from candles.monitoring import PipelineMonitor
from candles.storage.memory import InMemoryCandleStorage


@pytest.fixture
def agg_settings() -> AggregationSettings:
    """Aggregation settings with explicit lateness and grace windows."""
    return AggregationSettings(
        allowed_lateness_seconds=60,
        grace_window_seconds=3600,
        finalize_interval_seconds=0.05,
    )


@pytest.fixture
def sink_settings() -> SinkSettings:
    """Fast retry policy so failure tests stay quick."""
    return SinkSettings(
        max_retries=3,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        write_timeout_seconds=1.0,
    )


@pytest.fixture
def shard_settings() -> ShardSettings:
    return ShardSettings(count=2, queue_size=100)


@pytest.fixture
def storage() -> InMemoryCandleStorage:
    return InMemoryCandleStorage()


@pytest.fixture
def monitor() -> PipelineMonitor:
    return PipelineMonitor()
