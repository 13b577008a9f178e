"""
Pytest configuration and shared fixtures.

Provides monitor configurations, spans and a populated state store for unit
and integration tests.
"""

from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from tracescore.anomaly.engine import StateStore
from tracescore.core.config import GraphHorizons, HorizonConfig, MonitorConfig
from tracescore.data.schema import GraphType, MetricKey, Span

T0 = 1_699_999_200.0  # multiple of 15m, so every default bin boundary


@pytest.fixture
def small_config() -> MonitorConfig:
    """
    Config with short horizons so tests need few samples.

    immediate: 1m window in 10s bins; reference: 10m window in 1m bins.
    """
    horizons = GraphHorizons(
        immediate=HorizonConfig(window="1m", bin_width="10s"),
        reference=HorizonConfig(window="10m", bin_width="1m"),
    )
    return MonitorConfig(horizons={g: horizons for g in GraphType})


@pytest.fixture
def store(small_config) -> StateStore:
    return StateStore(small_config, shard_count=4)


@pytest.fixture
def duration_key() -> MetricKey:
    return MetricKey(graph=GraphType.DURATION, service="api", operation="GET /users")


@pytest.fixture
def sample_spans() -> List[Span]:
    """
    Twenty spans over ~100 seconds for two services.

    Every fifth span fails; the checkout spans carry busy time.
    """
    base = datetime.fromtimestamp(T0, tz=timezone.utc)
    spans = []
    for i in range(20):
        service = "api" if i % 2 == 0 else "checkout"
        spans.append(
            Span(
                trace_id=f"trace-{i // 4}",
                span_id=f"span-{i}",
                service=service,
                operation="GET /users" if service == "api" else "POST /orders",
                start_time=base + timedelta(seconds=5 * i),
                duration_us=1000 + 100 * i,
                error=i % 5 == 0,
                busy_ns=(800 + 50 * i) * 1000 if service == "checkout" else None,
            )
        )
    return spans


def pytest_configure(config):
    """
    Pytest hook for configuration.

    Registers custom markers used throughout tests.
    """
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running (deferred CI)"
    )
