# -*- coding: utf-8 -*-
"""Pytest configuration for Sundial tests."""

import shutil
import tempfile
from pathlib import Path
from typing import Iterable, List, Optional

import pytest

from sundial.context import QueryContext, RetryPolicy
from sundial.metrics import EngineMetrics
from sundial.types import DataPoint


@pytest.fixture
def metrics():
    """Fresh per-test metrics (private Prometheus registry)."""
    return EngineMetrics("test-query")


@pytest.fixture
def context():
    """Query context with short timers for tests."""
    return QueryContext(
        tick_interval=0.01,
        backpressure_timeout=0.5,
        retry=RetryPolicy(max_retries=3, base_delay=0.001, max_delay=0.01),
    )


@pytest.fixture
def points():
    """Factory for DataPoints at the given timestamps."""
    def make(timestamps: Iterable[float], values: Optional[Iterable[float]] = None,
             stream: Optional[str] = None, **tags) -> List[DataPoint]:
        timestamps = list(timestamps)
        values = list(values) if values is not None else [float(ts) for ts in timestamps]
        return [DataPoint(float(ts), float(v), dict(tags), stream) for ts, v in zip(timestamps, values)]
    return make


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


# Custom markers
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
