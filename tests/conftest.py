"""
Pytest configuration and shared fixtures for dip-signal tests.
"""

import sys
from pathlib import Path
from datetime import datetime, timedelta, timezone

# Add project root to path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import pytest
from unittest.mock import MagicMock
import numpy as np
import pandas as pd

# Silence structlog during tests
import structlog

from src.api.data_protocol import ForecastRecord, PricePoint


def _mock_logger_factory(*args):
    """Factory that creates mock loggers for testing."""
    mock = MagicMock()
    # Configure mock methods to return the mock itself (for chaining)
    mock.bind.return_value = mock
    return mock


structlog.configure(
    processors=[],
    logger_factory=_mock_logger_factory,
)


BASE_TIME = datetime(2024, 5, 1, 0, 0, tzinfo=timezone.utc)

# Flat at 100 for 30 minutes, drop to 90 over 5, recover to 95 over 3
DIP_AND_RECOVERY = [100.0] * 30 + [98.0, 96.0, 94.0, 92.0, 90.0] + [91.67, 93.33, 95.0]


# ============================================================================
# In-memory data sources
# ============================================================================

class StaticPriceSource:
    """PriceSource over a fixed list of points."""

    def __init__(self, points_by_entity: dict):
        self.points_by_entity = points_by_entity
        self.calls = []

    def get_prices(self, entity_id, start, end, timeout=None):
        self.calls.append((entity_id, start, end, timeout))
        return [
            p for p in self.points_by_entity.get(entity_id, [])
            if start <= p.timestamp <= end
        ]


class StaticForecastSource:
    """ForecastSource over a fixed dict of records."""

    def __init__(self, forecasts: dict):
        self.forecasts = forecasts
        self.calls = []

    def get_latest_forecast(self, entity_id, timeout=None):
        self.calls.append((entity_id, timeout))
        return self.forecasts.get(entity_id)


# ============================================================================
# Shared Fixtures
# ============================================================================

@pytest.fixture
def base_time():
    """Timestamp of the first synthetic price sample."""
    return BASE_TIME


@pytest.fixture
def make_prices():
    """Build one-sample-per-minute price points."""
    def _make(values, entity_id="bitcoin", start=BASE_TIME, step_minutes=1):
        return [
            PricePoint(
                entity_id=entity_id,
                timestamp=start + timedelta(minutes=i * step_minutes),
                price=float(value),
            )
            for i, value in enumerate(values)
        ]
    return _make


@pytest.fixture
def make_forecast():
    """Build a forecast record (defaults pass the default gate)."""
    def _make(
        entity_id="bitcoin",
        reference_timestamp=None,
        probability=0.60,
        sample_count=60,
        recent_avg_return=0.01,
    ):
        ref = reference_timestamp or BASE_TIME
        return ForecastRecord(
            entity_id=entity_id,
            timestamp=ref + timedelta(seconds=5),
            probability=probability,
            sample_count=sample_count,
            recent_avg_return=recent_avg_return,
            reference_timestamp=ref,
        )
    return _make


@pytest.fixture
def dip_prices(make_prices):
    """The dip-and-recovery series for bitcoin."""
    return make_prices(DIP_AND_RECOVERY)


@pytest.fixture
def dip_end_time():
    """Timestamp of the last sample of the dip-and-recovery series."""
    return BASE_TIME + timedelta(minutes=len(DIP_AND_RECOVERY) - 1)


@pytest.fixture
def price_source():
    """Factory for in-memory price sources."""
    return StaticPriceSource


@pytest.fixture
def forecast_source():
    """Factory for in-memory forecast sources."""
    return StaticForecastSource


@pytest.fixture
def sample_walk():
    """Deterministic random-walk price series."""
    np.random.seed(42)  # Deterministic for tests
    steps = np.random.randn(200) * 0.5
    return pd.Series(100.0 + np.cumsum(steps))
