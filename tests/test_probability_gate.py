"""
Tests for the probability gate.

Tests cover:
- Thresholds are inclusive
- Missing recent return with non-positive vs positive floor
- Non-finite inputs fail instead of raising
- Pass is monotonic in probability and sample count
"""

import math

import pytest

from src.strategy.probability_gate import GateThresholds, evaluate_gate


@pytest.fixture
def thresholds():
    return GateThresholds(p_min=0.55, n_min=50, bucket_min=0.0)


def test_gate_passes(make_forecast, thresholds):
    result = evaluate_gate(make_forecast(probability=0.60, sample_count=60, recent_avg_return=0.01), thresholds)

    assert result.passed
    assert result.describe() == "p:ok n:ok bucket:ok"


def test_gate_thresholds_inclusive(make_forecast, thresholds):
    forecast = make_forecast(probability=0.55, sample_count=50, recent_avg_return=0.0)
    assert evaluate_gate(forecast, thresholds).passed


@pytest.mark.parametrize(
    "probability,sample_count,recent",
    [
        (0.5499, 60, 0.01),
        (0.60, 49, 0.01),
        (0.60, 60, -0.0001),
    ],
)
def test_gate_fails_on_any_check(make_forecast, thresholds, probability, sample_count, recent):
    forecast = make_forecast(probability=probability, sample_count=sample_count, recent_avg_return=recent)
    assert not evaluate_gate(forecast, thresholds).passed


def test_missing_bucket_passes_with_zero_floor(make_forecast, thresholds):
    result = evaluate_gate(make_forecast(recent_avg_return=None), thresholds)

    assert result.passed
    assert not result.bucket_present
    assert "bucket:missing-ok" in result.describe()


def test_missing_bucket_passes_with_negative_floor(make_forecast):
    result = evaluate_gate(make_forecast(recent_avg_return=None), GateThresholds(bucket_min=-0.001))
    assert result.passed


def test_missing_bucket_fails_with_positive_floor(make_forecast):
    result = evaluate_gate(make_forecast(recent_avg_return=None), GateThresholds(bucket_min=0.001))

    assert not result.passed
    assert not result.bucket_ok
    assert "bucket:missing" in result.describe()


def test_non_finite_bucket_treated_as_missing(make_forecast, thresholds):
    result = evaluate_gate(make_forecast(recent_avg_return=math.nan), thresholds)

    assert result.passed
    assert not result.bucket_present


@pytest.mark.parametrize("probability", [math.nan, math.inf, None])
def test_non_finite_probability_fails(make_forecast, thresholds, probability):
    result = evaluate_gate(make_forecast(probability=probability), thresholds)

    assert not result.passed
    assert not result.probability_ok


def test_non_finite_sample_count_fails(make_forecast, thresholds):
    result = evaluate_gate(make_forecast(sample_count=math.nan), thresholds)
    assert not result.sample_ok
    assert not result.passed


# ============================================================================
# Monotonicity Tests
# ============================================================================

PROBABILITIES = [0.0, 0.3, 0.5, 0.5499, 0.55, 0.56, 0.7, 1.0]
SAMPLE_COUNTS = [0, 10, 49, 50, 51, 100, 10_000]


@pytest.mark.parametrize("sample_count", [0, 49, 50, 200])
@pytest.mark.parametrize("recent", [None, -0.01, 0.0, 0.02])
def test_gate_monotonic_in_probability(make_forecast, thresholds, sample_count, recent):
    passed = [
        evaluate_gate(
            make_forecast(probability=p, sample_count=sample_count, recent_avg_return=recent),
            thresholds,
        ).passed
        for p in PROBABILITIES
    ]
    assert all(earlier <= later for earlier, later in zip(passed, passed[1:]))


@pytest.mark.parametrize("probability", [0.4, 0.55, 0.9])
@pytest.mark.parametrize("recent", [None, -0.01, 0.0, 0.02])
def test_gate_monotonic_in_sample_count(make_forecast, thresholds, probability, recent):
    passed = [
        evaluate_gate(
            make_forecast(probability=probability, sample_count=n, recent_avg_return=recent),
            thresholds,
        ).passed
        for n in SAMPLE_COUNTS
    ]
    assert all(earlier <= later for earlier, later in zip(passed, passed[1:]))
