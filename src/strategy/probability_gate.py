"""
Probability gate over the latest forecast record.

A forecast passes when all three checks hold:
- probability >= p_min
- sample_count >= n_min
- bucket check on the recent realized average return:
    * value present and finite: recent_avg_return >= bucket_min
    * value missing/non-finite: pass only if bucket_min <= 0

Non-finite probabilities or sample counts fail the gate instead of raising.
"""

import math
from dataclasses import dataclass
from typing import Optional

from src.api.data_protocol import ForecastRecord


@dataclass(frozen=True)
class GateThresholds:
    """Probability gate thresholds."""

    p_min: float = 0.55
    n_min: int = 50
    bucket_min: float = 0.0


@dataclass(frozen=True)
class GateResult:
    """Gate outcome with the individual checks."""

    passed: bool
    probability_ok: bool
    sample_ok: bool
    bucket_ok: bool
    bucket_present: bool

    def describe(self) -> str:
        """Short reason string, e.g. 'p:ok n:ok bucket:missing-ok'."""
        if self.bucket_present:
            bucket = "ok" if self.bucket_ok else "low"
        else:
            bucket = "missing-ok" if self.bucket_ok else "missing"
        return (
            f"p:{'ok' if self.probability_ok else 'low'} "
            f"n:{'ok' if self.sample_ok else 'low'} "
            f"bucket:{bucket}"
        )


def _as_finite(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def evaluate_gate(
    forecast: ForecastRecord,
    thresholds: GateThresholds = GateThresholds(),
) -> GateResult:
    """
    Evaluate a forecast against the gate thresholds.

    Args:
        forecast: Latest forecast for the entity
        thresholds: p_min / n_min / bucket_min

    Returns:
        GateResult (never raises on malformed numbers)
    """
    probability = _as_finite(forecast.probability)
    samples = _as_finite(forecast.sample_count)
    recent = _as_finite(forecast.recent_avg_return)

    probability_ok = probability is not None and probability >= thresholds.p_min
    sample_ok = samples is not None and samples >= thresholds.n_min

    if recent is not None:
        bucket_ok = recent >= thresholds.bucket_min
    else:
        bucket_ok = thresholds.bucket_min <= 0

    return GateResult(
        passed=probability_ok and sample_ok and bucket_ok,
        probability_ok=probability_ok,
        sample_ok=sample_ok,
        bucket_ok=bucket_ok,
        bucket_present=recent is not None,
    )
