"""
Indicator series shared by the dip scanner and the standby heuristic.

Builds the parallel arrays (timestamps, prices, RSI, lower band) once per
evaluation from a price window. Everything here is a pure function of the
prices and the IndicatorConfig; the arrays are read-only once built.
"""

from dataclasses import dataclass
from typing import Iterable, Sequence

import numpy as np
import pandas as pd

from src.api.data_protocol import PricePoint
from src.indicators.bollinger import calculate_bollinger_bands
from src.indicators.rsi import calculate_rsi


@dataclass(frozen=True)
class IndicatorConfig:
    """Indicator parameters."""

    rsi_period: int = 14
    bollinger_period: int = 20
    bollinger_std: float = 1.5


def _frozen(values) -> np.ndarray:
    array = np.asarray(values, dtype=float).copy()
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class IndicatorSeries:
    """
    Index-aligned indicator arrays for one entity.

    band_lower holds NaN where the band is not computable yet.
    """

    timestamps: pd.DatetimeIndex
    prices: np.ndarray
    oscillator: np.ndarray
    band_lower: np.ndarray

    def __post_init__(self) -> None:
        n = len(self.timestamps)
        if not (len(self.prices) == len(self.oscillator) == len(self.band_lower) == n):
            raise ValueError("indicator arrays must be the same length")

    def __len__(self) -> int:
        return len(self.timestamps)

    @classmethod
    def from_arrays(
        cls,
        timestamps: Iterable,
        prices: Sequence[float],
        oscillator: Sequence[float],
        band_lower: Sequence[float],
    ) -> "IndicatorSeries":
        """Build a series from precomputed arrays (timestamps are coerced to UTC)."""
        index = pd.DatetimeIndex(pd.to_datetime(list(timestamps), utc=True))
        return cls(
            timestamps=index,
            prices=_frozen(prices),
            oscillator=_frozen(oscillator),
            band_lower=_frozen(band_lower),
        )

    def band_available(self, index: int) -> bool:
        """True when the lower band is defined at index."""
        return 0 <= index < len(self) and bool(np.isfinite(self.band_lower[index]))


def build_indicator_series(
    points: Sequence[PricePoint],
    config: IndicatorConfig = IndicatorConfig(),
) -> IndicatorSeries:
    """
    Compute RSI and the lower Bollinger band for ascending price points.

    Non-finite prices are carried as NaN; they never raise.

    Args:
        points: Price samples ordered ascending by timestamp
        config: Indicator parameters

    Returns:
        IndicatorSeries aligned index-for-index with points
    """
    prices = pd.Series([p.price for p in points], dtype=float)
    prices = prices.replace([np.inf, -np.inf], np.nan)

    rsi = calculate_rsi(prices, period=config.rsi_period)
    bands = calculate_bollinger_bands(
        prices,
        period=config.bollinger_period,
        std_dev=config.bollinger_std,
    )

    return IndicatorSeries.from_arrays(
        timestamps=[p.timestamp for p in points],
        prices=prices.to_numpy(),
        oscillator=rsi.to_numpy(),
        band_lower=bands.lower_band.to_numpy(),
    )
