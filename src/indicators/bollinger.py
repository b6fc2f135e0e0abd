"""
Bollinger Bands indicator.

Bollinger Bands are a volatility indicator that consists of three bands:
- Middle Band: Simple Moving Average (SMA) of price
- Upper Band: Middle Band + (standard deviation * multiplier)
- Lower Band: Middle Band - (standard deviation * multiplier)

Algorithm:
    Middle Band = SMA(price, period)
    Standard Deviation = population STD(price, period)   (ddof=0)
    Upper Band = Middle + (StdDev * multiplier)
    Lower Band = Middle - (StdDev * multiplier)

    The window is trailing and includes the current sample. Indices with
    fewer than `period` samples have no band: they are NaN, never zero.

    Only the lower band feeds the dip detector (band touch) and the
    standby near-band cue; the other bands are kept for snapshots.

Parameters:
    - period: 20
    - std_dev: 1.5 (tighter than the textbook 2.0 so short dips register)
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd


@dataclass
class BollingerResult:
    """Bollinger Bands calculation result."""

    upper_band: pd.Series
    middle_band: pd.Series
    lower_band: pd.Series
    std: pd.Series


def calculate_bollinger_bands(
    prices: pd.Series,
    period: int = 20,
    std_dev: float = 1.5,
) -> BollingerResult:
    """
    Calculate Bollinger Bands.

    Args:
        prices: Series of prices, ascending in time
        period: SMA period (default: 20)
        std_dev: Standard deviation multiplier (default: 1.5)

    Returns:
        BollingerResult with all band values (NaN until the window fills)
    """
    if period < 1:
        raise ValueError(f"period must be >= 1, got {period}")

    prices = prices.astype(float).replace([np.inf, -np.inf], np.nan)

    middle_band = prices.rolling(window=period, min_periods=period).mean()
    rolling_std = prices.rolling(window=period, min_periods=period).std(ddof=0)

    # Rounding can leave a tiny negative variance behind on flat windows
    rolling_std = rolling_std.clip(lower=0.0)

    upper_band = middle_band + (rolling_std * std_dev)
    lower_band = middle_band - (rolling_std * std_dev)

    return BollingerResult(
        upper_band=upper_band,
        middle_band=middle_band,
        lower_band=lower_band,
        std=rolling_std,
    )


def touches_lower_band(price: float, lower_band: float) -> bool:
    """True when price is at or below an available lower band."""
    if pd.isna(price) or pd.isna(lower_band):
        return False
    return price <= lower_band
