"""
Relative Strength Index (RSI) oscillator.

RSI measures momentum by comparing the magnitude of recent gains to recent losses.
Values range from 0 to 100:
- < 35: Oversold (dip territory for the flip detector)
- > 65: Overbought

Algorithm:
    This implementation uses Wilder's Smoothed Moving Average (SMMA), which is
    the standard RSI calculation method. Wilder's smoothing uses alpha = 1/period
    rather than the standard EMA formula of alpha = 2/(period+1).

    Seeding:
        The first sample has no prior delta, so its delta is taken as 0. The
        average gain/loss start at the first observed delta and every later
        sample is smoothed:

        avg_gain(i) = alpha * gain(i) + (1 - alpha) * avg_gain(i-1)
        avg_loss(i) = alpha * loss(i) + (1 - alpha) * avg_loss(i-1)

    This is exactly pandas' ewm(alpha=1/period, adjust=False).

    When avg_loss is 0 the oscillator is pinned to 100 (no losses at all,
    including a perfectly flat series).

Parameters:
    - period: 14 (Wilder's original recommendation)
"""

import numpy as np
import pandas as pd


def calculate_rsi(
    prices: pd.Series,
    period: int = 14,
) -> pd.Series:
    """
    Calculate RSI using Wilder's Smoothed Moving Average.

    Args:
        prices: Series of prices, ascending in time
        period: RSI calculation period (default: 14)

    Returns:
        Series of RSI values (0-100), aligned with prices
    """
    if period < 1:
        raise ValueError(f"period must be >= 1, got {period}")

    prices = prices.astype(float).replace([np.inf, -np.inf], np.nan)
    delta = prices.diff()
    if len(delta) > 0:
        # First element has no prior delta
        delta.iloc[0] = 0.0

    gains = delta.clip(lower=0.0)
    losses = (-delta).clip(lower=0.0)

    alpha = 1.0 / period
    avg_gains = gains.ewm(alpha=alpha, adjust=False).mean()
    avg_losses = losses.ewm(alpha=alpha, adjust=False).mean()

    with np.errstate(divide="ignore", invalid="ignore"):
        rs = avg_gains / avg_losses
        rsi = 100.0 - (100.0 / (1.0 + rs))

    # No losses in the smoothing memory
    rsi = rsi.where(avg_losses != 0, 100.0)

    # Malformed prices stay NaN
    rsi = rsi.where(avg_losses.notna() & avg_gains.notna())

    return rsi


def is_oversold(rsi_value: float, threshold: float = 35.0) -> bool:
    """True when the RSI value is strictly below the threshold (NaN is never oversold)."""
    if pd.isna(rsi_value):
        return False
    return rsi_value < threshold
