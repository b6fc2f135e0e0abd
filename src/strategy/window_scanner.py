"""
Dip (flip) detection around a reference timestamp.

The forecast refers to a moment in time (its reference timestamp). The
scanner anchors on the last price sample at or before that moment and looks
at every sample within +/- window_minutes of the anchor for a reversal:

- Flip: RSI turns up right after being oversold, or while price sits at or
  below the lower Bollinger band:
      rsi[j] > rsi[j-1] and (rsi[j-1] < threshold or price[j] <= lower[j])
- Oversold cue: rsi[j] < threshold
- Band touch cue: price[j] <= lower[j]

Combination policies:
- FLIP (default, the only one that gates live alerts): any flip in window
- AND: an oversold sample and a band-touch sample somewhere in the window
  (not necessarily the same sample)
- OR: either cue anywhere in the window

AND/OR are kept for offline comparison of dip definitions.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

import numpy as np
import pandas as pd

from src.indicators.series import IndicatorSeries


class DipMode(str, Enum):
    """How window cues combine into a dip."""

    FLIP = "flip"
    AND = "and"
    OR = "or"


@dataclass(frozen=True)
class ScannerConfig:
    """Window scanner parameters."""

    window_minutes: int = 30
    rsi_threshold: float = 35.0
    mode: DipMode = DipMode.FLIP


@dataclass(frozen=True)
class ScanResult:
    """Outcome of a window scan."""

    dip: bool
    anchor_index: int
    saw_oversold: bool = False
    saw_band_touch: bool = False
    saw_flip: bool = False
    flip_index: Optional[int] = None
    mode: DipMode = DipMode.FLIP

    @property
    def anchored(self) -> bool:
        return self.anchor_index >= 0


def _to_utc_timestamp(value) -> pd.Timestamp:
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        return ts.tz_localize("UTC")
    return ts.tz_convert("UTC")


def index_at_or_before(timestamps: pd.DatetimeIndex, t0: datetime) -> int:
    """
    Binary search for the last index whose timestamp is <= t0.

    Returns:
        The index, or -1 when every sample is after t0 (or there are none)
    """
    if len(timestamps) == 0:
        return -1
    position = timestamps.searchsorted(_to_utc_timestamp(t0), side="right")
    return int(position) - 1


def window_indices(series: IndicatorSeries, anchor_index: int, window_minutes: float) -> range:
    """
    Contiguous index range whose timestamps are within window_minutes of the anchor.

    Timestamps are ascending, so the qualifying samples always form one run
    around the anchor.
    """
    if anchor_index < 0 or anchor_index >= len(series):
        return range(0)

    half_width = pd.Timedelta(minutes=window_minutes)
    center = series.timestamps[anchor_index]
    start = int(series.timestamps.searchsorted(center - half_width, side="left"))
    stop = int(series.timestamps.searchsorted(center + half_width, side="right"))
    return range(start, stop)


def is_flip(series: IndicatorSeries, j: int, rsi_threshold: float) -> bool:
    """True when sample j is an upward RSI turn out of oversold or off the band."""
    if j <= 0:
        return False
    rsi_now = series.oscillator[j]
    rsi_prev = series.oscillator[j - 1]
    # NaN comparisons are False, so malformed samples never flip
    if not rsi_now > rsi_prev:
        return False
    return bool(rsi_prev < rsi_threshold or series.prices[j] <= series.band_lower[j])


def _scan_order(indices: range, anchor_index: int):
    """Anchor first, then backwards, then forwards."""
    yield from range(anchor_index, indices.start - 1, -1)
    yield from range(anchor_index + 1, indices.stop)


def scan_window(
    series: IndicatorSeries,
    t0: datetime,
    window_minutes: float = 30,
    rsi_threshold: float = 35.0,
    mode: DipMode = DipMode.FLIP,
) -> ScanResult:
    """
    Scan the indicator window around t0 for a dip.

    Fails closed: with no sample at or before t0 the result is dip=False
    with anchor_index=-1.

    Args:
        series: Indicator arrays for the entity
        t0: Reference timestamp (the forecast's)
        window_minutes: Half-width W of the scan window
        rsi_threshold: Oversold threshold
        mode: Cue combination policy

    Returns:
        ScanResult with the dip flag and the cues that were seen
    """
    anchor_index = index_at_or_before(series.timestamps, t0)
    if anchor_index < 0:
        return ScanResult(dip=False, anchor_index=-1, mode=mode)

    indices = window_indices(series, anchor_index, window_minutes)

    saw_oversold = False
    saw_band_touch = False
    flip_index: Optional[int] = None

    with np.errstate(invalid="ignore"):
        for j in _scan_order(indices, anchor_index):
            if mode == DipMode.FLIP:
                if is_flip(series, j, rsi_threshold):
                    flip_index = j
                    break
                continue

            saw_oversold = saw_oversold or bool(series.oscillator[j] < rsi_threshold)
            saw_band_touch = saw_band_touch or bool(series.prices[j] <= series.band_lower[j])

            if mode == DipMode.OR and (saw_oversold or saw_band_touch):
                break
            if mode == DipMode.AND and saw_oversold and saw_band_touch:
                break

    if mode == DipMode.FLIP:
        dip = flip_index is not None
    elif mode == DipMode.OR:
        dip = saw_oversold or saw_band_touch
    else:
        dip = saw_oversold and saw_band_touch

    return ScanResult(
        dip=dip,
        anchor_index=anchor_index,
        saw_oversold=saw_oversold,
        saw_band_touch=saw_band_touch,
        saw_flip=flip_index is not None,
        flip_index=flip_index,
        mode=mode,
    )


def scan_all_modes(
    series: IndicatorSeries,
    t0: datetime,
    window_minutes: float = 30,
    rsi_threshold: float = 35.0,
) -> dict[DipMode, ScanResult]:
    """Run every dip policy over the same window (offline comparison)."""
    return {
        mode: scan_window(series, t0, window_minutes, rsi_threshold, mode)
        for mode in DipMode
    }
