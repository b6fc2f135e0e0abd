"""
Composite signal: gate + dip + standby heuristic -> one signal state.

Priority chain (exactly one state per evaluation):
    ACTIVE   gate passes and a dip (flip) is in the window
    STANDBY  gate passes, no dip yet, and >= 2 of 3 standby cues
    WATCH    gate passes
    NONE     otherwise

Standby cues look at the last few minutes before the anchor (plus any
in-window samples after it):
    1. rising-near-threshold: rsi <= threshold + margin and delta(rsi) >= slope
    2. near-band: price at/below the lower band or within tolerance_pct above it
    3. soft-rejection: delta(rsi) >= slope / 2 while price stays above the band

The cue constants are empirical defaults, exposed through StandbyConfig.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from src.api.data_protocol import ForecastRecord, PricePoint
from src.indicators.series import IndicatorConfig, IndicatorSeries, build_indicator_series
from src.strategy.probability_gate import GateResult, GateThresholds, evaluate_gate
from src.strategy.window_scanner import ScannerConfig, ScanResult, scan_window, window_indices


class SignalKind(str, Enum):
    """Composite signal states, weakest to strongest."""

    NONE = "none"
    WATCH = "watch"
    STANDBY = "standby"
    ACTIVE = "active"


class InsufficientDataError(Exception):
    """Not enough price history around the reference timestamp to evaluate."""


@dataclass(frozen=True)
class StandbyConfig:
    """Standby heuristic parameters."""

    rsi_margin: float = 4.0
    rsi_slope: float = 0.8
    band_tolerance_pct: float = 0.15
    lookback_minutes: int = 10
    min_cues: int = 2


@dataclass(frozen=True)
class SignalConfig:
    """Everything compute_signal needs."""

    indicators: IndicatorConfig = IndicatorConfig()
    scanner: ScannerConfig = ScannerConfig()
    gate: GateThresholds = GateThresholds()
    standby: StandbyConfig = StandbyConfig()


@dataclass(frozen=True)
class StandbyCues:
    """Which standby cues fired."""

    rising_near_threshold: bool = False
    near_band: bool = False
    soft_rejection: bool = False

    @property
    def count(self) -> int:
        return int(self.rising_near_threshold) + int(self.near_band) + int(self.soft_rejection)

    @property
    def notes(self) -> list[str]:
        notes = []
        if self.rising_near_threshold:
            notes.append("RSI rising")
        if self.near_band:
            notes.append("near band")
        if self.soft_rejection:
            notes.append("rejection")
        return notes


@dataclass(frozen=True)
class CompositeSignal:
    """Result of one evaluation for one entity."""

    entity_id: str
    state: SignalKind
    gate: GateResult
    scan: ScanResult
    cues: StandbyCues = field(default_factory=StandbyCues)
    standby: bool = False
    reference_time: Optional[datetime] = None
    anchor_time: Optional[datetime] = None
    rsi: Optional[float] = None
    price: Optional[float] = None
    band_lower: Optional[float] = None

    @property
    def combined(self) -> bool:
        """Tradeable: gate and dip together."""
        return self.gate.passed and self.scan.dip

    @property
    def reason_text(self) -> str:
        notes = ",".join(self.cues.notes) or "-"
        return (
            f"gate:{self.gate.passed} dip:{self.scan.dip} standby:{self.standby} "
            f"cues:{self.cues.count} ({notes}) [{self.gate.describe()}]"
        )


def evaluate_standby_cues(
    series: IndicatorSeries,
    anchor_index: int,
    rsi_threshold: float,
    window_minutes: float,
    config: StandbyConfig = StandbyConfig(),
) -> StandbyCues:
    """
    Evaluate the three standby cues over the recent part of the window.

    Malformed samples (NaN) never set a cue.
    """
    if anchor_index < 0 or anchor_index >= len(series):
        return StandbyCues()

    center = series.timestamps[anchor_index]
    recent_start = center - pd.Timedelta(minutes=config.lookback_minutes)
    tolerance = config.band_tolerance_pct / 100.0

    rising = near_band = rejection = False

    with np.errstate(invalid="ignore", divide="ignore"):
        for j in window_indices(series, anchor_index, window_minutes):
            if series.timestamps[j] < recent_start:
                continue

            rsi_now = series.oscillator[j]
            rsi_prev = series.oscillator[j - 1] if j > 0 else np.nan
            delta = rsi_now - rsi_prev
            price = series.prices[j]
            lower = series.band_lower[j]
            band_ok = bool(np.isfinite(lower)) and bool(np.isfinite(price))

            if rsi_now <= rsi_threshold + config.rsi_margin and delta >= config.rsi_slope:
                rising = True

            if band_ok and (price <= lower or (price > 0 and (price - lower) / price <= tolerance)):
                near_band = True

            if band_ok and delta >= config.rsi_slope / 2 and price > lower:
                rejection = True

    return StandbyCues(
        rising_near_threshold=rising,
        near_band=near_band,
        soft_rejection=rejection,
    )


def compose_signal(
    entity_id: str,
    gate: GateResult,
    scan: ScanResult,
    cues: StandbyCues = StandbyCues(),
    min_cues: int = 2,
) -> CompositeSignal:
    """
    Combine gate, dip and standby cues into exactly one state.

    Cues only count when the gate passed and there is no dip yet.
    """
    standby = gate.passed and not scan.dip and cues.count >= min_cues

    if gate.passed and scan.dip:
        state = SignalKind.ACTIVE
    elif standby:
        state = SignalKind.STANDBY
    elif gate.passed:
        state = SignalKind.WATCH
    else:
        state = SignalKind.NONE

    return CompositeSignal(
        entity_id=entity_id,
        state=state,
        gate=gate,
        scan=scan,
        cues=cues,
        standby=standby,
    )


def _finite_or_none(value) -> Optional[float]:
    value = float(value)
    return value if np.isfinite(value) else None


def compute_signal(
    forecast: ForecastRecord,
    prices: Sequence[PricePoint],
    config: SignalConfig = SignalConfig(),
) -> CompositeSignal:
    """
    Compute the composite signal for one entity from its inputs alone.

    Pure: the same forecast and prices always give the same signal.

    Raises:
        InsufficientDataError: no sample at/before the reference timestamp,
            or the band is not computable there yet
    """
    series = build_indicator_series(prices, config.indicators)
    gate = evaluate_gate(forecast, config.gate)

    t0 = forecast.anchor_time
    scan = scan_window(
        series,
        t0,
        window_minutes=config.scanner.window_minutes,
        rsi_threshold=config.scanner.rsi_threshold,
        mode=config.scanner.mode,
    )

    if not scan.anchored:
        raise InsufficientDataError(f"no price sample at or before {t0.isoformat()}")
    if not series.band_available(scan.anchor_index):
        raise InsufficientDataError(
            f"only {scan.anchor_index + 1} samples before reference time, "
            f"need {config.indicators.bollinger_period}"
        )

    cues = StandbyCues()
    if gate.passed and not scan.dip:
        cues = evaluate_standby_cues(
            series,
            scan.anchor_index,
            rsi_threshold=config.scanner.rsi_threshold,
            window_minutes=config.scanner.window_minutes,
            config=config.standby,
        )

    signal = compose_signal(
        forecast.entity_id,
        gate,
        scan,
        cues,
        min_cues=config.standby.min_cues,
    )

    i0 = scan.anchor_index
    return replace(
        signal,
        reference_time=t0,
        anchor_time=series.timestamps[i0].to_pydatetime(),
        rsi=_finite_or_none(series.oscillator[i0]),
        price=_finite_or_none(series.prices[i0]),
        band_lower=_finite_or_none(series.band_lower[i0]),
    )
