"""
Plain-text alert messages.

One formatter per alert action. Timestamps are shown in the configured
display timezone; the trade plan (TP/SL/max hold) is informational only.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from src.api.data_protocol import ForecastRecord, ensure_utc
from src.strategy.alert_policy import AlertAction
from src.strategy.signal_composer import CompositeSignal, SignalKind


@dataclass(frozen=True)
class MessageConfig:
    """Message rendering configuration."""

    timezone_name: str = "Asia/Kuala_Lumpur"
    window_minutes: int = 30
    take_profit_pct: float = 0.30
    stop_loss_pct: float = 0.20
    max_hold_hours: float = 2.0


_STATE_LABELS = {
    SignalKind.NONE: "None",
    SignalKind.WATCH: "👀 Watch",
    SignalKind.STANDBY: "🟡 Standby",
    SignalKind.ACTIVE: "⚡ BUY active",
}


def _local(value: datetime, config: MessageConfig) -> str:
    local = ensure_utc(value).astimezone(ZoneInfo(config.timezone_name))
    return local.strftime("%Y-%m-%d %H:%M %Z")


def _pct(value: Optional[float], signed: bool = True) -> str:
    if value is None:
        return "n/a"
    sign = "+" if signed and value >= 0 else ""
    return f"{sign}{value * 100:.2f}%"


def _forecast_line(forecast: ForecastRecord) -> str:
    return (
        f"p_up {forecast.probability * 100:.1f}% • n={forecast.sample_count} • "
        f"recent {_pct(forecast.recent_avg_return)}"
    )


def minutes_left(signal: CompositeSignal, config: MessageConfig, now: datetime) -> int:
    """Whole minutes until the dip window closes (never negative)."""
    if signal.reference_time is None:
        return 0
    window_end = ensure_utc(signal.reference_time) + timedelta(minutes=config.window_minutes)
    return max(0, round((window_end - ensure_utc(now)).total_seconds() / 60))


def format_active(signal: CompositeSignal, forecast: ForecastRecord, config: MessageConfig) -> str:
    t0 = signal.reference_time or forecast.anchor_time
    entry_until = t0 + timedelta(minutes=config.window_minutes)
    exit_by = t0 + timedelta(hours=config.max_hold_hours)
    return (
        f"⚡ BUY - {signal.entity_id.upper()}\n"
        f"TP +{config.take_profit_pct:.2f}% • SL -{config.stop_loss_pct:.2f}% • "
        f"max {config.max_hold_hours:g}h\n"
        f"Entry until {_local(entry_until, config)} • Exit by {_local(exit_by, config)}\n"
        f"{_forecast_line(forecast)}"
    )


def format_cancel(signal: CompositeSignal) -> str:
    return (
        f"⛔ Cancel - {signal.entity_id.upper()}\n"
        f"Window expired or gate/dip off (now {signal.state.value})"
    )


def format_standby(signal: CompositeSignal, config: MessageConfig, now: datetime) -> str:
    cues = ", ".join(signal.cues.notes) or "no cues"
    return (
        f"🟡 Standby - {signal.entity_id.upper()}\n"
        f"Gate OK; near flip ({cues}) - window ~{minutes_left(signal, config, now)}m left"
    )


def format_state_change(signal: CompositeSignal, previous: SignalKind) -> str:
    return (
        f"{signal.entity_id.upper()}: {_STATE_LABELS[previous]} -> {_STATE_LABELS[signal.state]}\n"
        f"{signal.reason_text}"
    )


def format_heartbeat(
    signal: CompositeSignal,
    forecast: ForecastRecord,
    config: MessageConfig,
    now: datetime,
) -> str:
    status = _STATE_LABELS[signal.state]
    if signal.state == SignalKind.STANDBY:
        status = f"{status} (near flip) - ~{minutes_left(signal, config, now)}m left"
    return (
        f"⏱️ Heartbeat {_local(now, config)}\n\n"
        f"{signal.entity_id.upper()} • {_forecast_line(forecast)}\n"
        f"• Signal: {status}"
    )


def format_alert(
    action: AlertAction,
    signal: CompositeSignal,
    forecast: ForecastRecord,
    previous: SignalKind,
    config: MessageConfig,
    now: datetime,
) -> Optional[str]:
    """Render the message for an alert action (None when nothing is sent)."""
    if action == AlertAction.ACTIVATE:
        return format_active(signal, forecast, config)
    if action == AlertAction.CANCEL:
        return format_cancel(signal)
    if action == AlertAction.STANDBY:
        return format_standby(signal, config, now)
    if action == AlertAction.STATE_CHANGE:
        return format_state_change(signal, previous)
    if action == AlertAction.HEARTBEAT:
        return format_heartbeat(signal, forecast, config, now)
    return None
