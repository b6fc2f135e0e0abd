"""
Alert policy: which message (if any) a state change produces.

Every (previous state, new state) pair maps to one action in
TRANSITION_ACTIONS, so the whole debounce policy lives in one table:

    previous \\ new   NONE          WATCH         STANDBY   ACTIVE
    NONE             -             STATE_CHANGE  STANDBY   ACTIVATE
    WATCH            STATE_CHANGE  -             STANDBY   ACTIVATE
    STANDBY          STATE_CHANGE  STATE_CHANGE  -         ACTIVATE
    ACTIVE           CANCEL        CANCEL        CANCEL    -

Rules layered on top:
- Any change is a TRANSITION alert, sent immediately.
- The standby-flavoured alert is debounced: staying in standby is
  NO_CHANGE, and a new standby alert waits standby_cooldown_minutes after
  the last one. Inside the cooldown, or with standby alerts disabled,
  entering standby is reported as a plain STATE_CHANGE instead.
- Unchanged state may produce a HEARTBEAT, depending on heartbeat mode and
  quiet hours (local time, intervals may cross midnight).
- An entity evaluated for the first time starts from NONE.
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

import structlog

from src.api.data_protocol import ensure_utc
from src.state.repository import AlertKind, SignalState
from src.strategy.signal_composer import CompositeSignal, SignalKind

logger = structlog.get_logger(__name__)


class AlertAction(str, Enum):
    """What to do for one evaluation."""

    NO_CHANGE = "no_change"
    STATE_CHANGE = "state_change"
    STANDBY = "standby"
    ACTIVATE = "activate"
    CANCEL = "cancel"
    HEARTBEAT = "heartbeat"


_N, _W, _S, _A = SignalKind.NONE, SignalKind.WATCH, SignalKind.STANDBY, SignalKind.ACTIVE

TRANSITION_ACTIONS: dict[tuple[SignalKind, SignalKind], AlertAction] = {
    (_N, _N): AlertAction.NO_CHANGE,
    (_N, _W): AlertAction.STATE_CHANGE,
    (_N, _S): AlertAction.STANDBY,
    (_N, _A): AlertAction.ACTIVATE,
    (_W, _N): AlertAction.STATE_CHANGE,
    (_W, _W): AlertAction.NO_CHANGE,
    (_W, _S): AlertAction.STANDBY,
    (_W, _A): AlertAction.ACTIVATE,
    (_S, _N): AlertAction.STATE_CHANGE,
    (_S, _W): AlertAction.STATE_CHANGE,
    (_S, _S): AlertAction.NO_CHANGE,
    (_S, _A): AlertAction.ACTIVATE,
    (_A, _N): AlertAction.CANCEL,
    (_A, _W): AlertAction.CANCEL,
    (_A, _S): AlertAction.CANCEL,
    (_A, _A): AlertAction.NO_CHANGE,
}


class HeartbeatMode(str, Enum):
    """Heartbeat cadence."""

    OFF = "off"
    EVERY_RUN = "every_run"
    HOURLY = "hourly"


@dataclass(frozen=True)
class QuietHours:
    """Local time-of-day interval [start, end) without heartbeats."""

    start: time
    end: time

    @classmethod
    def parse(cls, value: str) -> "QuietHours":
        """Parse 'HH:MM-HH:MM'."""
        try:
            first, second = value.strip().split("-")
            h1, m1 = (int(part) for part in first.split(":"))
            h2, m2 = (int(part) for part in second.split(":"))
            return cls(start=time(h1, m1), end=time(h2, m2))
        except ValueError as e:
            raise ValueError(f"Invalid quiet hours '{value}', expected HH:MM-HH:MM") from e

    def contains(self, moment: time) -> bool:
        current = (moment.hour, moment.minute)
        start = (self.start.hour, self.start.minute)
        end = (self.end.hour, self.end.minute)
        if start <= end:
            return start <= current < end
        # Crosses midnight
        return current >= start or current < end


@dataclass(frozen=True)
class AlertPolicyConfig:
    """Alert policy configuration."""

    standby_alerts_enabled: bool = True
    standby_cooldown_minutes: int = 20
    heartbeat_mode: HeartbeatMode = HeartbeatMode.HOURLY
    quiet_hours: Optional[QuietHours] = None
    timezone_name: str = "Asia/Kuala_Lumpur"


@dataclass(frozen=True)
class AlertDecision:
    """Policy outcome for one evaluation."""

    action: AlertAction
    previous_state: SignalKind
    new_state: SignalKind
    send: bool
    alert_kind: Optional[AlertKind] = None
    suppressed_reason: Optional[str] = None

    @property
    def is_transition(self) -> bool:
        return self.previous_state != self.new_state


class AlertPolicy:
    """
    Decides alerts from the stored state and the freshly computed one.

    Stateless: everything it needs is in the stored SignalState.
    """

    def __init__(self, config: Optional[AlertPolicyConfig] = None):
        self.config = config or AlertPolicyConfig()
        self._tz = ZoneInfo(self.config.timezone_name)

    def local_time(self, now: datetime) -> datetime:
        """Convert a UTC instant to the configured local timezone."""
        return ensure_utc(now).astimezone(self._tz)

    def decide(
        self,
        previous: Optional[SignalState],
        new_state: SignalKind,
        now: datetime,
    ) -> AlertDecision:
        """
        Decide what to send for this evaluation.

        Args:
            previous: Stored state (None for a never-seen entity)
            new_state: Freshly computed composite state
            now: Evaluation time (UTC)
        """
        old_state = previous.state if previous else SignalKind.NONE
        action = TRANSITION_ACTIONS[(old_state, new_state)]

        if action == AlertAction.NO_CHANGE:
            if self._heartbeat_due(previous, now):
                return AlertDecision(
                    action=AlertAction.HEARTBEAT,
                    previous_state=old_state,
                    new_state=new_state,
                    send=True,
                    alert_kind=AlertKind.HEARTBEAT,
                )
            return AlertDecision(
                action=AlertAction.NO_CHANGE,
                previous_state=old_state,
                new_state=new_state,
                send=False,
            )

        suppressed_reason = None
        if action == AlertAction.STANDBY:
            suppressed_reason = self._standby_blocked_reason(previous, now)
            if suppressed_reason:
                # Still a transition: plain state-change text instead of the standby alert
                logger.debug("standby_alert_suppressed", reason=suppressed_reason, new_state=new_state.value)
                action = AlertAction.STATE_CHANGE

        return AlertDecision(
            action=action,
            previous_state=old_state,
            new_state=new_state,
            send=True,
            alert_kind=AlertKind.TRANSITION,
            suppressed_reason=suppressed_reason,
        )

    def _standby_blocked_reason(self, previous: Optional[SignalState], now: datetime) -> Optional[str]:
        """Return why a standby alert may not fire, or None if it may."""
        if not self.config.standby_alerts_enabled:
            return "standby alerts disabled"

        last = previous.last_standby_alert_at if previous else None
        if last is not None and self.config.standby_cooldown_minutes > 0:
            elapsed = ensure_utc(now) - ensure_utc(last)
            cooldown = timedelta(minutes=self.config.standby_cooldown_minutes)
            if elapsed < cooldown:
                remaining = (cooldown - elapsed).total_seconds() / 60
                return f"cooldown {remaining:.1f}min left"

        return None

    def in_quiet_hours(self, now: datetime) -> bool:
        if self.config.quiet_hours is None:
            return False
        return self.config.quiet_hours.contains(self.local_time(now).time())

    def _heartbeat_due(self, previous: Optional[SignalState], now: datetime) -> bool:
        mode = self.config.heartbeat_mode
        if mode == HeartbeatMode.OFF:
            return False
        if self.in_quiet_hours(now):
            return False
        if mode == HeartbeatMode.EVERY_RUN:
            return True

        # Hourly: first run in each local clock hour
        last = previous.last_heartbeat_at if previous else None
        if last is None:
            return True
        local_now = self.local_time(now)
        local_last = self.local_time(last)
        return (local_now.date(), local_now.hour) != (local_last.date(), local_last.hour)

    def next_state(
        self,
        entity_id: str,
        previous: Optional[SignalState],
        signal: CompositeSignal,
        decision: AlertDecision,
        now: datetime,
        delivered: bool,
    ) -> SignalState:
        """
        Build the state row to persist after this evaluation.

        Alert timestamps only advance when the alert was actually delivered,
        so a failed send does not start a cooldown.
        """
        now = ensure_utc(now)
        base = previous or SignalState(entity_id=entity_id, state=SignalKind.NONE, state_since=now)

        changes = {
            "state": signal.state,
            "reason_text": signal.reason_text,
            "updated_at": now,
        }

        if decision.is_transition:
            changes["state_since"] = now
            if signal.state == SignalKind.ACTIVE:
                changes["last_active_at"] = now

        if delivered and decision.alert_kind is not None:
            changes["last_alert_kind"] = decision.alert_kind
            changes["last_alert_at"] = now
            if decision.action == AlertAction.STANDBY:
                changes["last_standby_alert_at"] = now
            elif decision.action == AlertAction.HEARTBEAT:
                changes["last_heartbeat_at"] = now

        return base.evolve(**changes)
