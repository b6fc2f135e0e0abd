"""
Per-entity evaluation: forecast + prices -> composite signal -> alert -> state.

One evaluation:
1. Load the latest forecast (skip the entity when there is none)
2. Load prices within +/- price_lookback_minutes of the reference timestamp
3. Compute the composite signal (pure, see src.strategy.signal_composer)
4. Ask the alert policy what to send, given the stored state
5. Send the alert (failures are logged, never raised)
6. Upsert the new state

Every step runs under a cooperative per-entity deadline: the remaining time
is handed to the data sources as their request timeout and checked between
steps.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Sequence

import structlog

from src.api.data_protocol import ForecastRecord, ForecastSource, PricePoint, PriceSource, ensure_utc
from src.indicators.series import build_indicator_series
from src.notifications.messages import MessageConfig, format_alert
from src.notifications.notifier import Notifier
from src.state.repository import PersistenceUnavailableError, SignalStateRepository
from src.strategy.alert_policy import AlertDecision, AlertPolicy
from src.strategy.probability_gate import GateResult, evaluate_gate
from src.strategy.signal_composer import (
    CompositeSignal,
    InsufficientDataError,
    SignalConfig,
    compute_signal,
)
from src.strategy.window_scanner import DipMode, scan_all_modes

logger = structlog.get_logger(__name__)


class EvaluationTimeoutError(Exception):
    """An entity's evaluation ran past its deadline."""


class Deadline:
    """Monotonic deadline shared by the steps of one evaluation."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self._expires = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires - time.monotonic())

    def check(self, step: str) -> None:
        if time.monotonic() >= self._expires:
            raise EvaluationTimeoutError(f"deadline of {self.seconds}s exceeded after {step}")


class EvaluationStatus(str, Enum):
    EVALUATED = "evaluated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class EvaluationOutcome:
    """What happened to one entity in one run."""

    entity_id: str
    status: EvaluationStatus
    reason: str = ""
    signal: Optional[CompositeSignal] = None
    decision: Optional[AlertDecision] = None
    message: Optional[str] = None
    delivered: bool = False
    persisted: bool = False

    @property
    def alert_sent(self) -> bool:
        return self.message is not None and self.delivered


class SignalEvaluator:
    """
    Evaluates one entity at a time against the injected sources and stores.

    Holds no per-entity state itself; everything lives in the repository.
    """

    def __init__(
        self,
        forecast_source: ForecastSource,
        price_source: PriceSource,
        repository: SignalStateRepository,
        notifier: Notifier,
        signal_config: Optional[SignalConfig] = None,
        policy: Optional[AlertPolicy] = None,
        message_config: Optional[MessageConfig] = None,
        price_lookback_minutes: int = 90,
        timeout_seconds: float = 30.0,
    ):
        """
        Initialize evaluator.

        Args:
            forecast_source: Latest-forecast reader
            price_source: Price window reader
            repository: Per-entity signal state store
            notifier: Alert sink (Telegram, or the log in dry runs)
            signal_config: Indicator/scanner/gate/standby parameters
            policy: Alert policy (transition table, cooldowns, heartbeats)
            message_config: Message rendering parameters
            price_lookback_minutes: Minutes of prices on each side of t0
            timeout_seconds: Per-entity deadline
        """
        self.forecast_source = forecast_source
        self.price_source = price_source
        self.repository = repository
        self.notifier = notifier
        self.signal_config = signal_config or SignalConfig()
        self.policy = policy or AlertPolicy()
        self.message_config = message_config or MessageConfig()
        self.price_lookback = timedelta(minutes=price_lookback_minutes)
        self.timeout_seconds = timeout_seconds

    def load_inputs(
        self,
        entity_id: str,
        deadline: Deadline,
    ) -> tuple[Optional[ForecastRecord], list[PricePoint]]:
        """Fetch the latest forecast and the price window around it."""
        forecast = self.forecast_source.get_latest_forecast(entity_id, timeout=deadline.remaining())
        deadline.check("forecast")
        if forecast is None:
            return None, []

        t0 = forecast.anchor_time
        prices = self.price_source.get_prices(
            entity_id,
            t0 - self.price_lookback,
            t0 + self.price_lookback,
            timeout=deadline.remaining(),
        )
        deadline.check("prices")
        return forecast, prices

    def evaluate(self, entity_id: str, now: Optional[datetime] = None) -> EvaluationOutcome:
        """
        Run one full evaluation for an entity.

        Raises:
            EvaluationTimeoutError: deadline expired between steps
        """
        now = ensure_utc(now or datetime.now(timezone.utc))
        deadline = Deadline(self.timeout_seconds)
        log = logger.bind(entity_id=entity_id)

        forecast, prices = self.load_inputs(entity_id, deadline)
        if forecast is None:
            log.info("entity_skipped", reason="no forecast")
            return EvaluationOutcome(entity_id, EvaluationStatus.SKIPPED, reason="no forecast")

        try:
            signal = compute_signal(forecast, prices, self.signal_config)
        except InsufficientDataError as e:
            log.info("entity_skipped", reason="insufficient data", detail=str(e), samples=len(prices))
            return EvaluationOutcome(entity_id, EvaluationStatus.SKIPPED, reason=str(e))
        deadline.check("compute")

        try:
            previous = self.repository.get(entity_id)
        except PersistenceUnavailableError as e:
            return EvaluationOutcome(
                entity_id,
                EvaluationStatus.FAILED,
                reason=f"state read failed: {e}",
                signal=signal,
            )
        decision = self.policy.decide(previous, signal.state, now)

        log.info(
            "signal_evaluated",
            state=signal.state.value,
            previous_state=decision.previous_state.value,
            action=decision.action.value,
            gate=signal.gate.passed,
            dip=signal.scan.dip,
            cues=signal.cues.count,
            rsi=round(signal.rsi, 2) if signal.rsi is not None else None,
        )

        message = None
        delivered = False
        if decision.send:
            message = format_alert(
                decision.action,
                signal,
                forecast,
                decision.previous_state,
                self.message_config,
                now,
            )
            delivered = self.notifier.send(message)
            if delivered:
                log.info("alert_sent", action=decision.action.value, kind=decision.alert_kind.value)
            else:
                log.warning("alert_delivery_failed", action=decision.action.value)

        new_state = self.policy.next_state(entity_id, previous, signal, decision, now, delivered)
        outcome = EvaluationOutcome(
            entity_id,
            EvaluationStatus.EVALUATED,
            reason=signal.reason_text,
            signal=signal,
            decision=decision,
            message=message,
            delivered=delivered,
        )

        try:
            self.repository.put(entity_id, new_state)
            outcome.persisted = True
        except PersistenceUnavailableError as e:
            outcome.status = EvaluationStatus.FAILED
            outcome.reason = f"state write failed: {e}"

        return outcome


@dataclass
class SignalSnapshot:
    """Offline view of one entity: gate plus the dip result of every mode."""

    entity_id: str
    reference_time: Optional[datetime]
    gate: GateResult
    dips: dict[DipMode, bool] = field(default_factory=dict)
    signal: Optional[CompositeSignal] = None
    error: Optional[str] = None

    def combined(self, mode: DipMode) -> bool:
        return self.gate.passed and self.dips.get(mode, False)

    def as_dict(self) -> dict:
        return {
            "entity_id": self.entity_id,
            "reference_time": self.reference_time.isoformat() if self.reference_time else None,
            "gate": self.gate.passed,
            "gate_detail": self.gate.describe(),
            "dips": {mode.value: dip for mode, dip in self.dips.items()},
            "combined": {mode.value: self.combined(mode) for mode in self.dips},
            "state": self.signal.state.value if self.signal else None,
            "error": self.error,
        }


def snapshot_signal(
    forecast: ForecastRecord,
    prices: Sequence[PricePoint],
    config: SignalConfig = SignalConfig(),
) -> SignalSnapshot:
    """
    Evaluate the gate and every dip mode for one forecast (pure).

    Insufficient data is reported in the snapshot instead of raised.
    """
    gate = evaluate_gate(forecast, config.gate)
    t0 = forecast.anchor_time

    try:
        signal = compute_signal(forecast, prices, config)
    except InsufficientDataError as e:
        return SignalSnapshot(forecast.entity_id, t0, gate, error=str(e))

    series = build_indicator_series(prices, config.indicators)
    scans = scan_all_modes(
        series,
        t0,
        window_minutes=config.scanner.window_minutes,
        rsi_threshold=config.scanner.rsi_threshold,
    )
    return SignalSnapshot(
        entity_id=forecast.entity_id,
        reference_time=t0,
        gate=gate,
        dips={mode: scan.dip for mode, scan in scans.items()},
        signal=signal,
    )


def evaluate_signals(
    entity_ids: Sequence[str],
    forecast_source: ForecastSource,
    price_source: PriceSource,
    config: SignalConfig = SignalConfig(),
    price_lookback_minutes: int = 90,
) -> list[SignalSnapshot]:
    """Snapshot every entity that has a forecast. Never sends or stores anything."""
    lookback = timedelta(minutes=price_lookback_minutes)
    snapshots = []
    for entity_id in entity_ids:
        forecast = forecast_source.get_latest_forecast(entity_id)
        if forecast is None:
            logger.info("snapshot_skipped", entity_id=entity_id, reason="no forecast")
            continue
        t0 = forecast.anchor_time
        prices = price_source.get_prices(entity_id, t0 - lookback, t0 + lookback)
        snapshots.append(snapshot_signal(forecast, prices, config))
    return snapshots
