"""
Configuration settings with Pydantic validation.
All settings are loaded from environment variables (or a .env file).

Settings are built once at process start by get_settings() and then turned
into the small per-component config dataclasses via the to_*_config()
helpers, which are passed down explicitly.
"""

import re
from enum import Enum
from pathlib import Path
from typing import Annotated, Optional

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class DataSource(str, Enum):
    """Where forecasts and price samples are read from."""
    DATABASE = "database"
    HTTP = "http"


class DipModeSetting(str, Enum):
    """Dip combination policy (see src.strategy.window_scanner.DipMode)."""
    FLIP = "flip"
    AND = "and"
    OR = "or"


class HeartbeatModeSetting(str, Enum):
    """Heartbeat cadence (see src.strategy.alert_policy.HeartbeatMode)."""
    OFF = "off"
    EVERY_RUN = "every_run"
    HOURLY = "hourly"


_QUIET_HOURS_PATTERN = re.compile(r"^\d{2}:\d{2}-\d{2}:\d{2}$")


class Settings(BaseSettings):
    """Main application settings with validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Entities to evaluate each run (comma separated in the environment)
    entities: Annotated[list[str], NoDecode] = Field(
        default=["bitcoin", "ethereum"],
        description="Entity ids (coins/instruments) evaluated every run"
    )

    # Probability gate
    p_min: float = Field(
        default=0.55,
        ge=0.0,
        le=1.0,
        description="Minimum forecast probability of an up move"
    )
    n_min: int = Field(
        default=50,
        ge=0,
        description="Minimum forecast sample count"
    )
    bucket_min: float = Field(
        default=-0.001,
        ge=-1.0,
        le=1.0,
        description="Floor for the recent realized average return (slightly negative allowed)"
    )

    # Dip window
    window_minutes: int = Field(
        default=30,
        ge=1,
        le=720,
        description="Half-width of the dip scan window around the reference timestamp"
    )
    dip_mode: DipModeSetting = Field(
        default=DipModeSetting.FLIP,
        description="Dip policy: flip (alerts), and/or (offline analysis)"
    )
    price_lookback_minutes: int = Field(
        default=90,
        ge=30,
        le=1440,
        description="Minutes of prices fetched on each side of the reference timestamp"
    )

    # Indicators
    rsi_period: int = Field(default=14, ge=2, le=50)
    rsi_threshold: float = Field(default=35.0, ge=5.0, le=50.0)
    bollinger_period: int = Field(default=20, ge=5, le=100)
    bollinger_std: float = Field(default=1.5, ge=0.5, le=4.0)

    # Standby heuristic
    standby_rsi_margin: float = Field(default=4.0, ge=0.0, le=20.0)
    standby_rsi_slope: float = Field(default=0.8, ge=0.0, le=20.0)
    standby_band_tolerance_pct: float = Field(
        default=0.15,
        ge=0.0,
        le=5.0,
        description="Relative distance above the lower band still counted as near-band (percent)"
    )
    standby_lookback_minutes: int = Field(default=10, ge=1, le=120)
    standby_alerts_enabled: bool = Field(
        default=True,
        description="Push a message when an entity enters standby"
    )
    standby_cooldown_minutes: int = Field(default=20, ge=0, le=1440)

    # Heartbeats
    heartbeat_mode: HeartbeatModeSetting = Field(
        default=HeartbeatModeSetting.HOURLY,
        description="Heartbeat cadence: off, every_run or hourly"
    )
    quiet_hours: Optional[str] = Field(
        default=None,
        description="Local time interval without heartbeats, e.g. 01:00-07:00"
    )
    display_timezone: str = Field(
        default="Asia/Kuala_Lumpur",
        description="IANA timezone used for message timestamps and quiet hours"
    )

    # Trade plan shown in active alerts (display only)
    take_profit_pct: float = Field(default=0.30, ge=0.0, le=50.0)
    stop_loss_pct: float = Field(default=0.20, ge=0.0, le=50.0)
    max_hold_hours: float = Field(default=2.0, gt=0.0, le=168.0)

    # Data sources
    data_source: DataSource = Field(default=DataSource.DATABASE)
    data_api_url: Optional[str] = Field(
        default=None,
        description="Base URL of the forecast/price HTTP collaborator (data_source=http)"
    )
    database_path: Path = Field(default=Path("data/signals.db"))

    # Telegram
    telegram_enabled: bool = Field(default=False)
    telegram_bot_token: Optional[SecretStr] = Field(default=None)
    telegram_chat_ids: Annotated[list[str], NoDecode] = Field(default_factory=list)

    # Runner
    evaluation_timeout_seconds: float = Field(default=30.0, gt=0.0, le=600.0)
    max_workers: int = Field(default=1, ge=1, le=32)
    entity_lease_seconds: int = Field(
        default=0,
        ge=0,
        le=3600,
        description="Advisory per-entity lease TTL (0 = disabled)"
    )

    # Logging
    log_level: str = Field(default="INFO")
    log_file: Optional[Path] = Field(default=None)
    log_json: bool = Field(default=False)

    @field_validator("entities", "telegram_chat_ids", mode="before")
    @classmethod
    def split_csv(cls, v):
        """Accept comma separated strings from the environment."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("quiet_hours")
    @classmethod
    def validate_quiet_hours(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v.strip() == "":
            return None
        v = v.strip()
        if not _QUIET_HOURS_PATTERN.match(v):
            raise ValueError("quiet_hours must look like HH:MM-HH:MM")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @model_validator(mode="after")
    def validate_sources(self) -> "Settings":
        if self.data_source == DataSource.HTTP and not self.data_api_url:
            raise ValueError("data_api_url is required when data_source=http")
        if self.telegram_enabled and (not self.telegram_bot_token or not self.telegram_chat_ids):
            raise ValueError("telegram_enabled requires telegram_bot_token and telegram_chat_ids")
        return self

    # Component configs

    def to_indicator_config(self):
        from src.indicators.series import IndicatorConfig

        return IndicatorConfig(
            rsi_period=self.rsi_period,
            bollinger_period=self.bollinger_period,
            bollinger_std=self.bollinger_std,
        )

    def to_signal_config(self):
        from src.strategy.probability_gate import GateThresholds
        from src.strategy.signal_composer import SignalConfig, StandbyConfig
        from src.strategy.window_scanner import DipMode, ScannerConfig

        return SignalConfig(
            indicators=self.to_indicator_config(),
            scanner=ScannerConfig(
                window_minutes=self.window_minutes,
                rsi_threshold=self.rsi_threshold,
                mode=DipMode(self.dip_mode.value),
            ),
            gate=GateThresholds(
                p_min=self.p_min,
                n_min=self.n_min,
                bucket_min=self.bucket_min,
            ),
            standby=StandbyConfig(
                rsi_margin=self.standby_rsi_margin,
                rsi_slope=self.standby_rsi_slope,
                band_tolerance_pct=self.standby_band_tolerance_pct,
                lookback_minutes=self.standby_lookback_minutes,
            ),
        )

    def to_alert_policy_config(self):
        from src.strategy.alert_policy import AlertPolicyConfig, HeartbeatMode, QuietHours

        return AlertPolicyConfig(
            standby_alerts_enabled=self.standby_alerts_enabled,
            standby_cooldown_minutes=self.standby_cooldown_minutes,
            heartbeat_mode=HeartbeatMode(self.heartbeat_mode.value),
            quiet_hours=QuietHours.parse(self.quiet_hours) if self.quiet_hours else None,
            timezone_name=self.display_timezone,
        )

    def to_message_config(self):
        from src.notifications.messages import MessageConfig

        return MessageConfig(
            timezone_name=self.display_timezone,
            window_minutes=self.window_minutes,
            take_profit_pct=self.take_profit_pct,
            stop_loss_pct=self.stop_loss_pct,
            max_hold_hours=self.max_hold_hours,
        )

    def to_runner_config(self):
        from src.daemon.runner import RunnerConfig

        return RunnerConfig(
            entities=list(self.entities),
            price_lookback_minutes=self.price_lookback_minutes,
            evaluation_timeout_seconds=self.evaluation_timeout_seconds,
            max_workers=self.max_workers,
            entity_lease_seconds=self.entity_lease_seconds,
        )


# Global settings instance (lazy loaded)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings instance (used by tests)."""
    global _settings
    _settings = None
