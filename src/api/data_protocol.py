"""
Collaborator interfaces and shared data types.

Prices and forecasts are produced by external collaborators (an ingestion
job and a forecasting model). This module defines the read-only interfaces
the signal engine consumes, so SQL tables, an HTTP service or test fakes
can be swapped without touching the evaluator.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol


def ensure_utc(value: datetime) -> datetime:
    """Return a timezone-aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class PricePoint:
    """A single price sample for an entity."""

    entity_id: str
    timestamp: datetime
    price: float


@dataclass(frozen=True)
class ForecastRecord:
    """Latest probabilistic forecast for an entity."""

    entity_id: str
    timestamp: datetime
    probability: float
    sample_count: int
    recent_avg_return: Optional[float] = None
    reference_timestamp: Optional[datetime] = field(default=None)

    @property
    def anchor_time(self) -> datetime:
        """Timestamp the dip window is centred on."""
        return ensure_utc(self.reference_timestamp or self.timestamp)


class PriceSource(Protocol):
    """Read-only access to ascending price samples."""

    def get_prices(
        self,
        entity_id: str,
        start: datetime,
        end: datetime,
        timeout: Optional[float] = None,
    ) -> list[PricePoint]:
        """
        Get price samples for an entity in [start, end].

        Args:
            entity_id: Entity identifier (e.g., "bitcoin")
            start: Inclusive range start (UTC)
            end: Inclusive range end (UTC)
            timeout: Seconds the call may take, when the source supports it

        Returns:
            Samples ordered ascending by timestamp
        """
        ...


class ForecastSource(Protocol):
    """Read-only access to the latest forecast per entity."""

    def get_latest_forecast(
        self,
        entity_id: str,
        timeout: Optional[float] = None,
    ) -> Optional[ForecastRecord]:
        """
        Get the newest forecast record for an entity.

        Returns:
            ForecastRecord, or None when the entity has no forecast yet
        """
        ...
