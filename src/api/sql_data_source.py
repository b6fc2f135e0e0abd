"""
Price and forecast sources backed by the local database.

The ingestion and forecasting collaborators write into the price_samples and
forecasts tables; these adapters expose them through the PriceSource and
ForecastSource protocols.
"""

from datetime import datetime
from typing import Optional

import structlog

from src.api.data_protocol import ForecastRecord, PricePoint
from src.state.database import Database

logger = structlog.get_logger(__name__)


class SqlPriceSource:
    """PriceSource over the price_samples table."""

    def __init__(self, db: Database):
        self.db = db

    def get_prices(
        self,
        entity_id: str,
        start: datetime,
        end: datetime,
        timeout: Optional[float] = None,
    ) -> list[PricePoint]:
        # SQLite reads are not interruptible; timeout is ignored
        points = self.db.get_prices(entity_id, start, end)
        logger.debug("sql_prices_loaded", entity_id=entity_id, count=len(points))
        return points


class SqlForecastSource:
    """ForecastSource over the forecasts table."""

    def __init__(self, db: Database):
        self.db = db

    def get_latest_forecast(
        self,
        entity_id: str,
        timeout: Optional[float] = None,
    ) -> Optional[ForecastRecord]:
        return self.db.get_latest_forecast(entity_id)
