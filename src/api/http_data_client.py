"""
HTTP client for the forecast/price collaborator service.

Endpoints (JSON):
    GET {base}/forecasts/{entity_id}/latest
        -> {"timestamp", "probability", "sample_count",
            "recent_avg_return", "reference_timestamp"}   (404 = no forecast)
    GET {base}/prices/{entity_id}?start=ISO&end=ISO
        -> {"prices": [{"timestamp", "price"}, ...]}

Forecast payloads from the legacy service use p_up / n / bucket7d / pred_ts /
ts; both spellings are accepted.

Reads are retried with exponential backoff on network errors only, within
the caller's timeout. HTTP errors are not retried.
"""

import time
from datetime import datetime
from typing import Any, Optional

import pandas as pd
import requests
import structlog
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from src.api.data_protocol import ForecastRecord, PricePoint, ensure_utc

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class DataSourceError(Exception):
    """The collaborator answered with an error or an unreadable payload."""


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts.tz_convert("UTC").to_pydatetime()


def _first(payload: dict, *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def parse_forecast(entity_id: str, payload: dict) -> ForecastRecord:
    """Build a ForecastRecord from either payload spelling."""
    timestamp = _parse_time(_first(payload, "timestamp", "ts"))
    probability = _first(payload, "probability", "p_up")
    if timestamp is None or probability is None:
        raise DataSourceError(f"forecast payload for {entity_id} lacks timestamp/probability")

    recent = _first(payload, "recent_avg_return", "bucket7d")
    samples = _first(payload, "sample_count", "n")

    return ForecastRecord(
        entity_id=entity_id,
        timestamp=timestamp,
        probability=float(probability),
        sample_count=int(samples) if samples is not None else 0,
        recent_avg_return=float(recent) if recent is not None else None,
        reference_timestamp=_parse_time(_first(payload, "reference_timestamp", "pred_ts")),
    )


class HttpDataClient:
    """
    Forecast and price source over HTTP.

    Implements both PriceSource and ForecastSource.
    """

    RETRY_EXCEPTIONS = (
        requests.exceptions.ConnectionError,
        requests.exceptions.Timeout,
    )

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        """
        Initialize client.

        Args:
            base_url: Collaborator base URL (e.g., http://forecaster:8080/api)
            session: Optional requests session (tests inject a mock)
            default_timeout: Per-request timeout when the caller passes none
        """
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.default_timeout = default_timeout

        logger.info("http_data_client_initialized", base_url=self.base_url)

    def _get(self, path: str, params: Optional[dict] = None, timeout: Optional[float] = None):
        """
        GET a JSON document; returns None on 404.

        timeout bounds the whole call, retries and backoff included. Each
        attempt gets whatever is left of it.
        """
        budget = timeout if timeout is not None else self.default_timeout
        expires = time.monotonic() + budget

        retrying = Retrying(
            stop=stop_after_attempt(3) | stop_after_delay(budget),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            retry=retry_if_exception_type(self.RETRY_EXCEPTIONS),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                remaining = expires - time.monotonic()
                if remaining <= 0:
                    raise requests.exceptions.Timeout(f"{budget}s budget for {path} used up")
                response = self.session.get(
                    f"{self.base_url}{path}",
                    params=params,
                    timeout=remaining,
                )

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            logger.error("data_request_failed", path=path, status=response.status_code)
            raise DataSourceError(f"API error {response.status_code}: {response.text[:200]}")

        try:
            return response.json()
        except ValueError as e:
            raise DataSourceError(f"invalid JSON from {path}") from e

    def get_latest_forecast(
        self,
        entity_id: str,
        timeout: Optional[float] = None,
    ) -> Optional[ForecastRecord]:
        payload = self._get(f"/forecasts/{entity_id}/latest", timeout=timeout)
        if not payload:
            return None
        return parse_forecast(entity_id, payload)

    def get_prices(
        self,
        entity_id: str,
        start: datetime,
        end: datetime,
        timeout: Optional[float] = None,
    ) -> list[PricePoint]:
        payload = self._get(
            f"/prices/{entity_id}",
            params={
                "start": ensure_utc(start).isoformat(),
                "end": ensure_utc(end).isoformat(),
            },
            timeout=timeout,
        )
        if not payload:
            return []

        rows = payload.get("prices", []) if isinstance(payload, dict) else payload
        points = []
        for row in rows:
            ts = _parse_time(_first(row, "timestamp", "ts"))
            if ts is None or row.get("price") is None:
                continue
            points.append(PricePoint(entity_id=entity_id, timestamp=ts, price=float(row["price"])))

        # Anchor lookup bisects, so order must be ascending
        points.sort(key=lambda p: p.timestamp)
        return points
