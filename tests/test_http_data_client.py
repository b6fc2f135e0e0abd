"""
Tests for the HTTP forecast/price client.

Tests cover:
- Forecast payload parsing (both field spellings)
- 404 means no forecast, other HTTP errors raise
- Price window request parameters and ascending order
- Retries on network errors only
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import requests

from src.api.http_data_client import DataSourceError, HttpDataClient, parse_forecast


START = datetime(2024, 5, 1, 0, 0, tzinfo=timezone.utc)


def _response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    response.text = "error body"
    return response


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def client(session):
    return HttpDataClient("http://forecaster:8080/api/", session=session, default_timeout=5)


# ============================================================================
# Parsing Tests
# ============================================================================

def test_parse_forecast_current_fields():
    record = parse_forecast(
        "bitcoin",
        {
            "timestamp": "2024-05-01T00:05:00Z",
            "probability": 0.61,
            "sample_count": 72,
            "recent_avg_return": -0.0005,
            "reference_timestamp": "2024-05-01T00:00:00Z",
        },
    )

    assert record.probability == 0.61
    assert record.sample_count == 72
    assert record.recent_avg_return == -0.0005
    assert record.anchor_time == START


def test_parse_forecast_legacy_fields():
    record = parse_forecast(
        "bitcoin",
        {"ts": "2024-05-01T00:05:00", "p_up": 0.58, "n": 55, "bucket7d": None, "pred_ts": "2024-05-01T00:00:00"},
    )

    assert record.probability == 0.58
    assert record.sample_count == 55
    assert record.recent_avg_return is None
    assert record.anchor_time == START


def test_parse_forecast_missing_probability():
    with pytest.raises(DataSourceError):
        parse_forecast("bitcoin", {"timestamp": "2024-05-01T00:00:00Z"})


# ============================================================================
# Forecast Endpoint Tests
# ============================================================================

def test_get_latest_forecast(client, session):
    session.get.return_value = _response(
        payload={"timestamp": "2024-05-01T00:00:00Z", "probability": 0.6, "sample_count": 60}
    )

    record = client.get_latest_forecast("bitcoin", timeout=2.5)

    assert record.entity_id == "bitcoin"
    args, kwargs = session.get.call_args
    assert args[0] == "http://forecaster:8080/api/forecasts/bitcoin/latest"
    assert 0 < kwargs["timeout"] <= 2.5


def test_get_latest_forecast_not_found(client, session):
    session.get.return_value = _response(status_code=404)
    assert client.get_latest_forecast("bitcoin") is None


def test_server_error_raises_without_retry(client, session):
    session.get.return_value = _response(status_code=500)

    with pytest.raises(DataSourceError):
        client.get_latest_forecast("bitcoin")
    assert session.get.call_count == 1


def test_invalid_json_raises(client, session):
    response = _response()
    response.json.side_effect = ValueError("not json")
    session.get.return_value = response

    with pytest.raises(DataSourceError):
        client.get_latest_forecast("bitcoin")


# ============================================================================
# Price Endpoint Tests
# ============================================================================

def test_get_prices_sorted_with_window_params(client, session):
    session.get.return_value = _response(
        payload={
            "prices": [
                {"timestamp": "2024-05-01T00:02:00Z", "price": 102.0},
                {"timestamp": "2024-05-01T00:00:00Z", "price": 100.0},
                {"ts": "2024-05-01T00:01:00Z", "price": 101.0},
                {"timestamp": "2024-05-01T00:03:00Z", "price": None},
            ]
        }
    )

    points = client.get_prices("bitcoin", START, START + timedelta(minutes=90))

    assert [p.price for p in points] == [100.0, 101.0, 102.0]
    params = session.get.call_args.kwargs["params"]
    assert params["start"] == START.isoformat()
    assert 0 < session.get.call_args.kwargs["timeout"] <= 5


def test_get_prices_not_found(client, session):
    session.get.return_value = _response(status_code=404)
    assert client.get_prices("bitcoin", START, START + timedelta(minutes=5)) == []


# ============================================================================
# Retry Tests
# ============================================================================

def test_retries_connection_errors(client, session):
    session.get.side_effect = [
        requests.exceptions.ConnectionError("reset"),
        _response(payload={"timestamp": "2024-05-01T00:00:00Z", "probability": 0.6, "sample_count": 60}),
    ]

    assert client.get_latest_forecast("bitcoin") is not None
    assert session.get.call_count == 2


def test_gives_up_after_three_attempts(client, session):
    session.get.side_effect = requests.exceptions.Timeout("slow")

    with pytest.raises(requests.exceptions.Timeout):
        client.get_latest_forecast("bitcoin")
    assert session.get.call_count == 3


def test_retries_share_one_timeout_budget(client, session):
    session.get.side_effect = [
        requests.exceptions.ConnectionError("reset"),
        _response(payload={"timestamp": "2024-05-01T00:00:00Z", "probability": 0.6, "sample_count": 60}),
    ]

    client.get_latest_forecast("bitcoin", timeout=5.0)

    first, second = (c.kwargs["timeout"] for c in session.get.call_args_list)
    assert first <= 5.0
    # The backoff sleep is taken out of the second attempt's share
    assert second <= first - 0.5


def test_budget_shorter_than_backoff_stops_retrying(client, session):
    session.get.side_effect = requests.exceptions.Timeout("slow")

    with pytest.raises(requests.exceptions.Timeout):
        client.get_latest_forecast("bitcoin", timeout=0.3)
    assert session.get.call_count == 1


def test_zero_timeout_is_not_the_default(client, session):
    with pytest.raises(requests.exceptions.Timeout):
        client.get_latest_forecast("bitcoin", timeout=0.0)
    session.get.assert_not_called()
