"""
Tests for the Database state management module.

Tests cover:
- Signal state upsert (one row per entity, overwrite, UTC round trip)
- SqlSignalStateRepository (get/put/ping, write failures)
- Entity leases (acquire, busy, expiry, release)
- Price samples and forecasts (duplicates, ordering, range filters)
- Session management (commit/rollback)
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from src.api.data_protocol import ForecastRecord, PricePoint
from src.api.sql_data_source import SqlForecastSource, SqlPriceSource
from src.state.database import Database, SignalStateRow
from src.state.repository import (
    AlertKind,
    InMemorySignalStateRepository,
    PersistenceUnavailableError,
    SignalState,
    SqlSignalStateRepository,
)
from src.strategy.signal_composer import SignalKind


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def db(tmp_path):
    """Fresh database in a temporary directory."""
    return Database(tmp_path / "nested" / "signals.db")


@pytest.fixture
def active_state():
    return SignalState(
        entity_id="bitcoin",
        state=SignalKind.ACTIVE,
        state_since=NOW,
        last_alert_kind=AlertKind.TRANSITION,
        last_alert_at=NOW,
        last_active_at=NOW,
        reason_text="gate:True dip:True",
        updated_at=NOW,
    )


# ============================================================================
# Signal State Tests
# ============================================================================

def test_database_creates_parent_directory(tmp_path):
    Database(tmp_path / "a" / "b" / "signals.db")
    assert (tmp_path / "a" / "b" / "signals.db").exists()


def test_missing_state_is_none(db):
    assert db.get_signal_state("bitcoin") is None


def test_upsert_and_get_round_trip(db, active_state):
    db.upsert_signal_state("bitcoin", active_state)
    loaded = db.get_signal_state("bitcoin")

    assert loaded == active_state
    assert loaded.state_since.tzinfo is not None


def test_upsert_overwrites_single_row(db, active_state):
    db.upsert_signal_state("bitcoin", active_state)
    db.upsert_signal_state("bitcoin", active_state.evolve(state=SignalKind.WATCH, last_active_at=None))

    with db.session() as session:
        assert session.query(SignalStateRow).count() == 1

    loaded = db.get_signal_state("bitcoin")
    assert loaded.state == SignalKind.WATCH
    assert loaded.last_active_at is None


def test_get_all_signal_states_ordered(db, active_state):
    db.upsert_signal_state("ethereum", active_state.evolve(entity_id="ethereum"))
    db.upsert_signal_state("bitcoin", active_state)

    assert [s.entity_id for s in db.get_all_signal_states()] == ["bitcoin", "ethereum"]


def test_session_rolls_back_on_error(db, active_state):
    with pytest.raises(RuntimeError):
        with db.session() as session:
            session.add(SignalStateRow(entity_id="bitcoin", state="active"))
            raise RuntimeError("boom")

    assert db.get_signal_state("bitcoin") is None


# ============================================================================
# Repository Tests
# ============================================================================

def test_sql_repository_round_trip(db, active_state):
    repo = SqlSignalStateRepository(db)
    repo.ping()
    repo.put("bitcoin", active_state)
    assert repo.get("bitcoin") == active_state


def test_sql_repository_ping_failure(db):
    repo = SqlSignalStateRepository(db)
    with patch.object(db, "ping", side_effect=OperationalError("SELECT 1", {}, Exception("down"))):
        with pytest.raises(PersistenceUnavailableError):
            repo.ping()


def test_sql_repository_write_failure(db, active_state):
    repo = SqlSignalStateRepository(db)
    error = OperationalError("UPDATE", {}, Exception("disk I/O error"))
    with patch.object(db, "upsert_signal_state", side_effect=error):
        with pytest.raises(PersistenceUnavailableError):
            repo.put("bitcoin", active_state)


def test_sql_repository_read_failure(db):
    repo = SqlSignalStateRepository(db)
    error = OperationalError("SELECT", {}, Exception("database is locked"))
    with patch.object(db, "get_signal_state", side_effect=error):
        with pytest.raises(PersistenceUnavailableError):
            repo.get("bitcoin")


def test_in_memory_repository(active_state):
    repo = InMemorySignalStateRepository()
    assert repo.get("bitcoin") is None

    repo.put("bitcoin", active_state)

    assert repo.get("bitcoin") == active_state
    assert repo.all() == {"bitcoin": active_state}


# ============================================================================
# Lease Tests
# ============================================================================

def test_lease_acquire_and_busy(db):
    assert db.try_acquire_lease("bitcoin", "run-a", ttl_seconds=60, now=NOW)
    assert not db.try_acquire_lease("bitcoin", "run-b", ttl_seconds=60, now=NOW + timedelta(seconds=30))


def test_lease_reentrant_for_same_holder(db):
    assert db.try_acquire_lease("bitcoin", "run-a", ttl_seconds=60, now=NOW)
    assert db.try_acquire_lease("bitcoin", "run-a", ttl_seconds=60, now=NOW)


def test_lease_expires(db):
    assert db.try_acquire_lease("bitcoin", "run-a", ttl_seconds=60, now=NOW)
    assert db.try_acquire_lease("bitcoin", "run-b", ttl_seconds=60, now=NOW + timedelta(seconds=61))


def test_lease_release(db):
    db.try_acquire_lease("bitcoin", "run-a", ttl_seconds=60, now=NOW)

    assert not db.release_lease("bitcoin", "run-b")
    assert db.release_lease("bitcoin", "run-a")
    assert db.try_acquire_lease("bitcoin", "run-b", ttl_seconds=60, now=NOW)


# ============================================================================
# Price / Forecast Tests
# ============================================================================

def test_record_prices_skips_duplicates(db, make_prices):
    points = make_prices([100.0, 101.0, 102.0])

    assert db.record_prices(points) == 3
    assert db.record_prices(points) == 0


def test_get_prices_range_ascending(db, make_prices, base_time):
    points = make_prices([100.0, 101.0, 102.0, 103.0])
    db.record_prices(list(reversed(points)))

    loaded = db.get_prices("bitcoin", base_time + timedelta(minutes=1), base_time + timedelta(minutes=2))

    assert [p.price for p in loaded] == [101.0, 102.0]
    assert loaded[0].timestamp == base_time + timedelta(minutes=1)


def test_get_prices_other_entity(db, make_prices, base_time):
    db.record_prices(make_prices([100.0], entity_id="ethereum"))
    assert db.get_prices("bitcoin", base_time, base_time + timedelta(hours=1)) == []


def test_latest_forecast(db, base_time):
    for i, probability in enumerate([0.50, 0.61]):
        db.record_forecast(
            ForecastRecord(
                entity_id="bitcoin",
                timestamp=base_time + timedelta(minutes=i),
                probability=probability,
                sample_count=70,
                recent_avg_return=None,
                reference_timestamp=base_time,
            )
        )

    latest = db.get_latest_forecast("bitcoin")

    assert latest.probability == 0.61
    assert latest.recent_avg_return is None
    assert latest.anchor_time == base_time
    assert db.get_latest_forecast("ethereum") is None


def test_sql_sources(db, make_prices, base_time):
    db.record_prices(make_prices([100.0, 101.0]))
    db.record_forecast(
        ForecastRecord(entity_id="bitcoin", timestamp=base_time, probability=0.6, sample_count=60)
    )

    prices = SqlPriceSource(db).get_prices("bitcoin", base_time, base_time + timedelta(minutes=5))
    forecast = SqlForecastSource(db).get_latest_forecast("bitcoin")

    assert [p.price for p in prices] == [100.0, 101.0]
    assert isinstance(prices[0], PricePoint)
    assert forecast.sample_count == 60
