"""
SQLite database for signal state persistence and collaborator data.

Tables:
- signal_states: One row per entity with its last composite state (upserted)
- entity_leases: Advisory per-entity leases against overlapping runs
- price_samples: Price samples written by the ingestion collaborator
- forecasts: Forecast records written by the forecasting collaborator

The evaluator only writes signal_states and entity_leases; the other two
tables are read-only from this package's point of view (the record_*
helpers exist for ingestion jobs and tests).
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, Optional

import structlog
from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    inspect,
    text,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from src.api.data_protocol import ForecastRecord, PricePoint, ensure_utc
from src.state.repository import AlertKind, SignalState
from src.strategy.signal_composer import SignalKind

logger = structlog.get_logger(__name__)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored is UTC
    return ensure_utc(value) if value is not None else None


class SignalStateRow(Base):
    """Last known signal state per entity (no history)."""

    __tablename__ = "signal_states"

    entity_id = Column(String(64), primary_key=True)
    state = Column(String(20), nullable=False, default=SignalKind.NONE.value)
    state_since = Column(DateTime, nullable=True)
    last_alert_kind = Column(String(20), nullable=True)  # "transition" or "heartbeat"
    last_alert_at = Column(DateTime, nullable=True)
    last_standby_alert_at = Column(DateTime, nullable=True)
    last_active_at = Column(DateTime, nullable=True)
    last_heartbeat_at = Column(DateTime, nullable=True)
    reason_text = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def to_state(self) -> SignalState:
        return SignalState(
            entity_id=self.entity_id,
            state=SignalKind(self.state),
            state_since=_as_utc(self.state_since),
            last_alert_kind=AlertKind(self.last_alert_kind) if self.last_alert_kind else None,
            last_alert_at=_as_utc(self.last_alert_at),
            last_standby_alert_at=_as_utc(self.last_standby_alert_at),
            last_active_at=_as_utc(self.last_active_at),
            last_heartbeat_at=_as_utc(self.last_heartbeat_at),
            reason_text=self.reason_text or "",
            updated_at=_as_utc(self.updated_at),
        )


class EntityLease(Base):
    """Advisory lease held by a run while it evaluates an entity."""

    __tablename__ = "entity_leases"

    entity_id = Column(String(64), primary_key=True)
    holder = Column(String(64), nullable=False)
    expires_at = Column(DateTime, nullable=False)


class PriceSample(Base):
    """Price sample written by the ingestion collaborator."""

    __tablename__ = "price_samples"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_id = Column(String(64), nullable=False)
    timestamp = Column(DateTime, nullable=False)  # UTC
    price = Column(Float, nullable=False)
    source = Column(String(32), nullable=True)

    __table_args__ = (
        UniqueConstraint("entity_id", "timestamp", name="uq_price_sample"),
        Index("ix_price_samples_lookup", "entity_id", "timestamp"),
    )


class ForecastRow(Base):
    """Forecast record written by the forecasting collaborator."""

    __tablename__ = "forecasts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_id = Column(String(64), nullable=False)
    timestamp = Column(DateTime, nullable=False)  # log time (UTC)
    reference_timestamp = Column(DateTime, nullable=True)  # model's own timestamp
    probability = Column(Float, nullable=False)
    sample_count = Column(Integer, nullable=False, default=0)
    recent_avg_return = Column(Float, nullable=True)
    model = Column(String(64), nullable=True)

    __table_args__ = (
        Index("ix_forecasts_latest", "entity_id", "timestamp"),
    )

    def to_record(self) -> ForecastRecord:
        return ForecastRecord(
            entity_id=self.entity_id,
            timestamp=_as_utc(self.timestamp),
            probability=self.probability,
            sample_count=self.sample_count,
            recent_avg_return=self.recent_avg_return,
            reference_timestamp=_as_utc(self.reference_timestamp),
        )


class Database:
    """
    Database manager for signal state.

    Handles:
    - Signal state upserts (one row per entity)
    - Advisory entity leases
    - Price/forecast reads for the SQL data sources
    """

    def __init__(self, db_path: Path):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        db_path = Path(db_path).resolve()
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{db_path}",
            echo=False,
            connect_args={"check_same_thread": False},
        )
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

        # create_all() is idempotent - creates missing tables, skips existing ones
        Base.metadata.create_all(self.engine)

        tables = inspect(self.engine).get_table_names()
        logger.info("database_initialized", path=str(db_path), tables=tables)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Get a database session with automatic commit/rollback."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def ping(self) -> None:
        """Round-trip a trivial query (raises SQLAlchemyError when unreachable)."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    # Signal state methods
    def get_signal_state(self, entity_id: str) -> Optional[SignalState]:
        """Get the stored state for an entity."""
        with self.session() as session:
            row = session.get(SignalStateRow, entity_id)
            return row.to_state() if row else None

    def upsert_signal_state(self, entity_id: str, state: SignalState) -> None:
        """Insert or overwrite the state row for an entity."""
        with self.session() as session:
            row = session.get(SignalStateRow, entity_id)
            if row is None:
                row = SignalStateRow(entity_id=entity_id)
                session.add(row)

            row.state = state.state.value
            row.state_since = state.state_since
            row.last_alert_kind = state.last_alert_kind.value if state.last_alert_kind else None
            row.last_alert_at = state.last_alert_at
            row.last_standby_alert_at = state.last_standby_alert_at
            row.last_active_at = state.last_active_at
            row.last_heartbeat_at = state.last_heartbeat_at
            row.reason_text = state.reason_text
            row.updated_at = state.updated_at or _utcnow()

    def get_all_signal_states(self) -> list[SignalState]:
        """Get every stored state, ordered by entity id."""
        with self.session() as session:
            rows = session.query(SignalStateRow).order_by(SignalStateRow.entity_id.asc()).all()
            return [row.to_state() for row in rows]

    # Lease methods
    def try_acquire_lease(
        self,
        entity_id: str,
        holder: str,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Take the advisory lease for an entity unless another holder has a live one.

        Returns:
            True if the lease is now held by holder
        """
        now = ensure_utc(now or _utcnow())
        expires_at = now.timestamp() + ttl_seconds
        try:
            with self.session() as session:
                lease = session.get(EntityLease, entity_id)
                if lease is not None:
                    if lease.holder != holder and _as_utc(lease.expires_at) > now:
                        logger.info(
                            "entity_lease_busy",
                            entity_id=entity_id,
                            holder=lease.holder,
                            expires_at=_as_utc(lease.expires_at).isoformat(),
                        )
                        return False
                    lease.holder = holder
                    lease.expires_at = datetime.fromtimestamp(expires_at, tz=timezone.utc)
                else:
                    session.add(
                        EntityLease(
                            entity_id=entity_id,
                            holder=holder,
                            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
                        )
                    )
            return True
        except IntegrityError:
            # Another run inserted the lease between our read and write
            logger.info("entity_lease_race_lost", entity_id=entity_id, holder=holder)
            return False

    def release_lease(self, entity_id: str, holder: str) -> bool:
        """Release a lease held by holder."""
        with self.session() as session:
            deleted = (
                session.query(EntityLease)
                .filter(EntityLease.entity_id == entity_id, EntityLease.holder == holder)
                .delete()
            )
            return deleted > 0

    # Price sample methods
    def record_prices(self, points: list[PricePoint], source: str = "ingest") -> int:
        """Insert price samples, skipping timestamps already stored."""
        inserted = 0
        with self.session() as session:
            for point in points:
                ts = ensure_utc(point.timestamp)
                exists = (
                    session.query(PriceSample.id)
                    .filter(PriceSample.entity_id == point.entity_id, PriceSample.timestamp == ts)
                    .first()
                )
                if exists:
                    continue
                session.add(
                    PriceSample(
                        entity_id=point.entity_id,
                        timestamp=ts,
                        price=float(point.price),
                        source=source,
                    )
                )
                inserted += 1
        return inserted

    def get_prices(self, entity_id: str, start: datetime, end: datetime) -> list[PricePoint]:
        """Get price samples in [start, end], ascending."""
        with self.session() as session:
            rows = (
                session.query(PriceSample)
                .filter(
                    PriceSample.entity_id == entity_id,
                    PriceSample.timestamp >= ensure_utc(start),
                    PriceSample.timestamp <= ensure_utc(end),
                )
                .order_by(PriceSample.timestamp.asc())
                .all()
            )
            return [
                PricePoint(entity_id=row.entity_id, timestamp=_as_utc(row.timestamp), price=row.price)
                for row in rows
            ]

    # Forecast methods
    def record_forecast(self, record: ForecastRecord, model: Optional[str] = None) -> None:
        """Append a forecast record."""
        with self.session() as session:
            session.add(
                ForecastRow(
                    entity_id=record.entity_id,
                    timestamp=ensure_utc(record.timestamp),
                    reference_timestamp=(
                        ensure_utc(record.reference_timestamp) if record.reference_timestamp else None
                    ),
                    probability=record.probability,
                    sample_count=record.sample_count,
                    recent_avg_return=record.recent_avg_return,
                    model=model,
                )
            )

    def get_latest_forecast(self, entity_id: str) -> Optional[ForecastRecord]:
        """Get the newest forecast record for an entity."""
        with self.session() as session:
            row = (
                session.query(ForecastRow)
                .filter(ForecastRow.entity_id == entity_id)
                .order_by(ForecastRow.timestamp.desc(), ForecastRow.id.desc())
                .first()
            )
            return row.to_record() if row else None
