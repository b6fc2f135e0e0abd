"""
Per-entity signal state and its repository interface.

One SignalState per entity, overwritten after every evaluation (last state
only, no history). The evaluator only talks to SignalStateRepository, so
the storage backend is swappable:
- InMemorySignalStateRepository: tests and --dry-run
- SqlSignalStateRepository: SQLite via SQLAlchemy (src.state.database)
"""

import threading
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional, Protocol

import structlog
from sqlalchemy.exc import SQLAlchemyError

from src.strategy.signal_composer import SignalKind

if TYPE_CHECKING:
    from src.state.database import Database

logger = structlog.get_logger(__name__)


class AlertKind(str, Enum):
    """Kind of the last alert sent for an entity."""

    TRANSITION = "transition"
    HEARTBEAT = "heartbeat"


@dataclass(frozen=True)
class SignalState:
    """Last known signal state of one entity."""

    entity_id: str
    state: SignalKind = SignalKind.NONE
    state_since: Optional[datetime] = None
    last_alert_kind: Optional[AlertKind] = None
    last_alert_at: Optional[datetime] = None
    last_standby_alert_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None
    last_heartbeat_at: Optional[datetime] = None
    reason_text: str = ""
    updated_at: Optional[datetime] = None

    def evolve(self, **changes) -> "SignalState":
        """Copy with changes applied."""
        return replace(self, **changes)


class PersistenceUnavailableError(Exception):
    """The state store cannot be reached at all."""


class SignalStateRepository(Protocol):
    """Storage for per-entity signal state."""

    def get(self, entity_id: str) -> Optional[SignalState]:
        """Return the stored state, or None for an entity never evaluated (PersistenceUnavailableError on failure)."""
        ...

    def put(self, entity_id: str, state: SignalState) -> None:
        """Upsert the state for an entity (PersistenceUnavailableError on failure)."""
        ...

    def ping(self) -> None:
        """Raise PersistenceUnavailableError when the store is unreachable."""
        ...


class InMemorySignalStateRepository:
    """Dict-backed repository."""

    def __init__(self, initial: Optional[dict[str, SignalState]] = None):
        self._states: dict[str, SignalState] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, entity_id: str) -> Optional[SignalState]:
        with self._lock:
            return self._states.get(entity_id)

    def put(self, entity_id: str, state: SignalState) -> None:
        with self._lock:
            self._states[entity_id] = state

    def ping(self) -> None:
        return None

    def all(self) -> dict[str, SignalState]:
        with self._lock:
            return dict(self._states)


class SqlSignalStateRepository:
    """Repository over the signal_states table."""

    def __init__(self, db: "Database"):
        self.db = db

    def get(self, entity_id: str) -> Optional[SignalState]:
        try:
            return self.db.get_signal_state(entity_id)
        except SQLAlchemyError as e:
            logger.error("signal_state_read_failed", entity_id=entity_id, error=str(e))
            raise PersistenceUnavailableError(str(e)) from e

    def put(self, entity_id: str, state: SignalState) -> None:
        try:
            self.db.upsert_signal_state(entity_id, state)
        except SQLAlchemyError as e:
            logger.error("signal_state_write_failed", entity_id=entity_id, error=str(e))
            raise PersistenceUnavailableError(str(e)) from e

    def ping(self) -> None:
        try:
            self.db.ping()
        except SQLAlchemyError as e:
            logger.critical("state_store_unreachable", error=str(e))
            raise PersistenceUnavailableError(str(e)) from e
