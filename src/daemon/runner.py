"""
Batch runner: one evaluation pass over every configured entity.

Invoked once per scheduler tick (cron or similar); there is no internal
loop or timer. Entities are independent: one entity failing, timing out or
lacking data never stops the others.

Concurrency:
- max_workers == 1 evaluates entities sequentially
- max_workers > 1 evaluates them on a thread pool
- entity_lease_seconds > 0 takes an advisory per-entity lease in the
  database so overlapping runs do not evaluate the same entity twice
"""

import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from config.logging_config import bind_run_context
from src.daemon.evaluator import (
    EvaluationOutcome,
    EvaluationStatus,
    EvaluationTimeoutError,
    SignalEvaluator,
)
from src.state.database import Database
from src.state.repository import PersistenceUnavailableError

logger = structlog.get_logger(__name__)


@dataclass
class RunnerConfig:
    """Configuration for the batch runner."""

    entities: list[str]
    price_lookback_minutes: int = 90
    evaluation_timeout_seconds: float = 30.0
    max_workers: int = 1
    entity_lease_seconds: int = 0


@dataclass
class RunSummary:
    """Counters and per-entity outcomes for one run."""

    run_id: str
    started_at: datetime
    outcomes: list[EvaluationOutcome] = field(default_factory=list)

    def _count(self, status: EvaluationStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def evaluated(self) -> int:
        return self._count(EvaluationStatus.EVALUATED)

    @property
    def skipped(self) -> int:
        return self._count(EvaluationStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(EvaluationStatus.FAILED)

    @property
    def alerts_sent(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.alert_sent)


class BatchRunner:
    """
    Runs the evaluator over all entities once.

    Responsibilities:
    - Check the state store before doing any work
    - Isolate per-entity failures
    - Optional advisory leases against overlapping runs
    """

    def __init__(
        self,
        config: RunnerConfig,
        evaluator: SignalEvaluator,
        lease_db: Optional[Database] = None,
    ):
        """
        Initialize runner.

        Args:
            config: Runner configuration
            evaluator: Per-entity evaluator
            lease_db: Database holding entity leases (required when leases are enabled)
        """
        self.config = config
        self.evaluator = evaluator
        self.lease_db = lease_db

        if config.entity_lease_seconds > 0 and lease_db is None:
            raise ValueError("entity leases require a database")

    def run_once(self, now: Optional[datetime] = None) -> RunSummary:
        """
        Evaluate every configured entity once.

        Raises:
            PersistenceUnavailableError: the state store is unreachable at
                start, or no evaluated entity could store its state
        """
        now = now or datetime.now(timezone.utc)
        run_id = uuid.uuid4().hex[:12]
        bind_run_context(run_id=run_id)

        self.evaluator.repository.ping()

        summary = RunSummary(run_id=run_id, started_at=now)
        logger.info("run_started", entities=len(self.config.entities), workers=self.config.max_workers)

        if self.config.max_workers > 1 and len(self.config.entities) > 1:
            with ThreadPoolExecutor(
                max_workers=self.config.max_workers,
                thread_name_prefix="evaluator",
            ) as pool:
                futures = [
                    pool.submit(self._evaluate_entity, entity_id, now, run_id)
                    for entity_id in self.config.entities
                ]
                summary.outcomes = [future.result() for future in futures]
        else:
            summary.outcomes = [
                self._evaluate_entity(entity_id, now, run_id) for entity_id in self.config.entities
            ]

        logger.info(
            "run_finished",
            evaluated=summary.evaluated,
            skipped=summary.skipped,
            failed=summary.failed,
            alerts=summary.alerts_sent,
        )

        # Entities with a computed signal went to the state store (read, then write)
        touched_store = [o for o in summary.outcomes if o.signal is not None]
        if touched_store and not any(o.persisted for o in touched_store):
            logger.critical("all_state_writes_failed", attempted=len(touched_store))
            raise PersistenceUnavailableError(
                f"no state could be stored for {len(touched_store)} evaluated entities"
            )

        return summary

    def _evaluate_entity(self, entity_id: str, now: datetime, run_id: str) -> EvaluationOutcome:
        # Worker threads do not inherit contextvars
        bind_run_context(run_id=run_id)

        leased = False
        try:
            leased = self._acquire_lease(entity_id, now, run_id)
            if not leased:
                return EvaluationOutcome(entity_id, EvaluationStatus.SKIPPED, reason="leased by another run")
            return self.evaluator.evaluate(entity_id, now)
        except EvaluationTimeoutError as e:
            logger.warning("entity_timed_out", entity_id=entity_id, error=str(e))
            return EvaluationOutcome(entity_id, EvaluationStatus.SKIPPED, reason=str(e))
        except Exception as e:
            logger.error("entity_evaluation_failed", entity_id=entity_id, error=str(e), exc_info=True)
            return EvaluationOutcome(entity_id, EvaluationStatus.FAILED, reason=str(e))
        finally:
            if leased:
                self._release_lease(entity_id, run_id)

    def _acquire_lease(self, entity_id: str, now: datetime, run_id: str) -> bool:
        if self.config.entity_lease_seconds <= 0:
            return True
        return self.lease_db.try_acquire_lease(
            entity_id,
            holder=run_id,
            ttl_seconds=self.config.entity_lease_seconds,
            now=now,
        )

    def _release_lease(self, entity_id: str, run_id: str) -> None:
        if self.config.entity_lease_seconds <= 0:
            return
        try:
            self.lease_db.release_lease(entity_id, run_id)
        except SQLAlchemyError as e:
            # The lease expires on its own
            logger.warning("entity_lease_release_failed", entity_id=entity_id, error=str(e))
