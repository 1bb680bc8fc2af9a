"""
Repository pattern for run store operations.

Provides:
- Upsert of a WorkflowRun and its recorded outcomes
- Read-only queries for operators (current run, history, outcomes)
- Active-run lookup used by the trigger's overlap policy

Design Notes:
- Uses dependency injection for Session - caller manages transaction
- All write operations require explicit commit() from caller
- Outcome rows are insert-only; an item's outcome is never overwritten
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from dataproc.src.database.models import Base, OutcomeRecord, RunRecord
from dataproc.src.models import RunStage, RunStatus, WorkflowRun, utcnow

ACTIVE_STATUSES = (RunStatus.PENDING, RunStatus.RUNNING)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def outcome_to_dict(record: OutcomeRecord) -> Dict[str, Any]:
    return {
        "item_id": record.item_id,
        "bucket": record.bucket,
        "key": record.key,
        "status": record.status,
        "attempts": record.attempts,
        "diagnostic": record.diagnostic,
        "started_at": _iso(record.started_at),
        "finished_at": _iso(record.finished_at),
    }


def run_to_dict(record: RunRecord, include_outcomes: bool = True) -> Dict[str, Any]:
    data = {
        "run_id": record.run_id,
        "stage": record.stage,
        "status": record.status,
        "scheduled_for": _iso(record.scheduled_for),
        "started_at": _iso(record.started_at),
        "finished_at": _iso(record.finished_at),
        "n_items": record.n_items,
        "succeeded": record.succeeded,
        "failed": record.failed,
        "error": record.error,
        "manifest_key": record.manifest_key,
    }
    if include_outcomes:
        data["outcomes"] = [outcome_to_dict(o) for o in record.outcomes]
    return data


class RunRepository:
    """
    Repository for run store operations.

    Uses dependency injection for Session - caller manages transaction.

    Usage:
        with Session(engine) as session:
            repo = RunRepository(session)
            repo.save_run(run)
            session.commit()
    """

    def __init__(self, session: Session):
        """
        Initialize repository with SQLAlchemy session.

        Args:
            session: SQLAlchemy Session (caller manages lifecycle)
        """
        self.session = session

    # =========================================================================
    # Schema Management
    # =========================================================================

    def create_tables(self, engine: Engine) -> None:
        """
        Create all tables using SQLAlchemy metadata.

        Args:
            engine: SQLAlchemy Engine instance
        """
        Base.metadata.create_all(engine)

    # =========================================================================
    # Writes
    # =========================================================================

    def save_run(self, run: WorkflowRun) -> RunRecord:
        """
        Insert or update the run row and insert outcomes not yet stored.

        Args:
            run: WorkflowRun snapshot to persist

        Returns:
            The RunRecord (flushed, not committed)
        """
        record = self.session.get(RunRecord, run.run_id)
        if record is None:
            record = RunRecord(run_id=run.run_id, started_at=run.started_at)
            self.session.add(record)

        record.stage = run.stage
        record.status = run.status
        record.scheduled_for = run.scheduled_for
        record.finished_at = run.finished_at
        record.n_items = len(run.manifest) if run.manifest is not None else None
        record.succeeded = run.succeeded_count
        record.failed = run.failed_count
        record.error = run.error
        record.manifest_key = run.manifest.manifest_key if run.manifest else None

        stored = {o.item_id for o in record.outcomes}
        descriptors = {d.item_id: d for d in run.manifest.items} if run.manifest else {}
        for item_id, outcome in run.outcomes.items():
            if item_id in stored:
                continue
            descriptor = descriptors.get(item_id)
            record.outcomes.append(
                OutcomeRecord(
                    item_id=item_id,
                    bucket=descriptor.bucket if descriptor else None,
                    key=descriptor.key if descriptor else None,
                    status=outcome.status,
                    attempts=outcome.attempts,
                    diagnostic=outcome.diagnostic,
                    started_at=outcome.started_at,
                    finished_at=outcome.finished_at,
                )
            )

        self.session.flush()
        return record

    def abandon_run(self, run_id: str, reason: str) -> bool:
        """
        Mark a run left non-terminal by a dead process as FAILED.

        Returns:
            True if a non-terminal run was updated
        """
        record = self.session.get(RunRecord, run_id)
        if record is None or record.status not in ACTIVE_STATUSES:
            return False

        record.stage = RunStage.FAILED
        record.status = RunStatus.FAILED
        record.error = reason
        record.finished_at = utcnow()
        self.session.flush()
        return True

    # =========================================================================
    # Queries
    # =========================================================================

    def run_exists(self, run_id: str) -> bool:
        return self.session.get(RunRecord, run_id) is not None

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        """
        Get one run with its outcomes.

        Returns:
            Run dict, or None if unknown
        """
        record = self.session.get(RunRecord, run_id)
        return run_to_dict(record) if record else None

    def get_active_run(self) -> Optional[Dict[str, Any]]:
        """Most recently started run that is not terminal, if any."""
        stmt = (
            select(RunRecord)
            .where(RunRecord.status.in_(ACTIVE_STATUSES))
            .order_by(RunRecord.started_at.desc())
            .limit(1)
        )
        record = self.session.execute(stmt).scalars().first()
        return run_to_dict(record, include_outcomes=False) if record else None

    def get_latest_run(self) -> Optional[Dict[str, Any]]:
        stmt = select(RunRecord).order_by(RunRecord.started_at.desc()).limit(1)
        record = self.session.execute(stmt).scalars().first()
        return run_to_dict(record) if record else None

    def list_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent runs first, without outcomes."""
        stmt = select(RunRecord).order_by(RunRecord.started_at.desc()).limit(limit)
        return [
            run_to_dict(r, include_outcomes=False)
            for r in self.session.execute(stmt).scalars().all()
        ]

    def get_outcomes(self, run_id: str) -> List[Dict[str, Any]]:
        stmt = (
            select(OutcomeRecord)
            .where(OutcomeRecord.run_id == run_id)
            .order_by(OutcomeRecord.id)
        )
        return [outcome_to_dict(o) for o in self.session.execute(stmt).scalars().all()]


def open_repository(url: str) -> RunRepository:
    """
    Create an engine for url, make sure tables exist, return a repository.

    The session stays open for the life of the process (CLI / scheduler).
    Writes happen on worker threads, so an in-memory SQLite database keeps
    a single connection shared across threads.
    """
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database in (None, "", ":memory:"):
        engine = create_engine(
            url, connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
    else:
        engine = create_engine(url)
    Base.metadata.create_all(engine)
    return RunRepository(Session(engine, expire_on_commit=False))
