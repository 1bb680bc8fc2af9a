"""
SQLAlchemy ORM models for the run store.

Hierarchy: Run -> Outcomes

Design Notes:
- Uses SQLAlchemy 2.0 style with Mapped types
- Works on SQLite (local, tests) and PostgreSQL (production)
- One outcome row per (run_id, item_id), enforced by a unique constraint
- Runs are never deleted, so every failure stays inspectable
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class RunRecord(Base):
    """
    One WorkflowRun.

    Attributes:
        run_id: Run identifier (primary key)
        stage: Current RunStage
        status: Coarse RunStatus (pending/running/succeeded/failed/partial)
        scheduled_for: Calendar slot (null for manual runs)
        started_at: Creation time
        finished_at: Terminal time (null while running)
        n_items: Manifest size (null until preparation finished)
        succeeded / failed: Outcome counts
        error: Run-level error message
        manifest_key: Storage key of the manifest audit copy
    """

    __tablename__ = "runs"

    run_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    n_items: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    succeeded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    manifest_key: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    # Relationships
    outcomes: Mapped[List["OutcomeRecord"]] = relationship(
        back_populates="run",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OutcomeRecord.id",
    )

    __table_args__ = (Index("idx_runs_started_at", "started_at"),)


class OutcomeRecord(Base):
    """
    Final ExecutionOutcome for one item of a run.

    Attributes:
        id: Primary key
        run_id: FK to runs
        item_id: WorkDescriptor id
        bucket / key: Input artifact location
        status: SUCCESS or TERMINAL_FAILURE
        attempts: Attempts made
        diagnostic: Failure reason or result summary
        started_at / finished_at: Attempt window
    """

    __tablename__ = "outcomes"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        ForeignKey("runs.run_id"), nullable=False, index=True
    )
    item_id: Mapped[str] = mapped_column(String(255), nullable=False)
    bucket: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    key: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    diagnostic: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relationships
    run: Mapped["RunRecord"] = relationship(back_populates="outcomes")

    __table_args__ = (UniqueConstraint("run_id", "item_id", name="uq_outcome_run_item"),)
