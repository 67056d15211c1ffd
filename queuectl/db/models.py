"""
SQLAlchemy database models.
Defines the jobs, config and workers tables.
"""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from queuectl.constants import JobState
from queuectl.timeutil import utcnow


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of work in the queue.

    This is the authoritative source of truth for job state.
    All job lifecycle transitions are managed through this table.

    Key constraints:
    - a claim is valid only while state is PROCESSING and claim_token matches
    - attempts only grows, except for an explicit DLQ retry
    - timestamps are naive UTC
    """

    __tablename__ = "jobs"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
        nullable=False,
    )

    # Work to execute
    command: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    # Lifecycle state
    state: Mapped[JobState] = mapped_column(
        Enum(
            JobState,
            name="job_state",
            native_enum=False,
            length=16,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobState.PENDING,
        index=True,
    )

    # Scheduling
    run_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    max_retries: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=3,
    )

    # Error tracking
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    last_exit_code: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    # Claim management
    claimed_by: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    claim_token: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    __table_args__ = (
        # Index for efficient claim polling
        Index("ix_jobs_claim_poll", "state", "run_at", "created_at"),
        # Index for stale claim detection
        Index("ix_jobs_state_updated", "state", "updated_at"),
    )

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, state={self.state}, "
            f"attempts={self.attempts}/{self.max_retries})"
        )


class ConfigEntry(Base):
    """Runtime configuration override, stored as key -> string."""

    __tablename__ = "config"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )


class WorkerRecord(Base):
    """
    Liveness record for a running worker.

    Lets status queries from other processes count active workers and
    carries the cross-process stop request.
    """

    __tablename__ = "workers"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    hostname: Mapped[str] = mapped_column(String(255), nullable=False)
    pid: Mapped[int] = mapped_column(Integer, nullable=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    heartbeat_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    stopped_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )
    stop_requested: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    def __repr__(self) -> str:
        return f"WorkerRecord(id={self.id}, pid={self.pid})"
