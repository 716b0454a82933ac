from __future__ import annotations
from datetime import datetime
from typing import Any, Optional
from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLAlchemyEnum,
    ForeignKey,
    Identity,
    Index,
    Integer,
    String,
    Text,
    false as sa_false,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from jobrelay.core.types.status import JobStatus, TriggeredBy


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for the job store"""

    pass


class JobModel(Base):
    """
    One request to execute one instance of a named workflow.

    - id: str # uuid4, immutable
    - owner_id: str # principal that submitted the job, never changes
    - job_type: str # registry key selecting the step function
    - status: JobStatus # PENDING, RUNNING, COMPLETED, FAILED
    - triggered_by: TriggeredBy # USER or SCHEDULER, provenance only
    - payload: dict # step input, written once at creation
    - result: dict # written once, only together with COMPLETED
    - error: str # public failure message, written once, only together with FAILED
    - error_code: str # machine code of the failure (STEP_FAILED, BUDGET_EXCEEDED, ...)
    - worker_id: str # worker instance that claimed the job
    - created_at: datetime # submission time
    - started_at: datetime # set by the pending->running claim
    - completed_at: datetime # set by the single terminal transition
    - heartbeat_at: datetime # refreshed by the worker while RUNNING
    """

    __tablename__ = 'jobrelay_jobs'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    job_type: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[JobStatus] = mapped_column(
        SQLAlchemyEnum(JobStatus, native_enum=False, length=20),
        nullable=False,
        default=JobStatus.PENDING,
    )
    triggered_by: Mapped[TriggeredBy] = mapped_column(
        SQLAlchemyEnum(TriggeredBy, native_enum=False, length=20),
        nullable=False,
        default=TriggeredBy.USER,
        server_default=text("'USER'"),
    )

    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    result: Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    worker_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()')
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    heartbeat_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        # Orphaned-pending sweep and stale-running scan
        Index('idx_jobrelay_jobs_status_created', 'status', 'created_at'),
        CheckConstraint(
            "status <> 'COMPLETED' OR error IS NULL",
            name='ck_jobrelay_jobs_completed_no_error',
        ),
        CheckConstraint(
            "status <> 'FAILED' OR error IS NOT NULL",
            name='ck_jobrelay_jobs_failed_error',
        ),
        CheckConstraint(
            "status <> 'COMPLETED' OR result IS NOT NULL",
            name='ck_jobrelay_jobs_completed_result',
        ),
    )


class ProgressEventModel(Base):
    """
    Append-only progress record of a job.

    - id: int # identity, insertion ordered
    - job_id: str # owning job, cascade-deleted with it
    - step_label: str # short description of the stage
    - percent: int # optional 0..100 estimate
    - detail: Any # optional intermediate output or the failure summary
    - is_final: bool # true only on the last event of a job
    - created_at: datetime # insertion time
    """

    __tablename__ = 'jobrelay_progress_events'

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    job_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('jobrelay_jobs.id', ondelete='CASCADE'),
        nullable=False,
    )
    step_label: Mapped[str] = mapped_column(String(255), nullable=False)
    percent: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    detail: Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)
    is_final: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=sa_false()
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('clock_timestamp()')
    )

    __table_args__ = (
        Index('idx_jobrelay_progress_job_id', 'job_id', 'id'),
        # At most one final event per job
        Index(
            'uq_jobrelay_progress_final',
            'job_id',
            unique=True,
            postgresql_where=text('is_final'),
        ),
        CheckConstraint(
            'percent IS NULL OR (percent >= 0 AND percent <= 100)',
            name='ck_jobrelay_progress_percent',
        ),
    )
