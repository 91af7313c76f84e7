from datetime import datetime
from typing import Optional, Any
from uuid import UUID, uuid4

from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Index, JSON, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import JSONB

from content_engine.db.session import Base
from content_engine.domain.clock import utc_now
from content_engine.domain.states import CascadeStatus, JobStatus, JobEvent, JobType, EntityType, WorkerStatus

# JSONB on Postgres, plain JSON elsewhere (tests run on SQLite).
JsonType = JSON().with_variant(JSONB(), "postgresql")

_ACTIVE_FILTER = "status IN ('pending', 'running')"


class SyllabusNode(Base):
    """Minimal view of the syllabus tree that jobs target."""
    __tablename__ = "syllabus_nodes"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    entity_type: Mapped[EntityType] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    parent_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("syllabus_nodes.id"), nullable=True)


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    # Target
    job_type: Mapped[JobType] = mapped_column(String, nullable=False)
    entity_type: Mapped[EntityType] = mapped_column(String, nullable=False)
    entity_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    # State machine
    status: Mapped[JobStatus] = mapped_column(String, default=JobStatus.PENDING, index=True)
    run_id: Mapped[Optional[UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    worker_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)

    # Retry logic
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    last_error: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Syllabus job whose cascade created (or adopted) this job
    root_job_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("jobs.id"), nullable=True, index=True
    )

    # Payload
    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JsonType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    logs: Mapped[list["JobExecutionLog"]] = relationship(
        "JobExecutionLog", back_populates="job", cascade="all, delete-orphan", order_by="JobExecutionLog.created_at"
    )

    __table_args__ = (
        # At most one pending/running job per target
        Index(
            "ux_jobs_active_target",
            "job_type",
            "entity_id",
            unique=True,
            postgresql_where=text(_ACTIVE_FILTER),
            sqlite_where=text(_ACTIVE_FILTER),
        ),
    )

    @property
    def lock_key(self) -> str:
        return f"{self.job_type}:{self.entity_id}"


class JobExecutionLog(Base):
    __tablename__ = "job_execution_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), index=True)

    event: Mapped[JobEvent] = mapped_column(String, nullable=False)
    prev_status: Mapped[Optional[JobStatus]] = mapped_column(String, nullable=True)
    new_status: Mapped[Optional[JobStatus]] = mapped_column(String, nullable=True)

    # Context (e.g. worker_id, run_id, error message, attempt number)
    meta: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)

    job: Mapped["Job"] = relationship("Job", back_populates="logs")


class JobLock(Base):
    __tablename__ = "job_locks"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    holder: Mapped[str] = mapped_column(String, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class WorkerLifecycle(Base):
    __tablename__ = "worker_lifecycles"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    type: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[WorkerStatus] = mapped_column(String, default=WorkerStatus.RUNNING, index=True)
    host: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    pid: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    last_heartbeat_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    stopped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    meta: Mapped[Optional[dict[str, Any]]] = mapped_column(JsonType, nullable=True)


class SystemSetting(Base):
    __tablename__ = "system_settings"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class OutboxMessage(Base):
    __tablename__ = "outbox_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)


class HydrationCascade(Base):
    """
    A "hydrate everything" run for one subject. The root is the subject's
    syllabus job; per-topic jobs of each stage point back at it through
    `Job.root_job_id`.
    """
    __tablename__ = "hydration_cascades"

    root_job_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("jobs.id"), primary_key=True)
    subject_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    status: Mapped[CascadeStatus] = mapped_column(String, default=CascadeStatus.RUNNING, index=True)
    stage: Mapped[str] = mapped_column(String, default=str(JobType.SYLLABUS))
    language: Mapped[str] = mapped_column(String, nullable=False)
    difficulty: Mapped[str] = mapped_column(String, nullable=False, default="medium")
    progress: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
