from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from content_engine.api.v1.metrics import JOB_FAILURES
from content_engine.commands.audit import append_log
from content_engine.db.models import Job
from content_engine.domain.clock import utc_now
from content_engine.domain.errors import JobNotFoundError, StaleRunError
from content_engine.domain.states import JobStatus, JobEvent, TERMINAL_STATUSES
from content_engine.utils.locking import release_lock


async def fail_job(
    session: AsyncSession,
    job_id: UUID,
    run_id: Optional[UUID],
    error: str,
    retryable: bool = True,
    reason: Optional[str] = None,
    lock_holder: Optional[str] = None,
) -> Job:
    """
    Records a failed attempt of the run `run_id`.

    attempts is incremented; the job goes back to PENDING (RETRY) while
    attempts < max_attempts and the failure is retryable, otherwise to
    FAILED with last_error set. A job with a pending cancel request ends
    CANCELLED instead of being retried. Raises StaleRunError if the run no
    longer owns the job.
    """
    now = utc_now()

    # Plain column read; the ORM instance comes back from the guarded UPDATE below
    job = (await session.execute(
        select(
            Job.status, Job.run_id, Job.attempts, Job.max_attempts, Job.job_type, Job.cancel_requested,
        ).where(Job.id == job_id)
    )).one_or_none()
    if not job:
        raise JobNotFoundError(job_id)
    if job.status != JobStatus.RUNNING or job.run_id != run_id:
        raise StaleRunError(job_id, run_id)

    attempts = job.attempts + 1

    if job.cancel_requested:
        values = dict(
            status=JobStatus.CANCELLED,
            finished_at=now,
        )
        next_event = JobEvent.CANCELLED
    elif retryable and attempts < job.max_attempts:
        values = dict(
            status=JobStatus.PENDING,
            run_id=None,
            worker_id=None,
        )
        next_event = JobEvent.RETRY
    else:
        values = dict(
            status=JobStatus.FAILED,
            finished_at=now,
        )
        next_event = JobEvent.FAILED

    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.RUNNING, Job.run_id == run_id)
        .values(attempts=attempts, last_error=error, updated_at=now, **values)
        .returning(Job)
        .execution_options(synchronize_session=False)
    )
    updated = (await session.execute(stmt)).scalar_one_or_none()
    if updated is None:
        raise StaleRunError(job_id, run_id)

    if next_event != JobEvent.CANCELLED:
        kind = "retryable" if next_event == JobEvent.RETRY else "final"
        JOB_FAILURES.labels(job_type=updated.job_type, type=kind).inc()

    if lock_holder:
        await release_lock(session, updated.lock_key, lock_holder)

    await append_log(
        session, updated.id, next_event, JobStatus.RUNNING, JobStatus(updated.status),
        error=error,
        reason=reason,
        attempt=attempts,
        max_attempts=updated.max_attempts,
        run_id=str(run_id) if run_id else None,
    )
    return updated


async def record_stale_conflict(
    session: AsyncSession,
    job_id: UUID,
    run_id: UUID,
    worker_id: str,
    error: Optional[str] = None,
) -> None:
    """
    Audits a run that lost its job to a stale-lock steal. Status is not
    touched; the row exists so the dispossessed run is visible in the timeline.
    """
    row = (await session.execute(select(Job.status, Job.job_type).where(Job.id == job_id))).one_or_none()
    if row is None:
        return
    status = JobStatus(row.status)
    await append_log(
        session, job_id, JobEvent.FAILED, status, status,
        conflict="stale_lock_steal",
        run_id=str(run_id),
        worker_id=worker_id,
        error=error,
    )
    JOB_FAILURES.labels(job_type=row.job_type, type="conflict").inc()


async def fail_dead_lettered(session: AsyncSession, job_id: UUID, reason: str) -> Optional[Job]:
    """
    Terminally fails a job whose queue message was dead-lettered.
    Terminal jobs are left alone (returns None).
    """
    now = utc_now()
    job = (await session.execute(select(Job.status).where(Job.id == job_id))).one_or_none()
    if job is None or job.status in TERMINAL_STATUSES:
        return None

    prev_status = JobStatus(job.status)
    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == prev_status)
        .values(status=JobStatus.FAILED, last_error=reason, finished_at=now, updated_at=now)
        .returning(Job)
        .execution_options(synchronize_session=False)
    )
    updated = (await session.execute(stmt)).scalar_one_or_none()
    if updated is None:
        return None

    JOB_FAILURES.labels(job_type=updated.job_type, type="final").inc()
    await append_log(session, job_id, JobEvent.DEAD_LETTERED, prev_status, JobStatus.FAILED, error=reason)
    return updated
