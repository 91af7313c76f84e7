import logging
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from content_engine.commands.audit import append_log
from content_engine.db.models import Job
from content_engine.domain.clock import utc_now
from content_engine.domain.errors import JobNotFoundError, StaleRunError
from content_engine.domain.states import JobStatus, JobEvent, TERMINAL_STATUSES
from content_engine.utils.locking import release_lock

logger = logging.getLogger(__name__)


async def cancel_job(session: AsyncSession, job_id: UUID) -> Job:
    """
    Admin cancellation.

    Pending jobs are cancelled on the spot. Running jobs only get
    `cancel_requested`; the worker stops at its next safe point and performs
    the final transition. Terminal jobs are returned unchanged.
    """
    job = await session.get(Job, job_id)
    if not job:
        raise JobNotFoundError(job_id)

    if job.status in TERMINAL_STATUSES:
        return job

    now = utc_now()

    if job.status == JobStatus.PENDING:
        res = await session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.PENDING)
            .values(status=JobStatus.CANCELLED, finished_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            await append_log(session, job_id, JobEvent.CANCELLED, JobStatus.PENDING, JobStatus.CANCELLED, source="admin")
            await session.refresh(job)
            return job
        # Lost a race with a worker claim; fall through to the running path
        await session.refresh(job)

    if job.status == JobStatus.RUNNING and not job.cancel_requested:
        res = await session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.RUNNING)
            .values(cancel_requested=True, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            await append_log(
                session, job_id, JobEvent.CANCEL_REQUESTED, JobStatus.RUNNING, JobStatus.RUNNING,
                run_id=str(job.run_id) if job.run_id else None,
            )
            logger.info("Cancellation requested for running job %s", job_id)
        await session.refresh(job)

    return job


async def is_cancel_requested(session: AsyncSession, job_id: UUID) -> bool:
    return bool(await session.scalar(select(Job.cancel_requested).where(Job.id == job_id)))


async def finalize_cancel(session: AsyncSession, job_id: UUID, run_id: UUID, lock_holder: str) -> Job:
    """Worker side of cancellation: running -> cancelled for the owning run."""
    now = utc_now()
    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.RUNNING, Job.run_id == run_id)
        .values(status=JobStatus.CANCELLED, finished_at=now, updated_at=now)
        .returning(Job)
        .execution_options(synchronize_session=False)
    )
    job = (await session.execute(stmt)).scalar_one_or_none()
    if job is None:
        raise StaleRunError(job_id, run_id)

    await release_lock(session, job.lock_key, lock_holder)
    await append_log(session, job_id, JobEvent.CANCELLED, JobStatus.RUNNING, JobStatus.CANCELLED, run_id=str(run_id))
    return job
