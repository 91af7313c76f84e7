from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from content_engine.commands.audit import append_log
from content_engine.db.models import Job
from content_engine.domain.clock import utc_now
from content_engine.domain.states import JobStatus, JobEvent


async def claim_job(
    session: AsyncSession,
    job_id: UUID,
    run_id: UUID,
    worker_id: str,
) -> Optional[Job]:
    """
    Moves a pending job to running under a fresh `run_id`.
    Returns None when the job is no longer pending (cancelled, or claimed already).
    A pending cancel request survives the claim; the run honours it at its first safe point.
    The caller must hold the target lock.
    """
    now = utc_now()
    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.PENDING)
        .values(
            status=JobStatus.RUNNING,
            run_id=run_id,
            worker_id=worker_id,
            started_at=now,
            updated_at=now,
        )
        .returning(Job)
        .execution_options(synchronize_session=False)
    )
    job = (await session.execute(stmt)).scalar_one_or_none()
    if job is None:
        return None

    await append_log(
        session, job.id, JobEvent.STARTED, JobStatus.PENDING, JobStatus.RUNNING,
        worker_id=worker_id, run_id=str(run_id), attempt=job.attempts + 1,
    )
    return job
