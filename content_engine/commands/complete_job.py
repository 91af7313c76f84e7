from typing import Any
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from content_engine.api.v1.metrics import JOB_DURATION, JOB_COMPLETE_TOTAL
from content_engine.commands.audit import append_log
from content_engine.commands.syllabus import materialize_syllabus
from content_engine.db.models import Job
from content_engine.domain.clock import utc_now, as_utc
from content_engine.domain.errors import StaleRunError
from content_engine.domain.payloads import decode_outline
from content_engine.domain.states import JobStatus, JobEvent, JobType
from content_engine.utils.locking import release_lock


async def complete_job(
    session: AsyncSession,
    job_id: UUID,
    run_id: UUID,
    result_data: dict[str, Any],
    lock_holder: str,
) -> Job:
    """
    Marks a running job as COMPLETED and saves result.
    Releases the target lock in the same transaction. A syllabus result that
    carries chapters stores them (and their topics) under the subject.
    Raises StaleRunError if `run_id` no longer owns the job.
    """
    now = utc_now()

    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.RUNNING, Job.run_id == run_id)
        .values(
            status=JobStatus.COMPLETED,
            result=result_data,
            last_error=None,
            cancel_requested=False,
            finished_at=now,
            updated_at=now,
        )
        .returning(Job)
        .execution_options(synchronize_session=False)
    )
    job = (await session.execute(stmt)).scalar_one_or_none()
    if job is None:
        raise StaleRunError(job_id, run_id)

    if job.job_type == JobType.SYLLABUS:
        outline = decode_outline(result_data)
        if outline is not None:
            await materialize_syllabus(session, job.entity_id, outline)

    await release_lock(session, job.lock_key, lock_holder)

    # Observe duration
    started_at = as_utc(job.started_at)
    if started_at:
        duration = (now - started_at).total_seconds()
        if duration > 0:
            JOB_DURATION.observe(duration)
    JOB_COMPLETE_TOTAL.labels(job_type=job.job_type).inc()

    await append_log(
        session, job.id, JobEvent.COMPLETED, JobStatus.RUNNING, JobStatus.COMPLETED,
        run_id=str(run_id), attempt=job.attempts + 1,
    )
    return job
