from datetime import timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from content_engine.db.models import JobExecutionLog
from content_engine.domain.clock import utc_now, as_utc
from content_engine.domain.states import JobEvent, JobStatus


async def append_log(
    session: AsyncSession,
    job_id: UUID,
    event: JobEvent,
    prev_status: Optional[JobStatus],
    new_status: Optional[JobStatus],
    **meta: Any,
) -> JobExecutionLog:
    """
    Appends one execution-log row for `job_id`.

    created_at is kept strictly increasing per job so the timeline orders
    unambiguously even when two events land within the clock's resolution.
    """
    now = utc_now()
    last = as_utc(await session.scalar(
        select(func.max(JobExecutionLog.created_at)).where(JobExecutionLog.job_id == job_id)
    ))
    if last is not None and now <= last:
        now = last + timedelta(microseconds=1)

    entry = JobExecutionLog(
        job_id=job_id,
        event=event,
        prev_status=prev_status,
        new_status=new_status,
        meta={k: v for k, v in meta.items() if v is not None},
        created_at=now,
    )
    session.add(entry)
    # Flush so the next append in this transaction sees this row's timestamp
    await session.flush()
    return entry
