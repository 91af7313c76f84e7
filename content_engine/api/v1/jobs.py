from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select

from content_engine.api.deps import DbSession, Producer
from content_engine.commands.cancel_job import cancel_job as cancel_job_command
from content_engine.db.models import Job, JobExecutionLog
from content_engine.domain.errors import (
    InvalidJobError, InvalidJobStateError, JobNotFoundError, NotFoundError, StorageError,
)
from content_engine.domain.states import JobStatus, JobEvent, JobType, EntityType

router = APIRouter()

class JobCreate(BaseModel):
    entity_id: str
    job_type: JobType
    payload: dict[str, Any] = Field(default_factory=dict)
    max_attempts: Optional[int] = Field(default=None, ge=1, le=20)

class EnqueueResponse(BaseModel):
    job_id: UUID
    created: bool

class JobResponse(BaseModel):
    id: UUID
    job_type: JobType
    entity_type: EntityType
    entity_id: str
    status: JobStatus
    payload: dict[str, Any]
    result: Optional[dict[str, Any]] = None
    attempts: int
    max_attempts: int
    last_error: Optional[str]
    cancel_requested: bool
    worker_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    root_job_id: Optional[UUID] = None
    model_config = ConfigDict(from_attributes=True)

class TimelineEntry(BaseModel):
    event: JobEvent
    prev_status: Optional[JobStatus]
    new_status: Optional[JobStatus]
    meta: dict[str, Any]
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


@router.post("", response_model=EnqueueResponse)
async def create_job(body: JobCreate, producer: Producer, response: Response):
    try:
        result = await producer.enqueue(body.entity_id, body.job_type, body.payload, body.max_attempts)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidJobError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=503, detail=str(e))
    # 201 for a new job, 200 when an active job for the target already existed
    response.status_code = status.HTTP_201_CREATED if result.created else status.HTTP_200_OK
    return EnqueueResponse(job_id=result.job_id, created=result.created)

@router.get("", response_model=list[JobResponse])
async def list_jobs(
    session: DbSession,
    status_filter: Optional[JobStatus] = Query(default=None, alias="status"),
    job_type: Optional[JobType] = None,
    entity_id: Optional[str] = None,
    limit: int = 50,
):
    stmt = select(Job).order_by(Job.created_at.desc()).limit(min(max(limit, 1), 500))
    if status_filter:
        stmt = stmt.where(Job.status == status_filter)
    if job_type:
        stmt = stmt.where(Job.job_type == job_type)
    if entity_id:
        stmt = stmt.where(Job.entity_id == entity_id)
    return (await session.execute(stmt)).scalars().all()

@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: UUID, session: DbSession):
    job = await session.get(Job, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job

@router.get("/{job_id}/timeline", response_model=list[TimelineEntry])
async def get_timeline(job_id: UUID, session: DbSession):
    if not await session.get(Job, job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    stmt = (
        select(JobExecutionLog)
        .where(JobExecutionLog.job_id == job_id)
        .order_by(JobExecutionLog.created_at.asc(), JobExecutionLog.id.asc())
    )
    return (await session.execute(stmt)).scalars().all()

@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(job_id: UUID, session: DbSession):
    try:
        job = await cancel_job_command(session, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    await session.commit()
    return job

@router.post("/{job_id}/regenerate", response_model=EnqueueResponse, status_code=status.HTTP_201_CREATED)
async def regenerate_job(job_id: UUID, producer: Producer):
    try:
        result = await producer.regenerate(job_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except InvalidJobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidJobError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return EnqueueResponse(job_id=result.job_id, created=result.created)
