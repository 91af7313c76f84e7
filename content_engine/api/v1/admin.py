from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, ConfigDict

from content_engine.api.deps import DbSession, Producer, Queue, Aggregator, get_session_factory
from content_engine.db.models import HydrationCascade
from content_engine.domain.errors import InvalidJobError, NotFoundError, StorageError
from content_engine.domain.states import CascadeStatus
from content_engine.scheduler.ticker import reap_queue
from content_engine.services.system_settings import (
    AI_PAUSED, get_setting, is_truthy, list_settings, set_setting,
)

router = APIRouter()

class SettingValue(BaseModel):
    value: str

class PauseState(BaseModel):
    key: str
    value: str
    paused: bool

class HydrateAllRequest(BaseModel):
    subject_id: str
    language: str
    difficulty: Optional[str] = None

class HydrateAllResponse(BaseModel):
    root_job_id: UUID
    created: bool

class CascadeResponse(BaseModel):
    root_job_id: UUID
    subject_id: str
    status: CascadeStatus
    stage: str
    language: str
    difficulty: str
    progress: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


@router.post("/topics/pause", response_model=PauseState)
async def pause_topics(session: DbSession):
    row = await set_setting(session, AI_PAUSED, "true")
    await session.commit()
    return PauseState(key=row.key, value=row.value, paused=True)

@router.post("/topics/resume", response_model=PauseState)
async def resume_topics(session: DbSession):
    row = await set_setting(session, AI_PAUSED, "false")
    await session.commit()
    return PauseState(key=row.key, value=row.value, paused=False)

@router.get("/settings")
async def get_settings(session: DbSession) -> dict[str, str]:
    return await list_settings(session)

@router.get("/settings/{key}")
async def get_one_setting(key: str, session: DbSession) -> dict[str, Any]:
    value = await get_setting(session, key)
    if value is None:
        raise HTTPException(status_code=404, detail=f"Setting {key} not found")
    return {"key": key, "value": value, "enabled": is_truthy(value)}

@router.put("/settings/{key}")
async def put_setting(key: str, body: SettingValue, session: DbSession) -> dict[str, Any]:
    row = await set_setting(session, key, body.value)
    await session.commit()
    return {"key": row.key, "value": row.value, "enabled": is_truthy(row.value)}

@router.get("/content-engine/queue")
async def queue_counts(queue: Queue) -> dict[str, int]:
    try:
        return await queue.counts()
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Queue unavailable: {e}")

@router.get("/content-engine/queue/ping")
async def queue_ping(queue: Queue) -> dict[str, Any]:
    try:
        await queue.ping()
    except Exception as e:
        return {"ok": False, "error": str(e)}
    return {"ok": True}

@router.post("/content-engine/reap")
async def trigger_reap(queue: Queue, session_factory=Depends(get_session_factory)) -> dict[str, int]:
    return await reap_queue(queue, session_factory)

@router.get("/orchestrator/status")
async def orchestrator_status(aggregator: Aggregator) -> dict[str, Any]:
    return await aggregator.get_status()

@router.post("/content-engine/hydrate-all", response_model=HydrateAllResponse)
async def hydrate_all(body: HydrateAllRequest, producer: Producer, response: Response):
    try:
        result = await producer.hydrate_all(body.subject_id, body.language, body.difficulty)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidJobError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=503, detail=str(e))
    response.status_code = status.HTTP_201_CREATED if result.created else status.HTTP_200_OK
    return HydrateAllResponse(root_job_id=result.job_id, created=result.created)

@router.get("/content-engine/hydrate-all/{root_job_id}", response_model=CascadeResponse)
async def get_cascade(root_job_id: UUID, session: DbSession):
    cascade = await session.get(HydrationCascade, root_job_id)
    if not cascade:
        raise HTTPException(status_code=404, detail="Cascade not found")
    return cascade
