from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import select

from content_engine.api.deps import DbSession
from content_engine.commands.heartbeat import is_stale
from content_engine.db.models import WorkerLifecycle
from content_engine.domain.clock import utc_now, as_utc
from content_engine.domain.states import WorkerStatus

router = APIRouter()

class WorkerDTO(BaseModel):
    id: str
    type: str
    status: WorkerStatus
    host: Optional[str]
    pid: Optional[int]
    started_at: datetime
    last_heartbeat_at: datetime
    stopped_at: Optional[datetime]
    heartbeat_age_seconds: float
    stale: bool
    meta: Optional[dict[str, Any]] = None


@router.get("", response_model=list[WorkerDTO])
async def list_workers(session: DbSession, include_stopped: bool = True):
    stmt = select(WorkerLifecycle).order_by(WorkerLifecycle.started_at.desc())
    if not include_stopped:
        stmt = stmt.where(WorkerLifecycle.status == WorkerStatus.RUNNING)
    workers = (await session.execute(stmt)).scalars().all()

    now = utc_now()
    return [
        WorkerDTO(
            id=w.id,
            type=w.type,
            status=w.status,
            host=w.host,
            pid=w.pid,
            started_at=w.started_at,
            last_heartbeat_at=w.last_heartbeat_at,
            stopped_at=w.stopped_at,
            heartbeat_age_seconds=round((now - as_utc(w.last_heartbeat_at)).total_seconds(), 3),
            stale=is_stale(w, now),
            meta=w.meta,
        )
        for w in workers
    ]
