import os
import socket
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from content_engine.db.models import WorkerLifecycle
from content_engine.domain.clock import utc_now, as_utc
from content_engine.domain.states import WorkerStatus
from content_engine.settings import settings


def new_worker_id() -> str:
    return f"wk-{uuid4().hex[:12]}"


def stale_after() -> timedelta:
    return timedelta(seconds=settings.WORKER_HEARTBEAT_SECONDS * settings.WORKER_STALE_MULTIPLIER)


def is_stale(worker: WorkerLifecycle, now: Optional[datetime] = None) -> bool:
    """A running worker whose last heartbeat is older than the stale threshold."""
    if worker.status != WorkerStatus.RUNNING:
        return False
    now = now or utc_now()
    return now - as_utc(worker.last_heartbeat_at) > stale_after()


async def register_worker(
    session: AsyncSession,
    worker_type: str,
    worker_id: Optional[str] = None,
    meta: Optional[dict[str, Any]] = None,
) -> WorkerLifecycle:
    now = utc_now()
    worker = WorkerLifecycle(
        id=worker_id or new_worker_id(),
        type=worker_type,
        status=WorkerStatus.RUNNING,
        host=socket.gethostname(),
        pid=os.getpid(),
        started_at=now,
        last_heartbeat_at=now,
        meta=meta,
    )
    session.add(worker)
    await session.flush()
    return worker


async def heartbeat_worker(session: AsyncSession, worker_id: str) -> bool:
    """
    Renews the heartbeat for a worker.
    Returns False if the worker row is gone or already stopped.
    """
    res = await session.execute(
        update(WorkerLifecycle)
        .where(WorkerLifecycle.id == worker_id, WorkerLifecycle.status == WorkerStatus.RUNNING)
        .values(last_heartbeat_at=utc_now())
    )
    return res.rowcount == 1


async def deregister_worker(session: AsyncSession, worker_id: str) -> bool:
    now = utc_now()
    res = await session.execute(
        update(WorkerLifecycle)
        .where(WorkerLifecycle.id == worker_id)
        .values(status=WorkerStatus.STOPPED, stopped_at=now, last_heartbeat_at=now)
    )
    return res.rowcount == 1
