import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from content_engine.api.v1.metrics import (
    QUEUE_DEPTH, JOBS_BY_STATUS, WORKERS_ALIVE, REAPER_RECOVERED,
)
from content_engine.commands.fail_job import fail_dead_lettered
from content_engine.commands.heartbeat import is_stale
from content_engine.db.models import Job, WorkerLifecycle
from content_engine.domain.states import JobStatus, WorkerStatus
from content_engine.queue.work_queue import WorkQueue
from content_engine.services.outbox import OutboxProcessor
from content_engine.services.reconciler import HydrationReconciler
from content_engine.settings import settings
from content_engine.utils.locking import purge_expired_locks

logger = logging.getLogger(__name__)


async def reap_queue(queue: WorkQueue, session_factory: async_sessionmaker[AsyncSession]) -> dict[str, int]:
    """
    Requeues messages whose consumer vanished and fails the jobs whose
    messages ran out of deliveries.
    """
    requeued, dead_job_ids = await queue.requeue_expired()
    failed = 0
    for job_id in dead_job_ids:
        async with session_factory() as session:
            async with session.begin():
                if await fail_dead_lettered(session, job_id, "queue message dead-lettered: visibility expired too often"):
                    failed += 1

    if requeued:
        REAPER_RECOVERED.labels(outcome="requeued").inc(requeued)
    if dead_job_ids:
        REAPER_RECOVERED.labels(outcome="dead_lettered").inc(len(dead_job_ids))
    return {"requeued": requeued, "dead_lettered": len(dead_job_ids), "jobs_failed": failed}


async def run_leader_tasks(
    queue: WorkQueue,
    outbox: OutboxProcessor,
    session_factory: async_sessionmaker[AsyncSession],
    reconciler: Optional[HydrationReconciler] = None,
):
    """
    Periodic maintenance tasks:
    1. Reap expired queue deliveries
    2. Sweep outbox rows the immediate relay missed
    3. Purge expired lock rows
    4. Advance hydration cascades
    """
    # 1. Reaper
    await reap_queue(queue, session_factory)

    # 2. Outbox reconciliation
    swept = await outbox.process_batch(older_than_seconds=settings.OUTBOX_SWEEP_AGE_SECONDS)
    if swept:
        logger.info("Outbox sweep relayed %s stale rows", swept)

    # 3. Lock housekeeping
    async with session_factory() as session:
        async with session.begin():
            purged = await purge_expired_locks(session)
    if purged:
        logger.debug("Purged %s expired locks", purged)

    # 4. Cascades
    if reconciler is not None:
        await reconciler.reconcile()


async def run_metrics_tasks(queue: WorkQueue, session_factory: async_sessionmaker[AsyncSession]):
    # Gauges are recomputed from the stores rather than tracked incrementally.
    for state, count in (await queue.counts()).items():
        QUEUE_DEPTH.labels(state=state).set(count)

    async with session_factory() as session:
        rows = (await session.execute(
            select(Job.status, func.count(Job.id)).group_by(Job.status)
        )).all()
        workers = (await session.execute(
            select(WorkerLifecycle).where(WorkerLifecycle.status == WorkerStatus.RUNNING)
        )).scalars().all()

    by_status = {str(s): 0 for s in JobStatus}
    for status, count in rows:
        by_status[str(status)] = count
    for status, count in by_status.items():
        JOBS_BY_STATUS.labels(status=status).set(count)

    WORKERS_ALIVE.set(sum(1 for w in workers if not is_stale(w)))


def write_status_file(path: str, state: dict[str, Any]):
    """Replaces the status file atomically so readers never see a partial write."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_name(f"{target.name}.{os.getpid()}.tmp")
    tmp.write_text(json.dumps(state, default=str), encoding="utf-8")
    os.replace(tmp, target)
