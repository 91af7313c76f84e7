import asyncio
import logging
import os
import socket
from typing import Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from content_engine.api.v1.metrics import LEADER_STATUS
from content_engine.domain.clock import utc_now
from content_engine.queue.work_queue import WorkQueue
from content_engine.scheduler.ticker import run_leader_tasks, run_metrics_tasks, write_status_file
from content_engine.services.outbox import OutboxProcessor
from content_engine.services.producer import JobProducer
from content_engine.services.reconciler import HydrationReconciler
from content_engine.settings import settings
from content_engine.utils.locking import LEADER_LOCK_KEY, acquire_lock, release_lock

logger = logging.getLogger(__name__)


class SchedulerService:
    def __init__(
        self,
        interval: Optional[float] = None,
        queue: Optional[WorkQueue] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        status_file: Optional[str] = None,
    ):
        if session_factory is None:
            from content_engine.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.interval = interval or settings.SCHEDULER_INTERVAL_SECONDS
        self.session_factory = session_factory
        self.queue = queue or WorkQueue()
        self.outbox = OutboxProcessor(queue=self.queue, session_factory=session_factory)
        self.reconciler = HydrationReconciler(
            producer=JobProducer(session_factory=session_factory, outbox=self.outbox),
            session_factory=session_factory,
        )
        self.status_file = status_file or settings.ORCHESTRATOR_STATUS_FILE
        self.instance_id = f"sched-{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:6]}"
        self.started_at = utc_now()
        self._running = False
        self._task = None
        self._is_leader = False

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Scheduler service started.")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._is_leader:
            async with self.session_factory() as session:
                async with session.begin():
                    await release_lock(session, LEADER_LOCK_KEY, self.instance_id)
            self._is_leader = False
            LEADER_STATUS.set(0)
        logger.info("Scheduler service stopped.")

    async def _loop(self):
        while self._running:
            await self.tick()
            await asyncio.sleep(self.interval)

    async def tick(self):
        """One scheduler pass. Errors are logged and leadership is dropped."""
        try:
            # The lease outlives a few missed ticks before another instance may take over.
            async with self.session_factory() as session:
                async with session.begin():
                    is_leader = await acquire_lock(
                        session, LEADER_LOCK_KEY, self.instance_id, int(self.interval * 3) + 1
                    )

            # Execute Leader Tasks
            if is_leader:
                if not self._is_leader:
                    logger.info("Acquired leadership. Starting scheduler.")
                    self._is_leader = True
                await run_leader_tasks(self.queue, self.outbox, self.session_factory, self.reconciler)
            else:
                if self._is_leader:
                    logger.info("Lost leadership. Stopping scheduler.")
                    self._is_leader = False

            # Execute Metrics Tasks (On All Instances)
            await run_metrics_tasks(self.queue, self.session_factory)

        except Exception as e:
            logger.error(f"Error in scheduler ticker: {e}", exc_info=True)
            self._is_leader = False

        LEADER_STATUS.set(1 if self._is_leader else 0)
        self._write_status()

    def _write_status(self):
        try:
            write_status_file(self.status_file, {
                "pid": os.getpid(),
                "host": socket.gethostname(),
                "instance_id": self.instance_id,
                "started_at": self.started_at.isoformat(),
                "last_heartbeat": utc_now().isoformat(),
                "is_leader": self._is_leader,
            })
        except OSError as e:
            logger.warning("Could not write status file %s: %s", self.status_file, e)
