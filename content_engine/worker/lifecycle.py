import asyncio
import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from content_engine.commands.heartbeat import register_worker, heartbeat_worker, deregister_worker
from content_engine.settings import settings

logger = logging.getLogger(__name__)


class WorkerLifecycleTracker:
    """
    Owns a worker's lifecycle row: registers it, keeps its heartbeat fresh
    from a background task and marks it stopped on the way out.
    """

    def __init__(
        self,
        worker_type: Optional[str] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        interval: Optional[float] = None,
    ):
        if session_factory is None:
            from content_engine.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.worker_type = worker_type or settings.WORKER_TYPE
        self.session_factory = session_factory
        self.interval = interval or settings.WORKER_HEARTBEAT_SECONDS
        self.worker_id: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    async def register(self, meta: Optional[dict[str, Any]] = None) -> str:
        async with self.session_factory() as session:
            async with session.begin():
                worker = await register_worker(session, self.worker_type, meta=meta)
                self.worker_id = worker.id
        logger.info("Registered worker %s (%s)", self.worker_id, self.worker_type)
        return self.worker_id

    async def start(self, meta: Optional[dict[str, Any]] = None) -> str:
        if self.worker_id is None:
            await self.register(meta)
        self._task = asyncio.create_task(self._heartbeat_loop())
        return self.worker_id

    async def heartbeat(self) -> bool:
        async with self.session_factory() as session:
            async with session.begin():
                return await heartbeat_worker(session, self.worker_id)

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self.worker_id:
            async with self.session_factory() as session:
                async with session.begin():
                    await deregister_worker(session, self.worker_id)
            logger.info("Worker %s stopped", self.worker_id)

    async def _heartbeat_loop(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                if not await self.heartbeat():
                    logger.warning("Heartbeat for %s matched no running worker row", self.worker_id)
            except Exception as e:
                # Store blip; staleness is judged by readers, so keep trying.
                logger.warning("Heartbeat failed for %s: %s", self.worker_id, e)

    async def __aenter__(self) -> "WorkerLifecycleTracker":
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.stop()
