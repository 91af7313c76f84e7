import json
import logging
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from content_engine.commands.heartbeat import is_stale
from content_engine.db.models import WorkerLifecycle
from content_engine.domain.clock import utc_now
from content_engine.queue.work_queue import WorkQueue
from content_engine.settings import settings

logger = logging.getLogger(__name__)


class StatusAggregator:
    """
    Read-only operational snapshot: queue depth, worker liveness and the
    scheduler's status file. A source that cannot be read is reported as an
    error (or None for the file) instead of failing the whole snapshot.
    """

    def __init__(
        self,
        queue: Optional[WorkQueue] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        status_file: Optional[str] = None,
    ):
        if session_factory is None:
            from content_engine.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.queue = queue or WorkQueue()
        self.status_file = Path(status_file or settings.ORCHESTRATOR_STATUS_FILE)

    async def get_status(self) -> dict[str, Any]:
        return {
            "queue_counts": await self._queue_counts(),
            "worker_counts": await self._worker_counts(),
            "orchestrator_file_state": self._file_state(),
        }

    async def _queue_counts(self) -> dict[str, Any]:
        try:
            return await self.queue.counts()
        except Exception as e:
            logger.warning("Queue counts unavailable: %s", e)
            return {"error": str(e)}

    async def _worker_counts(self) -> dict[str, Any]:
        try:
            async with self.session_factory() as session:
                workers = (await session.execute(select(WorkerLifecycle))).scalars().all()
        except Exception as e:
            logger.warning("Worker counts unavailable: %s", e)
            return {"error": str(e)}

        now = utc_now()
        counts = {"running": 0, "stopped": 0, "stale": 0}
        for worker in workers:
            if is_stale(worker, now):
                counts["stale"] += 1
            else:
                counts[str(worker.status)] = counts.get(str(worker.status), 0) + 1
        return counts

    def _file_state(self) -> Optional[dict[str, Any]]:
        try:
            data = json.loads(self.status_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Unreadable status file %s: %s", self.status_file, e)
            return None
        return data if isinstance(data, dict) else None
