import asyncio
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from content_engine.api.v1.metrics import OUTBOX_RELAYED
from content_engine.commands.audit import append_log
from content_engine.db.models import Job, OutboxMessage
from content_engine.domain.clock import utc_now
from content_engine.domain.models import QueueEnvelope
from content_engine.domain.states import JobEvent, JobStatus
from content_engine.queue.work_queue import WorkQueue
from content_engine.settings import settings

logger = logging.getLogger(__name__)


class OutboxProcessor:
    """
    Relays committed outbox rows to the work queue.

    Pushing is idempotent per job, so a row relayed twice (by the producer's
    immediate relay and by this loop) yields a single queue message.
    """

    def __init__(
        self,
        queue: Optional[WorkQueue] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        interval: Optional[float] = None,
        batch_size: Optional[int] = None,
    ):
        if session_factory is None:
            from content_engine.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.queue = queue or WorkQueue()
        self.interval = interval or settings.OUTBOX_POLL_SECONDS
        self.batch_size = batch_size or settings.OUTBOX_BATCH_SIZE
        self.running = False
        self._task = None

    async def start(self):
        self.running = True
        self._task = asyncio.create_task(self.run_loop())
        logger.info("OutboxProcessor started.")

    async def stop(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("OutboxProcessor stopped.")

    async def run_loop(self):
        while self.running:
            try:
                processed_count = await self.process_batch()
                if processed_count == 0:
                    await asyncio.sleep(self.interval)
            except Exception as e:
                logger.error(f"Error in OutboxProcessor: {e}", exc_info=True)
                await asyncio.sleep(self.interval)

    async def process_batch(self, older_than_seconds: float = 0) -> int:
        """
        Relays up to `batch_size` unsent rows, least-tried first and oldest
        within a try count, so rows that keep failing cannot starve new ones.
        `older_than_seconds` leaves fresh rows to the producer's own relay.
        Returns the number of rows relayed.
        """
        cutoff = utc_now() - timedelta(seconds=older_than_seconds)
        async with self.session_factory() as session:
            stmt = (
                select(OutboxMessage.id)
                .where(OutboxMessage.sent_at.is_(None), OutboxMessage.created_at <= cutoff)
                .order_by(OutboxMessage.attempts.asc(), OutboxMessage.created_at.asc(), OutboxMessage.id.asc())
                .limit(self.batch_size)
            )
            ids = (await session.execute(stmt)).scalars().all()

        relayed = 0
        for outbox_id in ids:
            if await self.relay_one(outbox_id):
                relayed += 1
        return relayed

    async def relay_one(self, outbox_id: int) -> bool:
        """
        Pushes one outbox row to the queue and marks it sent.
        Failures are recorded on the row and left for the next pass.
        """
        async with self.session_factory() as session:
            row = await session.get(OutboxMessage, outbox_id)
            if row is None or row.sent_at is not None:
                return False
            envelope = QueueEnvelope.from_dict(row.payload)

        try:
            pushed = await self.queue.push(envelope)
        except Exception as e:
            logger.error("Failed to relay outbox %s for job %s: %s", outbox_id, envelope.job_id, e)
            OUTBOX_RELAYED.labels(result="error").inc()
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(
                        update(OutboxMessage)
                        .where(OutboxMessage.id == outbox_id)
                        .values(attempts=OutboxMessage.attempts + 1, last_error=str(e))
                    )
            return False

        async with self.session_factory() as session:
            async with session.begin():
                res = await session.execute(
                    update(OutboxMessage)
                    .where(OutboxMessage.id == outbox_id, OutboxMessage.sent_at.is_(None))
                    .values(sent_at=utc_now(), attempts=OutboxMessage.attempts + 1, last_error=None)
                )
                if res.rowcount != 1:
                    # Another relay marked it first
                    return False
                if pushed:
                    status = await session.scalar(select(Job.status).where(Job.id == envelope.job_id))
                    if status is not None:
                        status = JobStatus(status)
                        await append_log(session, envelope.job_id, JobEvent.ENQUEUED, status, status, outbox_id=outbox_id)

        OUTBOX_RELAYED.labels(result="sent" if pushed else "duplicate").inc()
        logger.info("OUTBOX RELAY: id=%s job=%s pushed=%s", outbox_id, envelope.job_id, pushed)
        return True
