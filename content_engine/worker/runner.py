import asyncio
import logging
import signal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from content_engine.db.session import ping
from content_engine.domain.errors import ConfigurationError
from content_engine.queue.work_queue import WorkQueue
from content_engine.services.generation import Generator
from content_engine.services.system_settings import SettingsReader
from content_engine.settings import settings
from content_engine.worker.lifecycle import WorkerLifecycleTracker
from content_engine.worker.processor import JobProcessor

logger = logging.getLogger(__name__)


class WorkerRunner:
    """
    Runs `concurrency` receive/process slots against the work queue until
    stopped. One slot handles one delivery at a time.
    """

    def __init__(
        self,
        generator: Generator,
        queue: Optional[WorkQueue] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        worker_type: Optional[str] = None,
    ):
        if session_factory is None:
            from content_engine.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.generator = generator
        self.session_factory = session_factory
        self.queue = queue or WorkQueue()
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.poll_interval = poll_interval or settings.WORKER_POLL_SECONDS
        self.tracker = WorkerLifecycleTracker(worker_type, session_factory=session_factory)
        self.processor: Optional[JobProcessor] = None
        self.running = False
        self._shutdown_event = asyncio.Event()

    async def check_dependencies(self):
        """Raises ConfigurationError unless both the job store and the queue answer."""
        try:
            await ping(self.session_factory)
        except Exception as e:
            raise ConfigurationError(f"Job store unreachable: {e}") from e
        try:
            await self.queue.ping()
        except Exception as e:
            raise ConfigurationError(f"Work queue unreachable: {e}") from e

    async def run(self):
        await self.check_dependencies()

        self.running = True
        self._shutdown_event.clear()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                # Windows, or not on the main thread
                pass

        worker_id = await self.tracker.start(meta={"concurrency": self.concurrency})
        self.processor = JobProcessor(
            worker_id=worker_id,
            queue=self.queue,
            generator=self.generator,
            session_factory=self.session_factory,
            settings_reader=SettingsReader(self.session_factory),
        )
        logger.info(f"Worker {worker_id} started with {self.concurrency} slots")

        try:
            await asyncio.gather(*(self._slot(i) for i in range(self.concurrency)))
        finally:
            await self.tracker.stop()
            logger.info("Worker runner stopped")

    def stop(self):
        logger.info("Shutdown signal received")
        self.running = False
        self._shutdown_event.set()

    async def _slot(self, index: int):
        consumer = f"{self.tracker.worker_id}/{index}"
        while self.running:
            try:
                delivery = await self.queue.receive(consumer)

                if delivery is None:
                    try:
                        await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.poll_interval)
                    except asyncio.TimeoutError:
                        pass
                    continue

                outcome = await self.processor.process(delivery)
                logger.debug("Slot %s: job %s -> %s", index, delivery.envelope.job_id, outcome)

            except Exception as e:
                logger.exception("Error in runner slot %s: %s", consumer, e)
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=5.0)
                except asyncio.TimeoutError:
                    pass
