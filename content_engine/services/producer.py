import logging
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from content_engine.commands.enqueue_job import enqueue_job
from content_engine.db.models import HydrationCascade, Job
from content_engine.domain.errors import InvalidJobStateError, JobNotFoundError, StorageError
from content_engine.domain.models import EnqueueResult
from content_engine.domain.payloads import normalize_difficulty, normalize_language
from content_engine.domain.states import CascadeStatus, JobStatus, JobType, TERMINAL_STATUSES
from content_engine.services.outbox import OutboxProcessor

logger = logging.getLogger(__name__)


class JobProducer:
    """Entry point for anything that wants content hydrated."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        outbox: Optional[OutboxProcessor] = None,
    ):
        if session_factory is None:
            from content_engine.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.outbox = outbox or OutboxProcessor(session_factory=session_factory)

    async def enqueue(
        self,
        target_id: str,
        job_type: Any,
        payload: Optional[dict[str, Any]] = None,
        max_attempts: Optional[int] = None,
        root_job_id: Optional[UUID] = None,
    ) -> EnqueueResult:
        async with self.session_factory() as session:
            try:
                job, outbox = await enqueue_job(session, target_id, job_type, payload, max_attempts, root_job_id)
                job_id = job.id
                outbox_id = outbox.id if outbox else None
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise StorageError(f"Could not store {job_type} job for {target_id}: {e}") from e

        if outbox_id is None:
            logger.info("Job already active for %s:%s -> %s", job_type, target_id, job_id)
            return EnqueueResult(job_id=job_id, created=False)

        logger.info("Created job %s (%s for %s)", job_id, job_type, target_id)
        await self._relay(job_id, outbox_id)
        return EnqueueResult(job_id=job_id, created=True, outbox_id=outbox_id)

    async def hydrate_all(
        self,
        subject_id: str,
        language: str,
        difficulty: Optional[str] = None,
    ) -> EnqueueResult:
        """
        Starts a cascade for `subject_id`: its syllabus job is the root, and the
        reconciler adds the per-topic stages as each one finishes. Returns the
        root job; `created` is False when a running cascade already owns it.
        """
        payload = {"language": language}
        async with self.session_factory() as session:
            try:
                job, outbox = await enqueue_job(session, subject_id, JobType.SYLLABUS, payload)
                job_id = job.id
                outbox_id = outbox.id if outbox else None
                cascade = await session.get(HydrationCascade, job_id)
                created = cascade is None
                if created:
                    session.add(HydrationCascade(
                        root_job_id=job_id,
                        subject_id=subject_id,
                        status=CascadeStatus.RUNNING,
                        stage=str(JobType.SYLLABUS),
                        language=normalize_language(language),
                        difficulty=normalize_difficulty(difficulty),
                        progress={},
                    ))
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise StorageError(f"Could not start cascade for {subject_id}: {e}") from e

        if created:
            logger.info("Started hydration cascade %s for subject %s", job_id, subject_id)
        if outbox_id is not None:
            await self._relay(job_id, outbox_id)
        return EnqueueResult(job_id=job_id, created=created, outbox_id=outbox_id)

    async def _relay(self, job_id: UUID, outbox_id: int):
        # Best effort; the outbox loop and the scheduler sweep pick up anything left behind.
        try:
            await self.outbox.relay_one(outbox_id)
        except Exception as e:
            logger.warning("Immediate relay of job %s deferred to the outbox loop: %s", job_id, e)

    async def regenerate(self, job_id: UUID) -> EnqueueResult:
        """Re-enqueues the target of a finished job as a new job."""
        async with self.session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status not in TERMINAL_STATUSES:
                raise InvalidJobStateError(job.status, JobStatus.PENDING)
            entity_id, job_type, payload, max_attempts = job.entity_id, job.job_type, job.payload, job.max_attempts

        return await self.enqueue(entity_id, job_type, payload, max_attempts)
