"""
Drives hydration cascades forward.

A cascade starts with the subject's syllabus job. Once that job has completed
(and stored the chapters and topics it produced), every topic under the
subject gets a notes job; when all of those are finished the questions jobs
are created, then the tests jobs. A stage only starts once every job of the
previous stage is terminal. Child jobs are created through the producer, so
they go through the outbox like any other job.

Each pass is idempotent: a child is created only for topics that have none for
the stage yet, so a pass interrupted halfway is completed by the next one.
"""
import logging
from collections import Counter
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from content_engine.api.v1.metrics import CASCADES_FINISHED
from content_engine.commands.syllabus import subject_chapter_ids, subject_topic_ids
from content_engine.db.models import HydrationCascade, Job
from content_engine.domain.clock import utc_now
from content_engine.domain.states import (
    ACTIVE_STATUSES, CASCADE_STAGES, CascadeStatus, JobStatus, JobType,
)
from content_engine.services.producer import JobProducer
from content_engine.settings import settings
from content_engine.utils.locking import acquire_lock, release_lock

logger = logging.getLogger(__name__)

RECONCILER_LOCK_KEY = "hydration-reconciler"


class HydrationReconciler:
    def __init__(
        self,
        producer: Optional[JobProducer] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        batch_size: Optional[int] = None,
        lock_seconds: Optional[int] = None,
    ):
        if session_factory is None:
            from content_engine.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.producer = producer or JobProducer(session_factory=session_factory)
        self.batch_size = batch_size or settings.RECONCILER_BATCH_SIZE
        self.lock_seconds = lock_seconds or settings.RECONCILER_LOCK_SECONDS
        self.holder = f"reconciler-{uuid4().hex[:8]}"

    async def reconcile(self) -> int:
        """One pass over running cascades. Returns how many were examined."""
        async with self.session_factory() as session:
            async with session.begin():
                acquired = await acquire_lock(session, RECONCILER_LOCK_KEY, self.holder, self.lock_seconds)
        if not acquired:
            logger.debug("Reconciler lock held elsewhere; skipping this pass")
            return 0

        try:
            async with self.session_factory() as session:
                root_ids = (await session.execute(
                    select(HydrationCascade.root_job_id)
                    .where(HydrationCascade.status == CascadeStatus.RUNNING)
                    .order_by(HydrationCascade.created_at.asc())
                    .limit(self.batch_size)
                )).scalars().all()

            for root_id in root_ids:
                try:
                    await self.reconcile_one(root_id)
                except Exception as e:
                    logger.error("Failed to reconcile cascade %s: %s", root_id, e, exc_info=True)
            return len(root_ids)
        finally:
            async with self.session_factory() as session:
                async with session.begin():
                    await release_lock(session, RECONCILER_LOCK_KEY, self.holder)

    async def reconcile_one(self, root_id: UUID) -> Optional[CascadeStatus]:
        async with self.session_factory() as session:
            cascade = await session.get(HydrationCascade, root_id)
            root_status = await session.scalar(select(Job.status).where(Job.id == root_id))
        if cascade is None or cascade.status != CascadeStatus.RUNNING or root_status is None:
            return None

        root_status = JobStatus(root_status)
        if root_status == JobStatus.FAILED:
            await self._finish(cascade, CascadeStatus.FAILED, str(JobType.SYLLABUS), root_status)
            return CascadeStatus.FAILED
        if root_status == JobStatus.CANCELLED:
            await self._finish(cascade, CascadeStatus.CANCELLED, str(JobType.SYLLABUS), root_status)
            return CascadeStatus.CANCELLED
        if root_status != JobStatus.COMPLETED:
            await self._save_progress(cascade, str(JobType.SYLLABUS), root_status)
            return CascadeStatus.RUNNING

        async with self.session_factory() as session:
            chapter_ids = await subject_chapter_ids(session, cascade.subject_id)
            topic_ids = await subject_topic_ids(session, cascade.subject_id, chapter_ids)

        for stage in CASCADE_STAGES:
            children = await self._children(root_id, stage)
            missing = [topic_id for topic_id in topic_ids if topic_id not in children]
            if missing:
                logger.info("Cascade %s: creating %s %s jobs", root_id, len(missing), stage)
                for topic_id in missing:
                    await self.producer.enqueue(
                        topic_id, stage, self._stage_payload(cascade, stage), root_job_id=root_id
                    )
            if missing or any(status in ACTIVE_STATUSES for status in children.values()):
                await self._save_progress(cascade, str(stage), root_status, len(chapter_ids), topic_ids)
                return CascadeStatus.RUNNING

        async with self.session_factory() as session:
            failed = await session.scalar(
                select(Job.id).where(Job.root_job_id == root_id, Job.status == JobStatus.FAILED).limit(1)
            )
        final = CascadeStatus.FAILED if failed else CascadeStatus.COMPLETED
        await self._finish(cascade, final, "done", root_status, len(chapter_ids), topic_ids)
        return final

    @staticmethod
    def _stage_payload(cascade: HydrationCascade, stage: JobType) -> dict[str, Any]:
        if stage == JobType.NOTES:
            return {"language": cascade.language}
        return {"language": cascade.language, "difficulty": cascade.difficulty}

    async def _children(self, root_id: UUID, stage: JobType) -> dict[str, JobStatus]:
        """Status of the latest job per topic for `stage` in this cascade."""
        async with self.session_factory() as session:
            rows = (await session.execute(
                select(Job.entity_id, Job.status)
                .where(Job.root_job_id == root_id, Job.job_type == stage)
                .order_by(Job.created_at.asc())
            )).all()
        return {entity_id: JobStatus(status) for entity_id, status in rows}

    async def _progress(
        self,
        cascade: HydrationCascade,
        root_status: JobStatus,
        chapters: int,
        topic_ids: list[str],
    ) -> dict[str, Any]:
        progress: dict[str, Any] = {
            "syllabus": str(root_status),
            "chapters": chapters,
            "topics": len(topic_ids),
        }
        for stage in CASCADE_STAGES:
            counts = Counter(str(s) for s in (await self._children(cascade.root_job_id, stage)).values())
            progress[str(stage)] = {
                "expected": len(topic_ids),
                "created": sum(counts.values()),
                **{str(s): counts.get(str(s), 0) for s in JobStatus},
            }
        return progress

    async def _save_progress(
        self,
        cascade: HydrationCascade,
        stage: str,
        root_status: JobStatus,
        chapters: int = 0,
        topic_ids: Optional[list[str]] = None,
    ):
        progress = await self._progress(cascade, root_status, chapters, topic_ids or [])
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(HydrationCascade)
                    .where(
                        HydrationCascade.root_job_id == cascade.root_job_id,
                        HydrationCascade.status == CascadeStatus.RUNNING,
                    )
                    .values(stage=stage, progress=progress, updated_at=utc_now())
                )

    async def _finish(
        self,
        cascade: HydrationCascade,
        status: CascadeStatus,
        stage: str,
        root_status: JobStatus,
        chapters: int = 0,
        topic_ids: Optional[list[str]] = None,
    ):
        progress = await self._progress(cascade, root_status, chapters, topic_ids or [])
        now = utc_now()
        async with self.session_factory() as session:
            async with session.begin():
                res = await session.execute(
                    update(HydrationCascade)
                    .where(
                        HydrationCascade.root_job_id == cascade.root_job_id,
                        HydrationCascade.status == CascadeStatus.RUNNING,
                    )
                    .values(status=status, stage=stage, progress=progress, updated_at=now, finished_at=now)
                )
        if res.rowcount == 1:
            CASCADES_FINISHED.labels(status=str(status)).inc()
            logger.info("Cascade %s for subject %s finished: %s", cascade.root_job_id, cascade.subject_id, status)
