"""
Per-delivery state machine of a hydration worker.

Each step runs in its own short transaction so no database transaction is
held open across the AI call. Every path ends in exactly one queue decision
(ack, retry or defer) and writes its audit row before making it.
"""
import asyncio
import logging
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from content_engine.api.v1.metrics import LOCK_CONTENTION, POLICY_DEFERRALS
from content_engine.commands.audit import append_log
from content_engine.commands.cancel_job import finalize_cancel, is_cancel_requested
from content_engine.commands.complete_job import complete_job
from content_engine.commands.fail_job import fail_job, fail_dead_lettered, record_stale_conflict
from content_engine.commands.start_job import claim_job
from content_engine.db.models import Job
from content_engine.domain.errors import InvalidJobError, PolicyBlockedError, StaleRunError
from content_engine.domain.models import Delivery, JobContext, ProcessOutcome
from content_engine.domain.payloads import decode_payload
from content_engine.domain.retry import calculate_delay
from content_engine.domain.states import JobEvent, JobStatus, JobType, MessageState, TERMINAL_STATUSES
from content_engine.queue.work_queue import WorkQueue
from content_engine.services.generation import Generator
from content_engine.services.system_settings import SettingsReader
from content_engine.settings import settings
from content_engine.utils.locking import acquire_lock, is_lock_held, release_lock, renew_lock

logger = logging.getLogger(__name__)


class JobProcessor:
    def __init__(
        self,
        worker_id: str,
        queue: WorkQueue,
        generator: Generator,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings_reader: Optional[SettingsReader] = None,
        lock_lease_seconds: Optional[int] = None,
        call_timeout: Optional[float] = None,
    ):
        if session_factory is None:
            from content_engine.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.worker_id = worker_id
        self.queue = queue
        self.generator = generator
        self.session_factory = session_factory
        self.settings_reader = settings_reader or SettingsReader(session_factory)
        self.lock_lease_seconds = lock_lease_seconds or settings.JOB_LOCK_LEASE_SECONDS
        self.call_timeout = call_timeout or settings.AI_CALL_TIMEOUT_SECONDS

    async def process(self, delivery: Delivery) -> ProcessOutcome:
        """Handles one delivery. Never raises (except on task cancellation)."""
        try:
            return await self._process(delivery)
        except Exception as e:
            logger.exception("Error processing job %s: %s", delivery.envelope.job_id, e)
            try:
                await self.queue.retry(delivery, settings.CONTENTION_RETRY_DELAY_SECONDS, error=f"{type(e).__name__}: {e}")
            except Exception:
                logger.exception("Could not return message %s to the queue", delivery.message_id)
            return ProcessOutcome.ERROR

    async def _process(self, delivery: Delivery) -> ProcessOutcome:
        job_id = delivery.envelope.job_id

        async with self.session_factory() as session:
            job = await session.get(Job, job_id)
        if job is None:
            logger.warning("Job %s not found; dropping message %s", job_id, delivery.message_id)
            await self.queue.ack(delivery)
            return ProcessOutcome.SKIPPED
        if job.status in TERMINAL_STATUSES:
            await self.queue.ack(delivery)
            return ProcessOutcome.SKIPPED

        if job.status == JobStatus.RUNNING:
            async with self.session_factory() as session:
                held = await is_lock_held(session, job.lock_key)
            if held:
                # A redelivery while the run is alive; keep the message so the job is never left without one.
                logger.info("Job %s is still running elsewhere; deferring duplicate delivery", job_id)
                await self.queue.defer(delivery, settings.CONTENTION_RETRY_DELAY_SECONDS, reason="run in progress")
                return ProcessOutcome.CONTENDED

            # The previous run stopped renewing its lease: count it as a failed attempt.
            job = await self._fail_abandoned(job)
            if job is None:
                await self.queue.defer(delivery, settings.CONTENTION_RETRY_DELAY_SECONDS, reason="abandoned run raced")
                return ProcessOutcome.CONTENDED
            if job.status in TERMINAL_STATUSES:
                await self.queue.ack(delivery)
                return ProcessOutcome.CANCELLED if job.status == JobStatus.CANCELLED else ProcessOutcome.FAILED

        try:
            await self.settings_reader.ensure_allowed(JobType(job.job_type))
        except PolicyBlockedError as e:
            return await self._defer_for_policy(delivery, job, e.tag)

        run_id = uuid4()
        holder = str(run_id)
        async with self.session_factory() as session:
            async with session.begin():
                acquired = await acquire_lock(session, job.lock_key, holder, self.lock_lease_seconds)
        if not acquired:
            LOCK_CONTENTION.inc()
            logger.info("Lock %s held elsewhere; deferring job %s", job.lock_key, job_id)
            await self.queue.defer(delivery, settings.CONTENTION_RETRY_DELAY_SECONDS, reason="lock contention")
            return ProcessOutcome.CONTENDED

        async with self.session_factory() as session:
            async with session.begin():
                claimed = await claim_job(session, job_id, run_id, self.worker_id)
                if claimed is None:
                    await release_lock(session, job.lock_key, holder)
        if claimed is None:
            # Cancelled (or otherwise finished) between the read and the claim
            await self.queue.ack(delivery)
            return ProcessOutcome.SKIPPED

        try:
            return await self._execute(delivery, claimed, run_id)
        except Exception as e:
            if not await self._owns(job_id, run_id):
                raise
            logger.exception("Run %s of job %s crashed: %s", run_id, job_id, e)
            return await self._fail(delivery, claimed, run_id, f"{type(e).__name__}: {e}")

    async def _execute(self, delivery: Delivery, job: Job, run_id: UUID) -> ProcessOutcome:
        holder = str(run_id)
        try:
            payload = decode_payload(job.job_type, job.payload)
        except InvalidJobError as e:
            return await self._fail(delivery, job, run_id, str(e), retryable=False)

        if await self._cancel_requested(job.id):
            return await self._cancel(delivery, job, run_id)

        context = JobContext(
            job_id=job.id,
            job_type=JobType(job.job_type),
            entity_id=job.entity_id,
            attempt=job.attempts + 1,
            run_id=run_id,
        )
        logger.info("Running %s for %s (job %s, attempt %s)", job.job_type, job.entity_id, job.id, context.attempt)

        renewer = asyncio.create_task(self._renew_loop(job.lock_key, holder))
        error: Optional[str] = None
        result = None
        try:
            result = await asyncio.wait_for(self.generator(payload, context), timeout=self.call_timeout)
        except asyncio.TimeoutError:
            error = f"AI call timed out after {self.call_timeout}s"
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
        finally:
            renewer.cancel()
            try:
                await renewer
            except asyncio.CancelledError:
                pass

        if error is not None:
            logger.warning("Job %s attempt %s failed: %s", job.id, context.attempt, error)
            if await self._cancel_requested(job.id):
                return await self._cancel(delivery, job, run_id)
            return await self._fail(delivery, job, run_id, error)

        if await self._cancel_requested(job.id):
            return await self._cancel(delivery, job, run_id)

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await complete_job(session, job.id, run_id, result or {}, holder)
        except StaleRunError as e:
            return await self._conflict(delivery, job.id, run_id, str(e))

        logger.info("Job %s completed", job.id)
        await self.queue.ack(delivery)
        return ProcessOutcome.COMPLETED

    async def _fail(
        self,
        delivery: Delivery,
        job: Job,
        run_id: UUID,
        error: str,
        retryable: bool = True,
    ) -> ProcessOutcome:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    updated = await fail_job(
                        session, job.id, run_id, error,
                        retryable=retryable, lock_holder=str(run_id),
                    )
        except StaleRunError as e:
            return await self._conflict(delivery, job.id, run_id, error or str(e))

        if updated.status == JobStatus.CANCELLED:
            logger.info("Job %s cancelled after a failed attempt", job.id)
            await self.queue.ack(delivery)
            return ProcessOutcome.CANCELLED

        if updated.status == JobStatus.FAILED:
            logger.error("Job %s failed permanently after %s attempts: %s", job.id, updated.attempts, error)
            await self.queue.ack(delivery)
            return ProcessOutcome.FAILED

        delay = calculate_delay(
            updated.attempts,
            base_delay_seconds=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay_seconds=settings.RETRY_MAX_DELAY_SECONDS,
        )
        state = await self.queue.retry(delivery, delay, error=error)
        if state == MessageState.DEAD:
            async with self.session_factory() as session:
                async with session.begin():
                    await fail_dead_lettered(session, job.id, f"dead-lettered after {delivery.deliveries} deliveries: {error}")
            return ProcessOutcome.FAILED

        logger.info("Job %s scheduled for retry in %.1fs", job.id, delay)
        return ProcessOutcome.RETRYING

    async def _fail_abandoned(self, job: Job) -> Optional[Job]:
        logger.warning("Job %s is running without a live lock; recording abandoned run %s", job.id, job.run_id)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    return await fail_job(
                        session, job.id, job.run_id,
                        "lease_expired: previous run stopped renewing its lock",
                        reason="lease_expired",
                    )
        except StaleRunError:
            return None

    async def _defer_for_policy(self, delivery: Delivery, job: Job, tag: str) -> ProcessOutcome:
        async with self.session_factory() as session:
            async with session.begin():
                await append_log(
                    session, job.id, JobEvent.DEFERRED, JobStatus.PENDING, JobStatus.PENDING,
                    tag=tag, worker_id=self.worker_id,
                )
        POLICY_DEFERRALS.labels(tag=tag).inc()
        logger.info("Job %s deferred: %s", job.id, tag)
        await self.queue.defer(delivery, settings.POLICY_RETRY_DELAY_SECONDS, reason=tag)
        return ProcessOutcome.DEFERRED

    async def _owns(self, job_id: UUID, run_id: UUID) -> bool:
        async with self.session_factory() as session:
            row = (await session.execute(
                select(Job.status, Job.run_id).where(Job.id == job_id)
            )).one_or_none()
        return row is not None and row.status == JobStatus.RUNNING and row.run_id == run_id

    async def _cancel_requested(self, job_id: UUID) -> bool:
        async with self.session_factory() as session:
            return await is_cancel_requested(session, job_id)

    async def _cancel(self, delivery: Delivery, job: Job, run_id: UUID) -> ProcessOutcome:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await finalize_cancel(session, job.id, run_id, str(run_id))
        except StaleRunError as e:
            return await self._conflict(delivery, job.id, run_id, str(e))
        logger.info("Job %s cancelled at a safe point", job.id)
        await self.queue.ack(delivery)
        return ProcessOutcome.CANCELLED

    async def _conflict(self, delivery: Delivery, job_id: UUID, run_id: UUID, error: str) -> ProcessOutcome:
        logger.warning("Run %s lost job %s to a stale lock steal", run_id, job_id)
        async with self.session_factory() as session:
            async with session.begin():
                await record_stale_conflict(session, job_id, run_id, self.worker_id, error)
        await self.queue.ack(delivery)
        return ProcessOutcome.CONFLICT

    async def _renew_loop(self, key: str, holder: str):
        interval = max(self.lock_lease_seconds / 3, 0.1)
        while True:
            await asyncio.sleep(interval)
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        renewed = await renew_lock(session, key, holder, self.lock_lease_seconds)
            except Exception as e:
                logger.warning("Lock renewal for %s failed: %s", key, e)
                continue
            if not renewed:
                # Someone reclaimed it; our final write will be rejected by the run_id guard.
                logger.warning("Lost lock %s while running", key)
                return
