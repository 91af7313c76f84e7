import logging
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from content_engine.commands.audit import append_log
from content_engine.db.models import Job, OutboxMessage, SyllabusNode
from content_engine.domain.clock import utc_now
from content_engine.domain.errors import InvalidJobError, NotFoundError
from content_engine.domain.models import QueueEnvelope
from content_engine.domain.payloads import decode_payload, encode_payload
from content_engine.domain.states import JobEvent, JobStatus, JobType, EntityType, JOB_TARGETS, ACTIVE_STATUSES
from content_engine.settings import settings

logger = logging.getLogger(__name__)


def parse_job_type(value: Any) -> JobType:
    try:
        return JobType(str(value).lower())
    except ValueError:
        raise InvalidJobError(f"Unknown job type {value!r}") from None


async def find_active_job(session: AsyncSession, job_type: JobType, entity_id: str) -> Optional[Job]:
    stmt = select(Job).where(
        Job.job_type == job_type,
        Job.entity_id == entity_id,
        Job.status.in_(ACTIVE_STATUSES),
    )
    return (await session.execute(stmt)).scalars().first()


async def enqueue_job(
    session: AsyncSession,
    entity_id: str,
    job_type: Any,
    payload: Optional[dict[str, Any]] = None,
    max_attempts: Optional[int] = None,
    root_job_id: Optional[UUID] = None,
) -> tuple[Job, Optional[OutboxMessage]]:
    """
    Creates a pending job for (job_type, entity_id) together with its CREATED
    log and the outbox row that carries the queue message. Nothing is committed
    here; the caller owns the transaction.

    If a pending/running job already exists for the target it is returned and
    the outbox row is None. With `root_job_id` the new job belongs to that
    cascade; an existing job that belongs to no cascade is adopted by it.
    """
    job_type = parse_job_type(job_type)

    node = await session.get(SyllabusNode, entity_id)
    if node is None:
        raise NotFoundError("Target", entity_id)

    entity_type = EntityType(node.entity_type)
    if entity_type not in JOB_TARGETS[job_type]:
        raise InvalidJobError(f"{job_type} jobs cannot target a {entity_type}")

    # Validate and normalise up front; a payload the worker could never decode is rejected here.
    normalized = encode_payload(decode_payload(job_type, payload))

    existing = await find_active_job(session, job_type, entity_id)
    if existing:
        if root_job_id and existing.root_job_id is None:
            existing.root_job_id = root_job_id
            await session.flush()
        return existing, None

    now = utc_now()
    job = Job(
        job_type=job_type,
        entity_type=entity_type,
        entity_id=entity_id,
        status=JobStatus.PENDING,
        attempts=0,
        max_attempts=max_attempts or settings.DEFAULT_MAX_ATTEMPTS,
        payload=normalized,
        root_job_id=root_job_id,
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    try:
        await session.flush()
    except IntegrityError:
        # Race condition: another producer created the active job concurrently
        await session.rollback()
        existing = await find_active_job(session, job_type, entity_id)
        if existing is None:
            raise
        logger.info("Enqueue race on %s:%s resolved to existing job %s", job_type, entity_id, existing.id)
        return existing, None

    await append_log(
        session, job.id, JobEvent.CREATED, None, JobStatus.PENDING,
        entity_type=str(entity_type), max_attempts=job.max_attempts,
    )

    envelope = QueueEnvelope(job_id=job.id, job_type=job_type, entity_id=entity_id, payload=normalized)
    outbox = OutboxMessage(job_id=job.id, payload=envelope.to_dict(), created_at=now)
    session.add(outbox)
    await session.flush()
    return job, outbox
