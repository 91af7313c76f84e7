import logging
from datetime import timedelta
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import select, update, func, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from content_engine.domain.clock import utc_now
from content_engine.domain.models import Delivery, QueueEnvelope
from content_engine.domain.states import MessageState
from content_engine.queue.models import QueueMessage
from content_engine.settings import settings

logger = logging.getLogger(__name__)


class WorkQueue:
    """
    Durable at-least-once queue on a SQL table.

    A message is READY until a consumer receives it, INFLIGHT while the consumer
    holds it (until `visible_until`), then DONE on ack or DEAD once it has been
    delivered `max_deliveries` times without success. Every consumer-side
    mutation is guarded by the receipt token handed out on receive, so a
    consumer whose visibility window lapsed cannot ack someone else's delivery.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        max_deliveries: Optional[int] = None,
        visibility_seconds: Optional[int] = None,
    ):
        if session_factory is None:
            from content_engine.db.session import QueueSessionLocal
            session_factory = QueueSessionLocal
        self.session_factory = session_factory
        self.max_deliveries = max_deliveries or settings.QUEUE_MAX_DELIVERIES
        self.visibility_seconds = visibility_seconds or settings.QUEUE_VISIBILITY_TIMEOUT_SECONDS

    async def push(self, envelope: QueueEnvelope, delay_seconds: float = 0) -> bool:
        """
        Adds a message for `envelope.job_id`.
        Returns False when a message for that job already exists (idempotent).
        """
        now = utc_now()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    existing = await session.scalar(
                        select(QueueMessage.id).where(QueueMessage.job_id == envelope.job_id)
                    )
                    if existing is not None:
                        return False
                    session.add(QueueMessage(
                        job_id=envelope.job_id,
                        job_type=str(envelope.job_type),
                        entity_id=envelope.entity_id,
                        payload=envelope.payload,
                        state=MessageState.READY,
                        deliveries=0,
                        available_at=now + timedelta(seconds=delay_seconds),
                        created_at=now,
                        updated_at=now,
                    ))
        except IntegrityError:
            # Concurrent push for the same job won the unique constraint
            return False
        return True

    async def receive(self, consumer: str, visibility_seconds: Optional[int] = None) -> Optional[Delivery]:
        now = utc_now()
        visible_until = now + timedelta(seconds=visibility_seconds or self.visibility_seconds)
        receipt = uuid4()

        async with self.session_factory() as session:
            async with session.begin():
                stmt = select(QueueMessage).where(
                    QueueMessage.state == MessageState.READY,
                    QueueMessage.available_at <= now,
                ).order_by(
                    QueueMessage.available_at.asc(),
                    QueueMessage.id.asc(),
                ).with_for_update(skip_locked=True).limit(1)
                msg = (await session.execute(stmt)).scalar_one_or_none()
                if msg is None:
                    return None

                # Guarded claim: a concurrent receiver on a backend without
                # SKIP LOCKED loses here instead of double-claiming.
                res = await session.execute(
                    update(QueueMessage).where(
                        QueueMessage.id == msg.id,
                        QueueMessage.state == MessageState.READY,
                    ).values(
                        state=MessageState.INFLIGHT,
                        receipt=receipt,
                        consumer=consumer,
                        deliveries=QueueMessage.deliveries + 1,
                        visible_until=visible_until,
                        updated_at=now,
                    ).execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    return None

                return Delivery(
                    message_id=msg.id,
                    receipt=receipt,
                    envelope=QueueEnvelope.from_dict({
                        "job_id": msg.job_id,
                        "job_type": msg.job_type,
                        "entity_id": msg.entity_id,
                        "payload": msg.payload,
                    }),
                    deliveries=msg.deliveries + 1,
                    visible_until=visible_until,
                )

    async def ack(self, delivery: Delivery) -> bool:
        return await self._settle(delivery, state=MessageState.DONE)

    async def retry(self, delivery: Delivery, delay_seconds: float, error: Optional[str] = None) -> Optional[MessageState]:
        """
        Puts the message back for redelivery after `delay_seconds`.
        Counts toward dead-lettering; returns the resulting state
        (None if the receipt is no longer valid).
        """
        if delivery.deliveries >= self.max_deliveries:
            ok = await self.dead_letter(delivery, error or "max deliveries exceeded")
            return MessageState.DEAD if ok else None
        ok = await self._settle(
            delivery,
            state=MessageState.READY,
            available_at=utc_now() + timedelta(seconds=delay_seconds),
            last_error=error,
        )
        return MessageState.READY if ok else None

    async def defer(self, delivery: Delivery, delay_seconds: float, reason: Optional[str] = None) -> bool:
        """Like retry, but the delivery does not count toward dead-lettering."""
        return await self._settle(
            delivery,
            state=MessageState.READY,
            available_at=utc_now() + timedelta(seconds=delay_seconds),
            last_error=reason,
            deliveries=QueueMessage.deliveries - 1,
        )

    async def dead_letter(self, delivery: Delivery, reason: str) -> bool:
        logger.warning("Dead-lettering message %s for job %s: %s", delivery.message_id, delivery.envelope.job_id, reason)
        return await self._settle(delivery, state=MessageState.DEAD, last_error=reason)

    async def _settle(self, delivery: Delivery, state: MessageState, **values) -> bool:
        now = utc_now()
        async with self.session_factory() as session:
            async with session.begin():
                res = await session.execute(
                    update(QueueMessage).where(
                        QueueMessage.id == delivery.message_id,
                        QueueMessage.receipt == delivery.receipt,
                        QueueMessage.state == MessageState.INFLIGHT,
                    ).values(
                        state=state,
                        receipt=None,
                        visible_until=None,
                        updated_at=now,
                        **values,
                    ).execution_options(synchronize_session=False)
                )
        if res.rowcount != 1:
            logger.info("Receipt for message %s is no longer valid (visibility lapsed?)", delivery.message_id)
            return False
        return True

    async def requeue_expired(self, limit: int = 100) -> tuple[int, list[UUID]]:
        """
        Returns inflight messages whose visibility window lapsed (consumer
        crash) to READY, or dead-letters them once out of deliveries.
        Returns (requeued_count, dead_lettered_job_ids).
        """
        now = utc_now()
        requeued = 0
        dead: list[UUID] = []

        async with self.session_factory() as session:
            async with session.begin():
                stmt = select(QueueMessage).where(
                    QueueMessage.state == MessageState.INFLIGHT,
                    QueueMessage.visible_until < now,
                ).limit(limit).with_for_update(skip_locked=True)
                expired = (await session.execute(stmt)).scalars().all()

                for msg in expired:
                    msg.receipt = None
                    msg.visible_until = None
                    msg.updated_at = now
                    if msg.deliveries >= self.max_deliveries:
                        msg.state = MessageState.DEAD
                        msg.last_error = "visibility expired; max deliveries exceeded"
                        dead.append(msg.job_id)
                    else:
                        # Crashed consumer; make it visible again right away
                        msg.state = MessageState.READY
                        msg.available_at = now
                        requeued += 1

        if requeued or dead:
            logger.info("Queue reaper: requeued=%s dead_lettered=%s", requeued, len(dead))
        return requeued, dead

    async def counts(self) -> dict[str, int]:
        now = utc_now()
        out = {"waiting": 0, "delayed": 0, "active": 0, "completed": 0, "dead": 0}
        due = (QueueMessage.available_at <= now).label("due")
        async with self.session_factory() as session:
            rows = (await session.execute(
                select(QueueMessage.state, due, func.count(QueueMessage.id))
                .group_by(QueueMessage.state, "due")
            )).all()

        for state, is_due, count in rows:
            if state == MessageState.READY:
                out["waiting" if is_due else "delayed"] += count
            elif state == MessageState.INFLIGHT:
                out["active"] += count
            elif state == MessageState.DONE:
                out["completed"] += count
            elif state == MessageState.DEAD:
                out["dead"] += count
        return out

    async def get(self, job_id: UUID) -> Optional[QueueMessage]:
        async with self.session_factory() as session:
            return await session.scalar(select(QueueMessage).where(QueueMessage.job_id == job_id))

    async def ping(self) -> None:
        async with self.session_factory() as session:
            await session.execute(text("SELECT 1"))
