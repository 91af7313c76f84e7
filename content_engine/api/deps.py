from typing import Annotated, AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from content_engine.db.session import AsyncSessionLocal
from content_engine.queue.work_queue import WorkQueue
from content_engine.services.outbox import OutboxProcessor
from content_engine.services.producer import JobProducer
from content_engine.services.status import StatusAggregator


def get_session_factory():
    return AsyncSessionLocal


async def get_db_session(session_factory=Depends(get_session_factory)) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]


def get_queue() -> WorkQueue:
    return WorkQueue()


def get_producer(
    queue: Annotated[WorkQueue, Depends(get_queue)],
    session_factory=Depends(get_session_factory),
) -> JobProducer:
    return JobProducer(
        session_factory=session_factory,
        outbox=OutboxProcessor(queue=queue, session_factory=session_factory),
    )


def get_status_aggregator(
    queue: Annotated[WorkQueue, Depends(get_queue)],
    session_factory=Depends(get_session_factory),
) -> StatusAggregator:
    return StatusAggregator(queue=queue, session_factory=session_factory)


Queue = Annotated[WorkQueue, Depends(get_queue)]
Producer = Annotated[JobProducer, Depends(get_producer)]
Aggregator = Annotated[StatusAggregator, Depends(get_status_aggregator)]
