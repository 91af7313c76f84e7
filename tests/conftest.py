"""
Shared fixtures: a fresh SQLite file database per test, the work queue on
top of it, a producer and a processor factory.
"""
import os

# Keep the module-level engines off Postgres while tests import the package.
os.environ.setdefault("SQLALCHEMY_DATABASE_URI", "sqlite+aiosqlite:///:memory:")

from datetime import timedelta
from typing import Any, Optional

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import create_async_engine

from content_engine.db.models import Job, JobExecutionLog, SyllabusNode
from content_engine.db.session import init_models, make_session_factory
from content_engine.domain.clock import utc_now
from content_engine.domain.states import EntityType
from content_engine.queue.models import QueueMessage
from content_engine.queue.work_queue import WorkQueue
from content_engine.services.outbox import OutboxProcessor
from content_engine.services.producer import JobProducer
from content_engine.worker.processor import JobProcessor

SUBJECT_ID = "sub-maths"
CHAPTER_ID = "ch-numbers"
TOPIC_ID = "topic-fractions"
OTHER_TOPIC_ID = "topic-decimals"


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'content.db'}")
    await init_models(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture(autouse=True)
async def syllabus(session_factory):
    async with session_factory() as session:
        session.add_all([
            SyllabusNode(id=SUBJECT_ID, entity_type=EntityType.SUBJECT, name="Mathematics"),
            SyllabusNode(id=CHAPTER_ID, entity_type=EntityType.CHAPTER, name="Numbers", parent_id=SUBJECT_ID),
            SyllabusNode(id=TOPIC_ID, entity_type=EntityType.TOPIC, name="Fractions", parent_id=CHAPTER_ID),
            SyllabusNode(id=OTHER_TOPIC_ID, entity_type=EntityType.TOPIC, name="Decimals", parent_id=CHAPTER_ID),
        ])
        await session.commit()


@pytest.fixture
def queue(session_factory):
    return WorkQueue(session_factory=session_factory, max_deliveries=5, visibility_seconds=60)


@pytest.fixture
def producer(session_factory, queue):
    return JobProducer(session_factory=session_factory, outbox=OutboxProcessor(queue=queue, session_factory=session_factory))


class FakeGenerator:
    """Scripted generator: each call pops the next outcome (dict result or exception)."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def __call__(self, payload, context):
        self.calls.append((payload, context))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome(payload, context)
        return outcome


@pytest.fixture
def make_processor(session_factory, queue):
    def _make(generator, worker_id: str = "wk-test", **kwargs) -> JobProcessor:
        kwargs.setdefault("lock_lease_seconds", 60)
        kwargs.setdefault("call_timeout", 5)
        return JobProcessor(worker_id, queue, generator, session_factory=session_factory, **kwargs)
    return _make


@pytest.fixture
def deliver(queue):
    """Receives the next due message and runs it through `processor`."""
    async def _deliver(processor: JobProcessor):
        delivery = await queue.receive("test-consumer")
        assert delivery is not None, "expected a due queue message"
        return await processor.process(delivery)
    return _deliver


@pytest.fixture
def make_due(session_factory):
    """Skips retry/defer delays by making every ready message due now."""
    async def _make_due():
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(QueueMessage)
                    .where(QueueMessage.state == "ready")
                    .values(available_at=utc_now() - timedelta(seconds=1))
                )
    return _make_due


@pytest.fixture
def load_job(session_factory):
    async def _load(job_id) -> Optional[Job]:
        async with session_factory() as session:
            return await session.get(Job, job_id)
    return _load


@pytest.fixture
def load_logs(session_factory):
    async def _load(job_id) -> list[JobExecutionLog]:
        async with session_factory() as session:
            stmt = (
                select(JobExecutionLog)
                .where(JobExecutionLog.job_id == job_id)
                .order_by(JobExecutionLog.created_at.asc(), JobExecutionLog.id.asc())
            )
            return list((await session.execute(stmt)).scalars().all())
    return _load


def events(logs) -> list[str]:
    return [str(log.event) for log in logs]


def notes_payload(**extra: Any) -> dict[str, Any]:
    return {"language": "en", **extra}
