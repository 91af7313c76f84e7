from prometheus_client import REGISTRY
from sqlalchemy import select, func, update

from content_engine.commands.cancel_job import cancel_job
from content_engine.db.models import HydrationCascade, Job, SyllabusNode
from content_engine.domain.models import ProcessOutcome
from content_engine.domain.states import CascadeStatus, JobStatus, JobType
from content_engine.services.reconciler import RECONCILER_LOCK_KEY, HydrationReconciler
from content_engine.utils.locking import acquire_lock

from conftest import CHAPTER_ID, SUBJECT_ID, TOPIC_ID, OTHER_TOPIC_ID, FakeGenerator, notes_payload

OUTLINE = {
    "chapters": [
        {"name": "Numbers", "id": CHAPTER_ID, "topics": [{"name": "Fractions", "id": TOPIC_ID}]},
        {"name": "Measures", "topics": [{"name": "Length"}]},
    ]
}
NEW_TOPIC_ID = f"{SUBJECT_ID}--measures--length"


async def load_cascade(session_factory, root_id) -> HydrationCascade:
    async with session_factory() as session:
        return await session.get(HydrationCascade, root_id)


async def children(session_factory, root_id, stage) -> list[Job]:
    async with session_factory() as session:
        return list((await session.execute(
            select(Job).where(Job.root_job_id == root_id, Job.job_type == stage).order_by(Job.entity_id)
        )).scalars().all())


async def settle(session_factory, root_id, stage, status=JobStatus.COMPLETED, entity_id=None):
    """Moves the cascade's `stage` jobs straight to `status`."""
    stmt = update(Job).where(Job.root_job_id == root_id, Job.job_type == stage)
    if entity_id is not None:
        stmt = stmt.where(Job.entity_id == entity_id)
    async with session_factory() as session:
        async with session.begin():
            await session.execute(stmt.values(status=status))


async def set_status(session_factory, job_id, status):
    async with session_factory() as session:
        async with session.begin():
            await session.execute(update(Job).where(Job.id == job_id).values(status=status))


def finished_count(status) -> float:
    return REGISTRY.get_sample_value("content_cascades_finished_total", {"status": status}) or 0


async def test_cascade_runs_stages_in_order(producer, session_factory, make_processor, deliver):
    started = await producer.hydrate_all(SUBJECT_ID, "en", "hard")
    root_id = started.job_id
    assert started.created is True
    reconciler = HydrationReconciler(producer=producer, session_factory=session_factory)

    # Nothing to fan out until the syllabus exists
    assert await reconciler.reconcile() == 1
    cascade = await load_cascade(session_factory, root_id)
    assert cascade.status == CascadeStatus.RUNNING
    assert cascade.stage == "syllabus"
    assert await children(session_factory, root_id, JobType.NOTES) == []

    assert await deliver(make_processor(FakeGenerator(OUTLINE))) == ProcessOutcome.COMPLETED

    await reconciler.reconcile()
    notes = await children(session_factory, root_id, JobType.NOTES)
    assert [j.entity_id for j in notes] == sorted([OTHER_TOPIC_ID, TOPIC_ID, NEW_TOPIC_ID])
    assert all(j.payload["language"] == "en" for j in notes)
    cascade = await load_cascade(session_factory, root_id)
    assert cascade.stage == "notes"
    assert cascade.progress["topics"] == 3
    assert cascade.progress["chapters"] == 2
    assert cascade.progress["notes"]["pending"] == 3

    # A second pass while notes are still running adds nothing
    await reconciler.reconcile()
    assert len(await children(session_factory, root_id, JobType.NOTES)) == 3
    assert await children(session_factory, root_id, JobType.QUESTIONS) == []

    await settle(session_factory, root_id, JobType.NOTES)
    await reconciler.reconcile()
    questions = await children(session_factory, root_id, JobType.QUESTIONS)
    assert len(questions) == 3
    assert all(j.payload["difficulty"] == "hard" for j in questions)
    assert await children(session_factory, root_id, JobType.TESTS) == []

    await settle(session_factory, root_id, JobType.QUESTIONS)
    await reconciler.reconcile()
    assert len(await children(session_factory, root_id, JobType.TESTS)) == 3
    assert (await load_cascade(session_factory, root_id)).stage == "tests"

    before = finished_count("completed")
    await settle(session_factory, root_id, JobType.TESTS)
    await reconciler.reconcile()

    cascade = await load_cascade(session_factory, root_id)
    assert cascade.status == CascadeStatus.COMPLETED
    assert cascade.stage == "done"
    assert cascade.finished_at is not None
    assert cascade.progress["tests"]["completed"] == 3
    assert finished_count("completed") == before + 1

    # Finished cascades are no longer examined
    assert await reconciler.reconcile() == 0


async def test_completed_syllabus_stores_its_outline(producer, session_factory, make_processor, deliver):
    await producer.hydrate_all(SUBJECT_ID, "en")
    await deliver(make_processor(FakeGenerator(OUTLINE)))

    async with session_factory() as session:
        chapter = await session.get(SyllabusNode, f"{SUBJECT_ID}--measures")
        topic = await session.get(SyllabusNode, NEW_TOPIC_ID)
        nodes = await session.scalar(select(func.count()).select_from(SyllabusNode))
    assert chapter.parent_id == SUBJECT_ID
    assert topic.parent_id == chapter.id
    # Existing chapter and topic were kept rather than duplicated
    assert nodes == 6


async def test_failed_child_fails_the_cascade_after_all_stages(producer, session_factory):
    root_id = (await producer.hydrate_all(SUBJECT_ID, "en")).job_id
    await set_status(session_factory, root_id, JobStatus.COMPLETED)
    reconciler = HydrationReconciler(producer=producer, session_factory=session_factory)

    await reconciler.reconcile()
    await settle(session_factory, root_id, JobType.NOTES)
    await settle(session_factory, root_id, JobType.NOTES, JobStatus.FAILED, entity_id=TOPIC_ID)

    # A failed notes job is terminal, so the next stage still starts for every topic
    await reconciler.reconcile()
    assert len(await children(session_factory, root_id, JobType.QUESTIONS)) == 2

    await settle(session_factory, root_id, JobType.QUESTIONS)
    await reconciler.reconcile()
    await settle(session_factory, root_id, JobType.TESTS)
    await reconciler.reconcile()

    cascade = await load_cascade(session_factory, root_id)
    assert cascade.status == CascadeStatus.FAILED
    assert cascade.progress["notes"]["failed"] == 1
    assert cascade.finished_at is not None


async def test_cancelled_root_cancels_the_cascade(producer, session_factory):
    root_id = (await producer.hydrate_all(SUBJECT_ID, "en")).job_id
    async with session_factory() as session:
        await cancel_job(session, root_id)
        await session.commit()

    reconciler = HydrationReconciler(producer=producer, session_factory=session_factory)
    assert await reconciler.reconcile_one(root_id) == CascadeStatus.CANCELLED

    cascade = await load_cascade(session_factory, root_id)
    assert cascade.status == CascadeStatus.CANCELLED
    assert cascade.stage == "syllabus"
    assert await children(session_factory, root_id, JobType.NOTES) == []


async def test_failed_root_fails_the_cascade(producer, session_factory):
    root_id = (await producer.hydrate_all(SUBJECT_ID, "en")).job_id
    await set_status(session_factory, root_id, JobStatus.FAILED)

    reconciler = HydrationReconciler(producer=producer, session_factory=session_factory)
    assert await reconciler.reconcile_one(root_id) == CascadeStatus.FAILED
    assert (await load_cascade(session_factory, root_id)).status == CascadeStatus.FAILED


async def test_pass_is_skipped_while_another_instance_holds_the_lock(producer, session_factory):
    root_id = (await producer.hydrate_all(SUBJECT_ID, "en")).job_id
    await set_status(session_factory, root_id, JobStatus.COMPLETED)
    async with session_factory() as session:
        async with session.begin():
            assert await acquire_lock(session, RECONCILER_LOCK_KEY, "reconciler-elsewhere", 60)

    reconciler = HydrationReconciler(producer=producer, session_factory=session_factory)
    assert await reconciler.reconcile() == 0
    assert await children(session_factory, root_id, JobType.NOTES) == []


async def test_hydrate_all_is_idempotent_while_running(producer, session_factory):
    first = await producer.hydrate_all(SUBJECT_ID, "en")
    second = await producer.hydrate_all(SUBJECT_ID, "en", "easy")

    assert second.job_id == first.job_id
    assert second.created is False
    async with session_factory() as session:
        cascades = await session.scalar(select(func.count()).select_from(HydrationCascade))
        syllabus_jobs = await session.scalar(
            select(func.count()).select_from(Job).where(Job.job_type == JobType.SYLLABUS)
        )
    assert cascades == 1
    assert syllabus_jobs == 1
    assert (await load_cascade(session_factory, first.job_id)).difficulty == "medium"


async def test_active_job_for_a_topic_is_adopted(producer, session_factory, load_job):
    standalone = await producer.enqueue(TOPIC_ID, "notes", notes_payload())
    root_id = (await producer.hydrate_all(SUBJECT_ID, "en")).job_id
    await set_status(session_factory, root_id, JobStatus.COMPLETED)

    await HydrationReconciler(producer=producer, session_factory=session_factory).reconcile()

    notes = await children(session_factory, root_id, JobType.NOTES)
    assert sorted(j.entity_id for j in notes) == sorted([TOPIC_ID, OTHER_TOPIC_ID])
    assert (await load_job(standalone.job_id)).root_job_id == root_id
    async with session_factory() as session:
        total = await session.scalar(
            select(func.count()).select_from(Job).where(Job.job_type == JobType.NOTES)
        )
    assert total == 2
