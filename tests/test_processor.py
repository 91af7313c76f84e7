import asyncio
from datetime import timedelta
from uuid import uuid4

from sqlalchemy import update

from content_engine.commands.cancel_job import cancel_job
from content_engine.commands.complete_job import complete_job
from content_engine.commands.fail_job import fail_job
from content_engine.commands.start_job import claim_job
from content_engine.db.models import Job, JobLock
from content_engine.domain.clock import utc_now, as_utc
from content_engine.domain.models import ProcessOutcome
from content_engine.domain.states import JobStatus, MessageState
from content_engine.services.system_settings import set_setting
from content_engine.utils.locking import acquire_lock

from conftest import FakeGenerator, TOPIC_ID, events, notes_payload

CONTENT = {"title": "Fractions", "sections": ["What is a fraction?"]}


async def put_setting(session_factory, key, value):
    async with session_factory() as session:
        await set_setting(session, key, value)
        await session.commit()


def assert_audit_chain(logs):
    """Transitions chain up and timestamps strictly increase."""
    stamps = [as_utc(log.created_at) for log in logs]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)

    current = None
    for log in logs:
        if log.prev_status is not None:
            assert log.prev_status == current, f"{log.event}: {log.prev_status} != {current}"
        current = log.new_status


async def test_notes_happy_path(producer, make_processor, deliver, queue, load_job, load_logs):
    result = await producer.enqueue(TOPIC_ID, "notes", notes_payload())
    generator = FakeGenerator(CONTENT)

    outcome = await deliver(make_processor(generator))

    assert outcome == ProcessOutcome.COMPLETED
    job = await load_job(result.job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.result == CONTENT
    assert job.attempts == 0
    assert job.last_error is None
    assert job.finished_at is not None

    logs = await load_logs(job.id)
    assert events(logs) == ["CREATED", "ENQUEUED", "STARTED", "COMPLETED"]
    assert_audit_chain(logs)

    payload, context = generator.calls[0]
    assert payload.language == "en"
    assert context.entity_id == TOPIC_ID
    assert context.attempt == 1

    assert (await queue.get(job.id)).state == MessageState.DONE


async def test_three_failures_exhaust_attempts(producer, make_processor, deliver, make_due, load_job, load_logs, queue):
    result = await producer.enqueue(TOPIC_ID, "notes", notes_payload())
    processor = make_processor(FakeGenerator(RuntimeError("model overloaded")))

    outcomes = []
    for _ in range(3):
        outcomes.append(await deliver(processor))
        await make_due()

    assert outcomes == [ProcessOutcome.RETRYING, ProcessOutcome.RETRYING, ProcessOutcome.FAILED]

    job = await load_job(result.job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 3
    assert "model overloaded" in job.last_error

    logs = await load_logs(job.id)
    names = events(logs)
    assert names.count("STARTED") == 3
    assert names.count("RETRY") == 2
    assert names.count("FAILED") == 1
    assert names[-1] == "FAILED"
    assert_audit_chain(logs)

    assert (await queue.get(job.id)).state == MessageState.DONE
    assert await queue.receive("anyone") is None


async def test_retry_is_delayed_by_backoff(producer, make_processor, deliver, queue):
    result = await producer.enqueue(TOPIC_ID, "notes", notes_payload())

    assert await deliver(make_processor(FakeGenerator(RuntimeError("flaky")))) == ProcessOutcome.RETRYING

    message = await queue.get(result.job_id)
    assert message.state == MessageState.READY
    assert as_utc(message.available_at) > utc_now() + timedelta(seconds=5)
    assert await queue.receive("c") is None


async def test_pause_defers_without_consuming_attempts(producer, make_processor, deliver, make_due, session_factory, load_job, load_logs, queue):
    result = await producer.enqueue(TOPIC_ID, "notes", notes_payload())
    await put_setting(session_factory, "AI_PAUSED", "true")
    generator = FakeGenerator(CONTENT)
    processor = make_processor(generator)

    assert await deliver(processor) == ProcessOutcome.DEFERRED

    job = await load_job(result.job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert generator.calls == []

    logs = await load_logs(job.id)
    assert logs[-1].event == "DEFERRED"
    assert logs[-1].meta["tag"] == "AI_PAUSED"
    assert logs[-1].prev_status == logs[-1].new_status == JobStatus.PENDING

    message = await queue.get(job.id)
    assert message.state == MessageState.READY
    assert message.deliveries == 0
    assert as_utc(message.available_at) > utc_now()

    # Resume and the next delivery runs
    await put_setting(session_factory, "AI_PAUSED", "off")
    await make_due()
    assert await deliver(processor) == ProcessOutcome.COMPLETED


async def test_category_switch_only_blocks_its_category(producer, make_processor, deliver, session_factory, load_logs):
    notes = await producer.enqueue(TOPIC_ID, "notes", notes_payload())
    await put_setting(session_factory, "HYDRATION_DISABLED_NOTES", "1")
    processor = make_processor(FakeGenerator(CONTENT))

    assert await deliver(processor) == ProcessOutcome.DEFERRED
    assert (await load_logs(notes.job_id))[-1].meta["tag"] == "NOTES_DISABLED"

    await producer.enqueue(TOPIC_ID, "questions", {"language": "en"})
    assert await deliver(processor) == ProcessOutcome.COMPLETED


async def test_lock_contention_defers_and_leaves_job_untouched(producer, make_processor, deliver, session_factory, load_job, load_logs, queue):
    result = await producer.enqueue(TOPIC_ID, "notes", notes_payload())
    async with session_factory() as session:
        async with session.begin():
            assert await acquire_lock(session, f"notes:{TOPIC_ID}", "someone-else", 60)

    assert await deliver(make_processor(FakeGenerator(CONTENT))) == ProcessOutcome.CONTENDED

    job = await load_job(result.job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert "STARTED" not in events(await load_logs(job.id))
    assert (await queue.get(job.id)).deliveries == 0


async def test_duplicate_delivery_of_live_run_is_deferred(producer, make_processor, deliver, make_due, session_factory, load_job, queue):
    result = await producer.enqueue(TOPIC_ID, "notes", notes_payload())
    other_run = uuid4()
    async with session_factory() as session:
        async with session.begin():
            assert await acquire_lock(session, f"notes:{TOPIC_ID}", str(other_run), 60)
            assert await claim_job(session, result.job_id, other_run, "wk-other")

    generator = FakeGenerator(CONTENT)
    processor = make_processor(generator)
    assert await deliver(processor) == ProcessOutcome.CONTENDED

    job = await load_job(result.job_id)
    assert job.status == JobStatus.RUNNING
    assert job.run_id == other_run
    assert generator.calls == []

    # The message stays with the job until the live run settles it
    message = await queue.get(job.id)
    assert message.state == MessageState.READY
    assert message.deliveries == 0

    async with session_factory() as session:
        async with session.begin():
            await complete_job(session, result.job_id, other_run, CONTENT, str(other_run))
    await make_due()
    assert await deliver(processor) == ProcessOutcome.SKIPPED
    assert (await queue.get(job.id)).state == MessageState.DONE
    assert generator.calls == []


async def test_abandoned_run_counts_as_failed_attempt(producer, make_processor, deliver, session_factory, load_job, load_logs):
    result = await producer.enqueue(TOPIC_ID, "notes", notes_payload())
    # A worker claimed the job and died; its lock is gone
    async with session_factory() as session:
        async with session.begin():
            assert await claim_job(session, result.job_id, uuid4(), "wk-dead")

    assert await deliver(make_processor(FakeGenerator(CONTENT))) == ProcessOutcome.COMPLETED

    job = await load_job(result.job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 1

    logs = await load_logs(job.id)
    assert events(logs) == ["CREATED", "ENQUEUED", "STARTED", "RETRY", "STARTED", "COMPLETED"]
    assert logs[3].meta["reason"] == "lease_expired"
    assert_audit_chain(logs)


async def test_stale_lock_steal_is_logged_for_the_loser(producer, make_processor, deliver, session_factory, load_job, load_logs, queue):
    result = await producer.enqueue(TOPIC_ID, "notes", notes_payload())
    thief_run = uuid4()

    async def slow_and_robbed(payload, context):
        # While we "think", our lease lapses and another worker takes the job over
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(JobLock).values(expires_at=utc_now() - timedelta(seconds=1))
                )
                assert await acquire_lock(session, f"notes:{TOPIC_ID}", str(thief_run), 60)
                await session.execute(
                    update(Job).where(Job.id == context.job_id).values(run_id=thief_run, worker_id="wk-thief")
                )
        return CONTENT

    assert await deliver(make_processor(FakeGenerator(slow_and_robbed))) == ProcessOutcome.CONFLICT

    job = await load_job(result.job_id)
    assert job.status == JobStatus.RUNNING
    assert job.run_id == thief_run
    assert job.result is None

    conflict = (await load_logs(job.id))[-1]
    assert conflict.event == "FAILED"
    assert conflict.meta["conflict"] == "stale_lock_steal"
    assert conflict.prev_status == conflict.new_status == JobStatus.RUNNING
    assert (await queue.get(job.id)).state == MessageState.DONE


async def test_pending_job_cancelled_before_delivery_is_skipped(producer, make_processor, deliver, session_factory, load_job, load_logs):
    result = await producer.enqueue(TOPIC_ID, "notes", notes_payload())
    async with session_factory() as session:
        job = await cancel_job(session, result.job_id)
        await session.commit()
    assert job.status == JobStatus.CANCELLED

    generator = FakeGenerator(CONTENT)
    assert await deliver(make_processor(generator)) == ProcessOutcome.SKIPPED
    assert generator.calls == []
    assert events(await load_logs(result.job_id))[-1] == "CANCELLED"


async def test_running_job_stops_at_safe_point_after_cancel(producer, make_processor, deliver, session_factory, load_job, load_logs):
    result = await producer.enqueue(TOPIC_ID, "notes", notes_payload())

    async def cancelled_mid_call(payload, context):
        async with session_factory() as session:
            job = await cancel_job(session, context.job_id)
            await session.commit()
        assert job.status == JobStatus.RUNNING
        assert job.cancel_requested
        return CONTENT

    assert await deliver(make_processor(FakeGenerator(cancelled_mid_call))) == ProcessOutcome.CANCELLED

    job = await load_job(result.job_id)
    assert job.status == JobStatus.CANCELLED
    assert job.result is None
    logs = await load_logs(job.id)
    assert events(logs)[-3:] == ["STARTED", "CANCEL_REQUESTED", "CANCELLED"]
    assert_audit_chain(logs)

    # The target lock was released with the final transition
    async with session_factory() as session:
        assert await session.get(JobLock, f"notes:{TOPIC_ID}") is None


async def test_cancel_during_failing_call_is_honoured(producer, make_processor, deliver, make_due, session_factory, load_job, load_logs, queue):
    result = await producer.enqueue(TOPIC_ID, "notes", notes_payload())

    async def cancelled_then_fails(payload, context):
        async with session_factory() as session:
            await cancel_job(session, context.job_id)
            await session.commit()
        raise RuntimeError("model overloaded")

    generator = FakeGenerator(cancelled_then_fails)
    assert await deliver(make_processor(generator)) == ProcessOutcome.CANCELLED

    job = await load_job(result.job_id)
    assert job.status == JobStatus.CANCELLED
    assert job.attempts == 0
    logs = await load_logs(job.id)
    assert events(logs)[-3:] == ["STARTED", "CANCEL_REQUESTED", "CANCELLED"]
    assert_audit_chain(logs)

    assert (await queue.get(job.id)).state == MessageState.DONE
    await make_due()
    assert await queue.receive("anyone") is None
    assert len(generator.calls) == 1
    async with session_factory() as session:
        assert await session.get(JobLock, f"notes:{TOPIC_ID}") is None


async def test_failed_attempt_of_flagged_job_is_not_retried(producer, session_factory, load_job, load_logs):
    result = await producer.enqueue(TOPIC_ID, "notes", notes_payload())
    run_id = uuid4()
    async with session_factory() as session:
        async with session.begin():
            assert await acquire_lock(session, f"notes:{TOPIC_ID}", str(run_id), 60)
            assert await claim_job(session, result.job_id, run_id, "wk-test")
    async with session_factory() as session:
        await cancel_job(session, result.job_id)
        await session.commit()

    async with session_factory() as session:
        async with session.begin():
            updated = await fail_job(session, result.job_id, run_id, "boom", lock_holder=str(run_id))

    assert updated.status == JobStatus.CANCELLED
    job = await load_job(result.job_id)
    assert job.status == JobStatus.CANCELLED
    assert job.attempts == 1
    assert job.last_error == "boom"
    assert job.finished_at is not None
    logs = await load_logs(job.id)
    assert events(logs)[-1] == "CANCELLED"
    assert_audit_chain(logs)


async def test_abandoned_run_with_cancel_request_ends_cancelled(producer, make_processor, deliver, session_factory, load_job, queue):
    result = await producer.enqueue(TOPIC_ID, "notes", notes_payload())
    async with session_factory() as session:
        async with session.begin():
            assert await claim_job(session, result.job_id, uuid4(), "wk-dead")
    async with session_factory() as session:
        await cancel_job(session, result.job_id)
        await session.commit()

    generator = FakeGenerator(CONTENT)
    assert await deliver(make_processor(generator)) == ProcessOutcome.CANCELLED

    assert (await load_job(result.job_id)).status == JobStatus.CANCELLED
    assert generator.calls == []
    assert (await queue.get(result.job_id)).state == MessageState.DONE


async def test_crash_after_claim_is_recorded_against_the_run(producer, make_processor, deliver, make_due, session_factory, load_job, load_logs, queue):
    result = await producer.enqueue(TOPIC_ID, "notes", notes_payload())

    # A set cannot be stored as JSON, so the completing write blows up
    assert await deliver(make_processor(FakeGenerator({"sections": {1, 2}}))) == ProcessOutcome.RETRYING

    job = await load_job(result.job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1
    assert job.last_error
    logs = await load_logs(job.id)
    assert events(logs) == ["CREATED", "ENQUEUED", "STARTED", "RETRY"]
    assert_audit_chain(logs)

    async with session_factory() as session:
        assert await session.get(JobLock, f"notes:{TOPIC_ID}") is None
    assert (await queue.get(job.id)).state == MessageState.READY

    await make_due()
    assert await deliver(make_processor(FakeGenerator(CONTENT))) == ProcessOutcome.COMPLETED
    assert (await load_job(result.job_id)).status == JobStatus.COMPLETED


async def test_undecodable_payload_is_terminal(producer, make_processor, deliver, session_factory, load_job):
    result = await producer.enqueue(TOPIC_ID, "questions", {"language": "en"})
    async with session_factory() as session:
        async with session.begin():
            await session.execute(update(Job).where(Job.id == result.job_id).values(payload={"language": "en", "count": "many"}))

    assert await deliver(make_processor(FakeGenerator(CONTENT))) == ProcessOutcome.FAILED

    job = await load_job(result.job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert "Invalid questions payload" in job.last_error


async def test_ai_timeout_counts_as_failed_attempt(producer, make_processor, deliver, load_job):
    result = await producer.enqueue(TOPIC_ID, "notes", notes_payload())

    async def hangs(payload, context):
        await asyncio.sleep(10)
        return CONTENT

    processor = make_processor(FakeGenerator(hangs), call_timeout=0.05)
    assert await deliver(processor) == ProcessOutcome.RETRYING

    job = await load_job(result.job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1
    assert "timed out" in job.last_error


async def test_same_target_jobs_never_run_concurrently(producer, make_processor, deliver, session_factory, load_job):
    first = await producer.enqueue(TOPIC_ID, "notes", notes_payload())
    seen_running = []

    async def inspect(payload, context):
        async with session_factory() as session:
            job = await session.get(Job, context.job_id)
            seen_running.append(job.status)
        return CONTENT

    assert await deliver(make_processor(FakeGenerator(inspect))) == ProcessOutcome.COMPLETED

    # A second job for the target is only possible once the first is terminal
    second = await producer.enqueue(TOPIC_ID, "notes", notes_payload())
    assert second.job_id != first.job_id
    assert await deliver(make_processor(FakeGenerator(inspect))) == ProcessOutcome.COMPLETED
    assert seen_running == [JobStatus.RUNNING, JobStatus.RUNNING]
