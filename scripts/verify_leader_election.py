#!/usr/bin/env python3
"""
Starts three scheduler instances against the configured database, kills them
one at a time and reports which instance holds the `scheduler-leader` lease.

A healthy run shows exactly one holder at any moment and a new holder shortly
after the current leader is killed.
"""
import asyncio
import logging
import multiprocessing
import time

from content_engine.settings import settings

logging.basicConfig(level=logging.INFO, format='[%(process)d] %(message)s')
logger = logging.getLogger("verifier")

INTERVAL = 1


def run_scheduler():
    from content_engine.scheduler.service import SchedulerService

    async def _run():
        service = SchedulerService(interval=INTERVAL)
        await service.start()
        while True:
            await asyncio.sleep(INTERVAL)

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        pass


async def current_leader():
    from content_engine.db.models import JobLock
    from content_engine.db.session import make_engine, make_session_factory
    from content_engine.domain.clock import utc_now, as_utc
    from content_engine.utils.locking import LEADER_LOCK_KEY

    # Fresh engine per poll; pooled connections cannot cross asyncio.run() loops
    engine = make_engine(settings.SQLALCHEMY_DATABASE_URI)
    try:
        async with make_session_factory(engine)() as session:
            lock = await session.get(JobLock, LEADER_LOCK_KEY)
    finally:
        await engine.dispose()
    if lock is None or as_utc(lock.expires_at) < utc_now():
        return None
    return lock.holder


def watch(seconds: float):
    deadline = time.time() + seconds
    while time.time() < deadline:
        logger.info("leader: %s", asyncio.run(current_leader()))
        time.sleep(1)


def main():
    logger.info("--- Verifying leader election on %s ---", settings.SQLALCHEMY_DATABASE_URI.split("@")[-1])

    processes = [multiprocessing.Process(target=run_scheduler) for _ in range(3)]
    for p in processes:
        p.start()
        logger.info("Started scheduler PID %s", p.pid)

    watch(5)

    # The lease lasts 3 intervals + 1s, so failover happens within ~5s of a kill
    for p in processes:
        logger.info("Killing scheduler PID %s", p.pid)
        p.terminate()
        p.join()
        watch(6)

    logger.info("--- Done: expect one holder at a time, changing after each kill, then none ---")


if __name__ == "__main__":
    main()
