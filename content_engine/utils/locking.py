"""
Lease-based mutual exclusion on the `job_locks` table.

A lock is a row keyed by name with a holder and an expiry. Acquisition is one
INSERT .. ON CONFLICT DO UPDATE whose update branch only fires when the
current lease has expired, so two contenders can never both succeed. An
expired lease taken over from another holder is a "stale lock steal": the
previous holder may still be running and will lose its run_id-guarded writes.
"""
import logging
from datetime import timedelta

from sqlalchemy import select, delete, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from content_engine.db.models import JobLock
from content_engine.domain.clock import utc_now, as_utc
from content_engine.domain.errors import ConfigurationError
from content_engine.api.v1.metrics import STALE_LOCK_STEALS

logger = logging.getLogger(__name__)

# Scheduler leadership rides on the same lease table.
LEADER_LOCK_KEY = "scheduler-leader"


def _insert_for(session: AsyncSession):
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise ConfigurationError(f"Lease locks need PostgreSQL or SQLite, not {dialect}")


async def acquire_lock(session: AsyncSession, key: str, holder: str, lease_seconds: int) -> bool:
    """
    Attempts to take (or re-take) the lease on `key` for `holder`.
    Returns True if acquired. Re-acquiring a live lease you already hold succeeds.
    """
    now = utc_now()
    expires_at = now + timedelta(seconds=lease_seconds)

    # Who held it before? Only needed to tell a steal from a fresh acquire.
    previous = (await session.execute(
        select(JobLock.holder, JobLock.expires_at).where(JobLock.key == key)
    )).one_or_none()

    insert = _insert_for(session)
    stmt = insert(JobLock).values(key=key, holder=holder, acquired_at=now, expires_at=expires_at)
    stmt = stmt.on_conflict_do_update(
        index_elements=[JobLock.key],
        set_={"holder": holder, "acquired_at": now, "expires_at": expires_at},
        where=(JobLock.expires_at < now) | (JobLock.holder == holder),
    )
    result = await session.execute(stmt)
    acquired = result.rowcount == 1

    if acquired and previous is not None:
        prev_holder, prev_expires = previous
        if prev_holder != holder and as_utc(prev_expires) < now:
            STALE_LOCK_STEALS.inc()
            logger.warning(
                "Stale lock steal on %s: %s took over from %s (expired %s)",
                key, holder, prev_holder, as_utc(prev_expires).isoformat(),
            )
    return acquired


async def renew_lock(session: AsyncSession, key: str, holder: str, lease_seconds: int) -> bool:
    """Extends a live lease. False if the lease was lost or already expired."""
    now = utc_now()
    result = await session.execute(
        update(JobLock)
        .where(JobLock.key == key, JobLock.holder == holder, JobLock.expires_at >= now)
        .values(expires_at=now + timedelta(seconds=lease_seconds))
    )
    return result.rowcount == 1


async def release_lock(session: AsyncSession, key: str, holder: str) -> bool:
    # Deleting someone else's lock would break their exclusion; only the holder releases.
    result = await session.execute(
        delete(JobLock).where(JobLock.key == key, JobLock.holder == holder)
    )
    return result.rowcount == 1


async def is_lock_held(session: AsyncSession, key: str) -> bool:
    expires_at = await session.scalar(select(JobLock.expires_at).where(JobLock.key == key))
    return expires_at is not None and as_utc(expires_at) >= utc_now()


async def purge_expired_locks(session: AsyncSession) -> int:
    result = await session.execute(delete(JobLock).where(JobLock.expires_at < utc_now()))
    return result.rowcount or 0
