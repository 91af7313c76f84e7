"""
Admin kill-switches stored in the `system_settings` table.

The worker reads them on every attempt, so flipping a switch takes effect for
the next delivery without restarting anything.
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from content_engine.db.models import SystemSetting
from content_engine.domain.clock import utc_now
from content_engine.domain.errors import PolicyBlockedError
from content_engine.domain.states import JobType

AI_PAUSED = "AI_PAUSED"
HYDRATION_DISABLED = "HYDRATION_DISABLED"

TRUTHY = frozenset({"1", "true", "yes", "on"})


def is_truthy(value: Optional[str]) -> bool:
    return value is not None and value.strip().lower() in TRUTHY


def category_key(job_type: JobType) -> str:
    return f"{HYDRATION_DISABLED}_{JobType(job_type).category}"


def policy_block_tag(values: dict[str, str], job_type: JobType) -> Optional[str]:
    """
    Returns the tag of the first active switch that blocks `job_type`, or None.
    The category switch is the most specific and wins.
    """
    if is_truthy(values.get(category_key(job_type))):
        return f"{JobType(job_type).category}_DISABLED"
    if is_truthy(values.get(AI_PAUSED)):
        return AI_PAUSED
    if is_truthy(values.get(HYDRATION_DISABLED)):
        return HYDRATION_DISABLED
    return None


async def get_setting(session: AsyncSession, key: str) -> Optional[str]:
    return await session.scalar(select(SystemSetting.value).where(SystemSetting.key == key))


async def set_setting(session: AsyncSession, key: str, value: str) -> SystemSetting:
    row = await session.get(SystemSetting, key)
    if row is None:
        row = SystemSetting(key=key, value=value, updated_at=utc_now())
        session.add(row)
    else:
        row.value = value
        row.updated_at = utc_now()
    await session.flush()
    return row


async def list_settings(session: AsyncSession) -> dict[str, str]:
    rows = (await session.execute(select(SystemSetting.key, SystemSetting.value))).all()
    return {key: value for key, value in rows}


class SettingsReader:
    """Reads the switches fresh from the store on each call."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        if session_factory is None:
            from content_engine.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory

    async def snapshot(self) -> dict[str, str]:
        async with self.session_factory() as session:
            return await list_settings(session)

    async def ensure_allowed(self, job_type: JobType) -> None:
        """Raises PolicyBlockedError carrying the blocking tag."""
        tag = policy_block_tag(await self.snapshot(), job_type)
        if tag:
            raise PolicyBlockedError(tag)
