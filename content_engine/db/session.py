from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase

from content_engine.settings import settings


def make_engine(url: str) -> AsyncEngine:
    return create_async_engine(url, echo=False, pool_pre_ping=True)


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = make_engine(settings.SQLALCHEMY_DATABASE_URI)
AsyncSessionLocal = make_session_factory(engine)

if settings.QUEUE_DATABASE_URI:
    queue_engine = make_engine(settings.QUEUE_DATABASE_URI)
    QueueSessionLocal = make_session_factory(queue_engine)
else:
    queue_engine = engine
    QueueSessionLocal = AsyncSessionLocal


class Base(DeclarativeBase):
    pass


async def ping(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Raises if the store behind `session_factory` is unreachable."""
    async with session_factory() as session:
        await session.execute(text("SELECT 1"))


async def init_models(bind: AsyncEngine, queue_bind: Optional[AsyncEngine] = None) -> None:
    # Importing the model modules registers their tables.
    import content_engine.db.models  # noqa: F401
    from content_engine.queue.models import QueueBase

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with (queue_bind or bind).begin() as conn:
        await conn.run_sync(QueueBase.metadata.create_all)
