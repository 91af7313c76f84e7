import logging
import re
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from content_engine.db.models import SyllabusNode
from content_engine.domain.payloads import SyllabusOutline
from content_engine.domain.states import EntityType

logger = logging.getLogger(__name__)


def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "untitled"


async def _ensure_node(
    session: AsyncSession,
    node_id: str,
    entity_type: EntityType,
    name: str,
    parent_id: str,
) -> bool:
    if await session.get(SyllabusNode, node_id) is not None:
        return False
    session.add(SyllabusNode(id=node_id, entity_type=entity_type, name=name, parent_id=parent_id))
    # Flushed one by one so a repeated id in the same outline is seen by the next lookup
    await session.flush()
    return True


async def materialize_syllabus(session: AsyncSession, subject_id: str, outline: SyllabusOutline) -> tuple[int, int]:
    """
    Adds the chapters and topics of `outline` under `subject_id`.
    Nodes that already exist are kept as they are. Returns the number of
    chapters and topics created.
    """
    chapters = topics = 0
    for chapter in outline.chapters:
        chapter_id = chapter.id or f"{subject_id}--{_slug(chapter.name)}"
        if await _ensure_node(session, chapter_id, EntityType.CHAPTER, chapter.name, subject_id):
            chapters += 1
        for topic in chapter.topics:
            topic_id = topic.id or f"{chapter_id}--{_slug(topic.name)}"
            if await _ensure_node(session, topic_id, EntityType.TOPIC, topic.name, chapter_id):
                topics += 1

    if chapters or topics:
        logger.info("Syllabus for %s added %s chapters and %s topics", subject_id, chapters, topics)
    return chapters, topics


async def subject_topic_ids(session: AsyncSession, subject_id: str, chapter_ids: Optional[list[str]] = None) -> list[str]:
    """Topic ids under the chapters of `subject_id`, in a stable order."""
    if chapter_ids is None:
        chapter_ids = await subject_chapter_ids(session, subject_id)
    if not chapter_ids:
        return []
    stmt = (
        select(SyllabusNode.id)
        .where(SyllabusNode.parent_id.in_(chapter_ids), SyllabusNode.entity_type == EntityType.TOPIC)
        .order_by(SyllabusNode.id)
    )
    return list((await session.execute(stmt)).scalars().all())


async def subject_chapter_ids(session: AsyncSession, subject_id: str) -> list[str]:
    stmt = (
        select(SyllabusNode.id)
        .where(SyllabusNode.parent_id == subject_id, SyllabusNode.entity_type == EntityType.CHAPTER)
        .order_by(SyllabusNode.id)
    )
    return list((await session.execute(stmt)).scalars().all())
