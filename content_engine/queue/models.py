from datetime import datetime
from typing import Optional, Any
from uuid import UUID

from sqlalchemy import String, Integer, DateTime, Index, JSON, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from content_engine.domain.clock import utc_now
from content_engine.domain.states import MessageState


class QueueBase(DeclarativeBase):
    """Metadata for the queue store, which may be a separate database."""
    pass


class QueueMessage(QueueBase):
    __tablename__ = "queue_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Wire contract
    job_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), unique=True, nullable=False)
    job_type: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON().with_variant(JSONB(), "postgresql"), default=dict)

    # Delivery state
    state: Mapped[MessageState] = mapped_column(String, default=MessageState.READY, index=True)
    deliveries: Mapped[int] = mapped_column(Integer, default=0)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    visible_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    receipt: Mapped[Optional[UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    consumer: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        # Optimization for "receive" query: state=ready + available_at <= now
        Index("ix_queue_poll", "state", "available_at"),
    )
