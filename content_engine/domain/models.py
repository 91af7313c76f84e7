from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum, auto
from typing import Any, Optional
from uuid import UUID

from content_engine.domain.states import JobType


@dataclass
class QueueEnvelope:
    """Wire contract of a work-queue message."""
    job_id: UUID
    job_type: JobType
    entity_id: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": str(self.job_id),
            "job_type": str(self.job_type),
            "entity_id": self.entity_id,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueueEnvelope":
        return cls(
            job_id=UUID(str(data["job_id"])),
            job_type=JobType(data["job_type"]),
            entity_id=str(data["entity_id"]),
            payload=dict(data.get("payload") or {}),
        )


@dataclass
class Delivery:
    """A received message plus the receipt that guards ack/retry."""
    message_id: int
    receipt: UUID
    envelope: QueueEnvelope
    deliveries: int
    visible_until: datetime


@dataclass
class EnqueueResult:
    job_id: UUID
    created: bool
    outbox_id: Optional[int] = None


@dataclass
class JobContext:
    """What a generator gets to know about the run it serves."""
    job_id: UUID
    job_type: JobType
    entity_id: str
    attempt: int
    run_id: UUID


class ProcessOutcome(StrEnum):
    SKIPPED = auto()      # Job gone or already finished
    DEFERRED = auto()     # Policy kill-switch active
    CONTENDED = auto()    # Target lock held elsewhere, or the job is mid-run
    COMPLETED = auto()
    RETRYING = auto()
    FAILED = auto()
    CANCELLED = auto()
    CONFLICT = auto()     # Lost the run to a stale-lock steal
    ERROR = auto()        # Infrastructure error, message retried
