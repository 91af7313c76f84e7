from enum import StrEnum, auto


class JobStatus(StrEnum):
    PENDING = auto()     # Created, waiting for a worker
    RUNNING = auto()     # Claimed by a worker holding the target lock
    COMPLETED = auto()   # Content generated and stored
    FAILED = auto()      # Attempts exhausted or unrecoverable payload
    CANCELLED = auto()   # Admin cancelled


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING})


class JobEvent(StrEnum):
    CREATED = "CREATED"
    ENQUEUED = "ENQUEUED"
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    RETRY = "RETRY"
    FAILED = "FAILED"
    DEFERRED = "DEFERRED"
    CANCEL_REQUESTED = "CANCEL_REQUESTED"
    CANCELLED = "CANCELLED"
    DEAD_LETTERED = "DEAD_LETTERED"


class JobType(StrEnum):
    SYLLABUS = auto()
    NOTES = auto()
    QUESTIONS = auto()
    TESTS = auto()
    ASSEMBLE = auto()

    @property
    def category(self) -> str:
        return self.value.upper()


class EntityType(StrEnum):
    SUBJECT = "SUBJECT"
    CHAPTER = "CHAPTER"
    TOPIC = "TOPIC"


# Which target each job type hydrates.
JOB_TARGETS: dict[JobType, frozenset[EntityType]] = {
    JobType.SYLLABUS: frozenset({EntityType.SUBJECT}),
    JobType.NOTES: frozenset({EntityType.TOPIC}),
    JobType.QUESTIONS: frozenset({EntityType.TOPIC}),
    JobType.TESTS: frozenset({EntityType.TOPIC}),
    JobType.ASSEMBLE: frozenset({EntityType.TOPIC}),
}


# Per-topic stages a cascade runs once its syllabus job has completed, in order.
CASCADE_STAGES: tuple[JobType, ...] = (JobType.NOTES, JobType.QUESTIONS, JobType.TESTS)


class CascadeStatus(StrEnum):
    RUNNING = auto()
    COMPLETED = auto()
    FAILED = auto()      # Root failed, or finished with failed children
    CANCELLED = auto()   # Root cancelled before the syllabus existed


class WorkerStatus(StrEnum):
    RUNNING = auto()
    STOPPED = auto()


class MessageState(StrEnum):
    READY = auto()
    INFLIGHT = auto()
    DONE = auto()
    DEAD = auto()
