"""
Typed job payloads.

Each job type carries its own payload shape. Payloads are stored as plain JSON
on the job row and decoded into the matching variant at the worker boundary.
"""
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from content_engine.domain.errors import GenerationError, InvalidJobError
from content_engine.domain.states import JobType

LANGUAGES = {"en": "en", "english": "en", "hi": "hi", "hindi": "hi"}
DIFFICULTIES = ("easy", "medium", "hard")


def normalize_language(value: Any) -> str:
    if value is None or str(value).strip() == "":
        raise ValueError("language is required")
    return LANGUAGES.get(str(value).strip().lower(), "en")


def normalize_difficulty(value: Any) -> str:
    if value is None:
        return "medium"
    value = str(value).strip().lower()
    return value if value in DIFFICULTIES else "medium"


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


class _LanguagePayload(_Payload):
    language: str

    @field_validator("language", mode="before")
    @classmethod
    def _language(cls, v):
        return normalize_language(v)


class SyllabusPayload(_LanguagePayload):
    job_type: Literal["syllabus"] = "syllabus"
    board: Optional[str] = None
    grade: Optional[str] = None


class NotesPayload(_LanguagePayload):
    job_type: Literal["notes"] = "notes"


class QuestionsPayload(_LanguagePayload):
    job_type: Literal["questions"] = "questions"
    difficulty: str = "medium"
    count: int = Field(default=10, ge=1, le=100)

    @field_validator("difficulty", mode="before")
    @classmethod
    def _difficulty(cls, v):
        return normalize_difficulty(v)


class MockTestPayload(_LanguagePayload):
    job_type: Literal["tests"] = "tests"
    difficulty: str = "medium"

    @field_validator("difficulty", mode="before")
    @classmethod
    def _difficulty(cls, v):
        return normalize_difficulty(v)


class AssemblePayload(_Payload):
    job_type: Literal["assemble"] = "assemble"
    language: Optional[str] = None


HydrationPayload = Annotated[
    Union[SyllabusPayload, NotesPayload, QuestionsPayload, MockTestPayload, AssemblePayload],
    Field(discriminator="job_type"),
]

_adapter: TypeAdapter = TypeAdapter(HydrationPayload)


def decode_payload(job_type: JobType, raw: Optional[dict[str, Any]]) -> HydrationPayload:
    """Validates `raw` as the payload variant for `job_type`.

    Raises InvalidJobError on any mismatch, which callers treat as permanent.
    """
    data = dict(raw or {})
    data["job_type"] = str(JobType(job_type))
    try:
        return _adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidJobError(f"Invalid {job_type} payload: {e.errors(include_url=False)}") from e


def encode_payload(payload: HydrationPayload) -> dict[str, Any]:
    data = payload.model_dump(mode="json")
    data.pop("job_type", None)
    return data


class OutlineTopic(BaseModel):
    id: Optional[str] = None
    name: str


class OutlineChapter(BaseModel):
    id: Optional[str] = None
    name: str
    topics: list[OutlineTopic] = Field(default_factory=list)


class SyllabusOutline(BaseModel):
    """Chapters and topics a syllabus job returns for its subject."""
    chapters: list[OutlineChapter] = Field(default_factory=list)


def decode_outline(result: Optional[dict[str, Any]]) -> Optional[SyllabusOutline]:
    # Results without a chapter list carry no tree to store.
    if not result or "chapters" not in result:
        return None
    try:
        return SyllabusOutline.model_validate(result)
    except ValidationError as e:
        raise GenerationError(f"Unusable syllabus outline: {e.errors(include_url=False)}") from e
