"""Pydantic models for the transcription backend API and the local cache."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated
from uuid import UUID

from pydantic import AfterValidator, AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field


class RecordingStatus(str, Enum):
    """Processing stage of a recording, in pipeline order."""

    UPLOADING = "uploading"
    PROCESSING = "processing"
    TRANSCRIBING = "transcribing"
    TRANSCRIBED = "transcribed"
    SUMMARIZING = "summarizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RecordingStatus.COMPLETED, RecordingStatus.FAILED)

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    def can_advance_to(self, other: "RecordingStatus") -> bool:
        """Whether moving from this status to *other* keeps the stage order.

        ``failed`` is reachable from any non-terminal stage; terminal
        stages never move.
        """
        if self.is_terminal:
            return other == self
        if other == RecordingStatus.FAILED:
            return True
        return other.rank >= self.rank


_STATUS_ORDER = [
    RecordingStatus.UPLOADING,
    RecordingStatus.PROCESSING,
    RecordingStatus.TRANSCRIBING,
    RecordingStatus.TRANSCRIBED,
    RecordingStatus.SUMMARIZING,
    RecordingStatus.COMPLETED,
    RecordingStatus.FAILED,
]

# Statuses after which the full record carries content worth fetching
HYDRATABLE_STATUSES = frozenset({RecordingStatus.TRANSCRIBED, RecordingStatus.COMPLETED})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# The backend's coarse "processing" stage is tracked as "transcribing"
_STATUS_ALIASES = {"processing": "transcribing"}


def _normalize_status(value):
    if isinstance(value, str):
        value = value.strip().lower()
        return _STATUS_ALIASES.get(value, value)
    return value


def parse_status(value: str) -> RecordingStatus:
    """Parse a backend status string. Raises ValueError for unknown stages."""
    return RecordingStatus(_normalize_status(value))


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


Status = Annotated[RecordingStatus, BeforeValidator(_normalize_status)]
UTCDateTime = Annotated[datetime, AfterValidator(_as_aware)]


# --- Auth ---


class User(BaseModel):
    """Account profile returned by the auth endpoints."""

    id: str
    username: str
    email: str
    is_active: bool = True
    apple_id: str | None = None
    profile_data: dict[str, str] = Field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None


class AuthSession(BaseModel):
    """Token pair plus the user they were issued for."""

    access_token: str
    refresh_token: str | None = None
    user: User | None = None


class LoginRequest(BaseModel):
    email: str
    password: str


class RegisterRequest(BaseModel):
    username: str
    email: str
    password: str


class TokenResponse(BaseModel):
    """Response of ``/auth/login`` and ``/auth/register``."""

    access_token: str
    refresh_token: str | None = None
    token_type: str = "bearer"
    user: User


# --- Recordings ---


class Recording(BaseModel):
    """A recording as known to the backend, with optional processed content."""

    model_config = ConfigDict(populate_by_name=True)

    id: UUID
    title: str
    original_filename: str = Field(
        default="", validation_alias=AliasChoices("original_filename", "file_name", "filename")
    )
    format: str = ""
    mime_type: str = ""
    duration: float | None = None
    created_at: UTCDateTime = Field(default_factory=_utcnow)
    file_size: int = 0
    status: Status = RecordingStatus.UPLOADING
    transcript: str | None = Field(
        default=None, validation_alias=AliasChoices("transcript", "transcription")
    )
    summary: str | None = None
    timeline_transcript: str | None = None

    @property
    def has_transcript(self) -> bool:
        return bool(self.transcript)

    @property
    def has_summary(self) -> bool:
        return bool(self.summary)


class RecordingSummary(BaseModel):
    """Lightweight projection used for cheap list refreshes."""

    id: UUID
    title: str
    duration: float | None = None
    file_size: int = 0
    status: Status = RecordingStatus.UPLOADING
    created_at: UTCDateTime
    has_transcript: bool = False
    has_summary: bool = False

    def to_recording(self) -> Recording:
        """Build a placeholder Recording when no full record is cached yet."""
        return Recording(
            id=self.id,
            title=self.title,
            duration=self.duration,
            file_size=self.file_size,
            status=self.status,
            created_at=self.created_at,
        )


class RecordingsResponse(BaseModel):
    """Full list wrapper; the backend may also return a bare array."""

    recordings: list[Recording]


class RecordingSummariesResponse(BaseModel):
    """Summary list wrapper; the backend may also return a bare array."""

    items: list[RecordingSummary] = Field(
        validation_alias=AliasChoices("items", "recordings", "data")
    )
    total: int | None = None
    page: int | None = None


class UploadAccepted(BaseModel):
    """Dedicated upload response: just the new id and its initial status."""

    recording_id: UUID
    status: Status | None = None
    message: str | None = None


# --- Prompt templates ---


class PromptTemplate(BaseModel):
    """Summarization prompt. System templates are shared and read-only."""

    id: int
    name: str
    description: str | None = None
    prompt: str
    is_system_template: bool = False
    is_user_default: bool = False
    user_id: str | None = None
    created_at: UTCDateTime = Field(default_factory=_utcnow)
    updated_at: UTCDateTime = Field(default_factory=_utcnow)

    @property
    def is_editable(self) -> bool:
        return not self.is_system_template


class PromptTemplateRequest(BaseModel):
    """Body for creating or updating a template."""

    name: str
    description: str | None = None
    prompt: str


class DefaultTemplateResponse(BaseModel):
    default_template: PromptTemplate | None = None


# --- Misc ---


class APIErrorResponse(BaseModel):
    """Structured error body; FastAPI backends use ``detail``."""

    message: str | None = Field(default=None, validation_alias=AliasChoices("message", "detail"))
    status_code: int | None = None


class SystemStatusResponse(BaseModel):
    status: str
    version: str = ""


class CacheEntry(BaseModel):
    """A Recording snapshot stored in the local cache."""

    recording: Recording
    written_at: datetime = Field(default_factory=_utcnow)


# --- Local bridge API ---


class LoginBody(BaseModel):
    email: str
    password: str


class RegisterBody(BaseModel):
    username: str
    email: str
    password: str


class TitleUpdateRequest(BaseModel):
    title: str


class UploadRequest(BaseModel):
    """Upload a file already present on this machine."""

    path: str
    title: str
    prompt_template_id: int | None = None


class SessionStateResponse(BaseModel):
    state: str
    user: User | None = None
    error_message: str | None = None


class RecordingListResponse(BaseModel):
    recordings: list[Recording]
    stale: bool = False
    polling: bool = False


class TemplateListResponse(BaseModel):
    templates: list[PromptTemplate]
    default_template_id: int | None = None
