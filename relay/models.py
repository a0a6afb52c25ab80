"""Pydantic models for conversation state and inbound payloads.

Turns are serialized with camelCase aliases (``messageId``, ``userId``,
``contentType``) so stored history documents keep the shape the generation
backend already consumes.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Author of a turn. SYSTEM turns are operator notes, never produced by the pipeline."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class SourceKind(str, Enum):
    """How an inbound body was decoded."""
    META_JSON = "meta_json"
    TWILIO_FORM = "twilio_form"
    RECOVERED = "recovered"
    WEB_JSON = "web_json"
    UNKNOWN = "unknown"


class Channel(str, Enum):
    """Outbound transport for replies."""
    TWILIO = "twilio"
    META = "meta"
    WEB = "web"


class JobStatus(str, Enum):
    """Transcription job lifecycle.

    COMPLETED, FAILED and TIMED_OUT are terminal.
    """
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMED_OUT)


class MediaReference(BaseModel):
    """Inbound media persisted to durable storage."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    uri: str
    content_type: str = Field(alias="contentType")
    size: int


class ContentPart(BaseModel):
    """One typed piece of a turn's content (text or media).

    Extra keys are allowed so reply parts from the generation backend
    round-trip untouched.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str = "text"
    text: Optional[str] = None
    media: Optional[MediaReference] = None

    @classmethod
    def of_text(cls, text: str) -> "ContentPart":
        return cls(type="text", text=text)

    @classmethod
    def of_media(cls, media: MediaReference) -> "ContentPart":
        return cls(type="media", media=media)


class TurnMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    phone: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId")
    provider: Optional[str] = None
    phone_number_id: Optional[str] = Field(default=None, alias="phoneNumberId")
    timestamp: datetime = Field(default_factory=utc_now)


class Turn(BaseModel):
    """One message in a conversation. Immutable once created."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    role: Role
    content: List[ContentPart] = Field(default_factory=list)
    message_id: Optional[str] = Field(default=None, alias="messageId")
    metadata: Optional[TurnMetadata] = None

    @property
    def text(self) -> Optional[str]:
        """Text of the first text part, if any."""
        for part in self.content:
            if part.type == "text" and part.text is not None:
                return part.text
        return None

    @property
    def has_media(self) -> bool:
        return any(part.media is not None for part in self.content)

    @property
    def is_conversational(self) -> bool:
        return self.role in (Role.USER, Role.ASSISTANT)

    def to_wire(self) -> Dict[str, Any]:
        """Serialize for storage and for the generation backend."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SessionBackup(BaseModel):
    """Point-in-time snapshot of a session's full turn log."""
    model_config = ConfigDict(populate_by_name=True)

    backup_key: str = Field(alias="backupKey")
    user_id: str = Field(alias="userId")
    turns: List[Turn] = Field(default_factory=list, alias="history")
    timestamp: datetime = Field(default_factory=utc_now)
    last_message_id: Optional[str] = Field(default=None, alias="lastMessageId")


class TranscriptionJob(BaseModel):
    """Ephemeral state of one speech-to-text job. Never persisted."""

    job_id: str
    source_uri: str
    format: str
    status: JobStatus = JobStatus.PENDING
    result_text: Optional[str] = None
    failure_reason: Optional[str] = None
    attempts: int = 0


class MediaDescriptor(BaseModel):
    """Reference to inbound media before it is downloaded.

    Twilio supplies a ``url``; Meta supplies a ``blob_id`` resolved via the Graph API.
    """

    url: Optional[str] = None
    blob_id: Optional[str] = None
    content_type: Optional[str] = None

    @property
    def is_audio(self) -> bool:
        return "audio" in (self.content_type or "").lower()


class InboundPayload(BaseModel):
    """Flat key-value view of an inbound request body."""

    fields: Dict[str, Any] = Field(default_factory=dict)
    source_kind: SourceKind = SourceKind.UNKNOWN
    raw_body: str = ""
    recovered_by: Optional[str] = None

    @property
    def is_single_key(self) -> bool:
        return len(self.fields) == 1
