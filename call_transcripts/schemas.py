from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .errors import InvalidPayload

S3_URL_SCHEMES = {"s3", "http", "https"}

ModelT = TypeVar("ModelT", bound=BaseModel)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AttachmentState(str, Enum):
    PENDING = "pending"
    ATTACHED = "attached"


class TranscriptSegment(CamelModel):
    speaker_id: Optional[str] = None
    text: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    confidence: Optional[float] = None


class TranscriptionRecord(CamelModel):
    call_id: str
    participant_id: str
    text: str
    s3_url: Optional[str] = None
    created_at: datetime
    mentor_id: Optional[str] = None
    session_id: Optional[str] = None
    transcript_txt_url: Optional[str] = None
    transcript_vtt_url: Optional[str] = None
    segments: List[TranscriptSegment] = Field(default_factory=list)
    word_count: int = 0
    duration_seconds: Optional[float] = None
    language: Optional[str] = None
    call_started_at: Optional[datetime] = None
    call_ended_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def attachment_state(self) -> AttachmentState:
        if self.s3_url:
            return AttachmentState.ATTACHED
        return AttachmentState.PENDING

    def to_response(self) -> Dict[str, Any]:
        body = self.model_dump(mode="json", by_alias=True)
        body["attachmentStatus"] = self.attachment_state.value
        return body


def _require_text(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be blank")
    return value


class IngestionRequest(CamelModel):
    call_id: str
    participant_id: str
    text: str
    mentor_id: Optional[str] = None
    session_id: Optional[str] = None
    transcript_txt_url: Optional[str] = None
    transcript_vtt_url: Optional[str] = None
    segments: List[TranscriptSegment] = Field(default_factory=list)
    duration_seconds: Optional[float] = Field(default=None, ge=0)
    language: Optional[str] = None
    call_started_at: Optional[datetime] = None
    call_ended_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("call_id", "participant_id")
    @classmethod
    def validate_identifier(cls, value: str) -> str:
        return _require_text(value)

    @field_validator("text")
    @classmethod
    def validate_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class AttachmentRequest(CamelModel):
    call_id: str
    s3_url: str

    @field_validator("call_id")
    @classmethod
    def validate_call_id(cls, value: str) -> str:
        return _require_text(value)

    @field_validator("s3_url")
    @classmethod
    def validate_s3_url(cls, value: str) -> str:
        value = _require_text(value)
        parsed = urlparse(value)
        if parsed.scheme not in S3_URL_SCHEMES or not parsed.netloc:
            raise ValueError("must be an s3:// or http(s):// reference")
        if parsed.scheme == "s3" and not parsed.path.strip("/"):
            raise ValueError("s3 reference must include an object key")
        return value


class StreamTranscriptionFile(BaseModel):
    url: Optional[str] = None
    subtitle_url: Optional[str] = None
    call_cid: Optional[str] = None


class StreamUserRef(BaseModel):
    id: Optional[str] = None


class StreamCallDetails(BaseModel):
    session_id: Optional[str] = None
    created_by: Optional[StreamUserRef] = None
    members: Optional[List[StreamUserRef]] = None
    duration_seconds: Optional[float] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class StreamWebhookEvent(BaseModel):
    type: str = Field(min_length=1)
    call_cid: Optional[str] = None
    call_transcription: Optional[StreamTranscriptionFile] = None
    call: Optional[StreamCallDetails] = None


def _describe_errors(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error["loc"]) or "body"
        parts.append(f"{location}: {error['msg']}")
    return "; ".join(parts)


def parse_payload(model: Type[ModelT], raw: Any) -> ModelT:
    """Validate a raw JSON body once at the boundary."""
    if not isinstance(raw, Mapping):
        raise InvalidPayload("Request body must be a JSON object")
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        fields = sorted({str(error["loc"][0]) for error in exc.errors() if error["loc"]})
        raise InvalidPayload(
            f"Invalid payload: {_describe_errors(exc)}", fields=",".join(fields)
        ) from exc
