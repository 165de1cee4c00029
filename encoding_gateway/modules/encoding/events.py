"""Typed webhook events reported by the encoding worker.

The seven event shapes form a closed union discriminated by ``event``.
:func:`parse_webhook_event` turns a verified raw body into one of them.
"""

from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from encoding_gateway.modules.encoding.exceptions import ValidationError
from encoding_gateway.modules.encoding.models import VideoQuality, WebhookEventType


class EventModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class WebhookEventBase(EventModel):
    job_id: str = Field(..., min_length=1)
    video_id: str = Field(..., min_length=1)
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def quality_key(self) -> str:
        """Quality the event is scoped to, or an empty string for job-wide events."""
        quality = getattr(self.data, "quality", None)
        return quality.value if quality is not None else ""

    @property
    def event_time_us(self) -> int:
        """Event time as integer microseconds since the epoch."""
        delta = self.timestamp - datetime(1970, 1, 1, tzinfo=timezone.utc)
        return (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds


# ==================== Event payloads ====================

class JobStartedData(EventModel):
    source_width: int
    source_height: int
    duration: float
    codec: str
    bitrate: int
    fps: float


class JobProgressData(EventModel):
    progress: float = Field(..., ge=0, le=100)
    quality: Optional[VideoQuality] = None
    message: Optional[str] = None


class QualityCompletedData(EventModel):
    quality: VideoQuality
    width: int
    height: int
    bitrate: int
    file_size: int
    r2_path: str


class CompletedQuality(EventModel):
    quality: VideoQuality
    r2_path: str
    file_size: int


class JobCompletedData(EventModel):
    duration: float
    qualities: list[CompletedQuality]


class JobFailedData(EventModel):
    error_code: str
    error_message: str
    error_details: Optional[str] = None
    quality: Optional[VideoQuality] = None


class ThumbnailGeneratedData(EventModel):
    r2_path: str
    width: int
    height: int


class AudioExtractedData(EventModel):
    output_path: str
    file_size_bytes: int
    duration_seconds: float
    format: str
    sample_rate: int
    channels: int
    bit_depth: int


# ==================== Events ====================

class JobStartedEvent(WebhookEventBase):
    event: Literal["job.started"]
    data: JobStartedData


class JobProgressEvent(WebhookEventBase):
    event: Literal["job.progress"]
    data: JobProgressData


class QualityCompletedEvent(WebhookEventBase):
    event: Literal["quality.completed"]
    data: QualityCompletedData


class JobCompletedEvent(WebhookEventBase):
    event: Literal["job.completed"]
    data: JobCompletedData


class JobFailedEvent(WebhookEventBase):
    event: Literal["job.failed"]
    data: JobFailedData


class ThumbnailGeneratedEvent(WebhookEventBase):
    event: Literal["thumbnail.generated"]
    data: ThumbnailGeneratedData


class AudioExtractedEvent(WebhookEventBase):
    event: Literal["audio.extracted"]
    data: AudioExtractedData


WebhookEvent = Annotated[
    Union[
        JobStartedEvent,
        JobProgressEvent,
        QualityCompletedEvent,
        JobCompletedEvent,
        JobFailedEvent,
        ThumbnailGeneratedEvent,
        AudioExtractedEvent,
    ],
    Field(discriminator="event"),
]

_webhook_event_adapter: TypeAdapter[WebhookEvent] = TypeAdapter(WebhookEvent)


def parse_webhook_event(raw_body: bytes | str) -> WebhookEvent:
    """Parse and validate a verified webhook body.

    Raises:
        ValidationError: If the body is not JSON or matches none of the event shapes
    """
    try:
        return _webhook_event_adapter.validate_json(raw_body)
    except PydanticValidationError as e:
        errors = e.errors(include_url=False, include_context=False, include_input=False)
        raise ValidationError("Invalid webhook payload", errors=errors) from e


def event_from_record(payload: dict) -> WebhookEvent:
    """Rebuild an event from a ledger payload written by :func:`event_to_record`."""
    return _webhook_event_adapter.validate_python(payload)


def event_to_record(event: WebhookEvent) -> dict:
    """Canonical JSON-compatible form of an event, with wire (camelCase) keys."""
    return event.model_dump(mode="json", by_alias=True, exclude_none=True)


def event_type(event: WebhookEvent) -> WebhookEventType:
    return WebhookEventType(event.event)
