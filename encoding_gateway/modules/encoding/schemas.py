"""Pydantic schemas for the encoding service.

The job message schemas mirror the worker contract on the wire (camelCase
keys); request/response schemas serve the HTTP routes.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from encoding_gateway.modules.encoding.models import (
    QUALITY_ORDER,
    EncodingJobStatus,
    QualityStatus,
    VideoQuality,
    VideoStatus,
)


class WireModel(BaseModel):
    """Base for models exchanged with the encoding worker."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ==================== Quality ladder ====================

class QualityConfig(WireModel):
    """Target rendition settings sent to the worker."""
    quality: VideoQuality
    width: int
    height: int
    bitrate: int  # kbps
    audio_bitrate: int  # kbps


DEFAULT_QUALITY_CONFIGS: list[QualityConfig] = [
    QualityConfig(quality=VideoQuality.Q1080P, width=1920, height=1080, bitrate=5000, audio_bitrate=192),
    QualityConfig(quality=VideoQuality.Q720P, width=1280, height=720, bitrate=2500, audio_bitrate=128),
    QualityConfig(quality=VideoQuality.Q480P, width=854, height=480, bitrate=1000, audio_bitrate=96),
    QualityConfig(quality=VideoQuality.Q360P, width=640, height=360, bitrate=600, audio_bitrate=64),
    QualityConfig(quality=VideoQuality.Q240P, width=426, height=240, bitrate=300, audio_bitrate=48),
]


def get_quality_config(quality: VideoQuality) -> QualityConfig:
    """Get the default rendition settings for a quality."""
    for config in DEFAULT_QUALITY_CONFIGS:
        if config.quality == quality:
            return config
    raise KeyError(quality)


def determine_qualities(
    source_width: Optional[int] = None,
    source_height: Optional[int] = None,
    requested: Optional[list[VideoQuality]] = None,
) -> list[QualityConfig]:
    """Pick the qualities to encode for a source video.

    Qualities larger than the source in both dimensions are skipped, and the
    result is narrowed to ``requested`` when given. The lowest quality is
    used when nothing else remains, so the result is never empty.

    Args:
        source_width: Source width in pixels (defaults to 1920)
        source_height: Source height in pixels (defaults to 1080)
        requested: Optional subset of qualities chosen by the uploader

    Returns:
        Quality configs ordered highest first
    """
    width = source_width or 1920
    height = source_height or 1080

    configs = [
        config for config in DEFAULT_QUALITY_CONFIGS
        if not (width < config.width and height < config.height)
    ]
    if requested:
        wanted = set(requested)
        configs = [config for config in configs if config.quality in wanted]

    if not configs:
        configs = [DEFAULT_QUALITY_CONFIGS[-1]]

    return sorted(configs, key=lambda c: QUALITY_ORDER[c.quality])


# ==================== Pub/Sub job message ====================

class EncodingJobSource(WireModel):
    bucket: str
    path: str
    filename: str


class EncodingJobOutput(WireModel):
    bucket: str
    base_path: str


class EncodingJobThumbnail(WireModel):
    enabled: bool = True
    timestamp_percent: int = Field(25, ge=0, le=100)
    path: str


class EncodingJobAudioForStt(WireModel):
    enabled: bool = False


class EncodingJobCallback(WireModel):
    webhook_url: str
    webhook_secret: str


class EncodingJobMetadata(WireModel):
    user_id: str
    title: Optional[str] = None
    created_at: str


class EncodingJobMessage(WireModel):
    """Message published to the broker for one encode cycle."""
    job_id: str
    video_id: str
    source: EncodingJobSource
    output: EncodingJobOutput
    qualities: list[QualityConfig] = Field(..., min_length=1)
    thumbnail: EncodingJobThumbnail
    audio_for_stt: EncodingJobAudioForStt = Field(default_factory=EncodingJobAudioForStt)
    callback: EncodingJobCallback
    metadata: EncodingJobMetadata

    def to_bytes(self) -> bytes:
        """Serialize with wire (camelCase) keys as UTF-8 JSON."""
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


# ==================== HTTP schemas ====================

class EncodingJobCreate(BaseModel):
    """Request to start an encode cycle for a confirmed upload."""
    qualities: Optional[list[VideoQuality]] = Field(None, description="Subset of qualities to encode")
    source_width: Optional[int] = Field(None, ge=1)
    source_height: Optional[int] = Field(None, ge=1)
    extract_audio: bool = Field(True, description="Extract audio for speech-to-text")


class EncodingJobResponse(BaseModel):
    id: str
    video_id: str
    status: EncodingJobStatus
    requested_qualities: list[VideoQuality]
    progress: int
    attempt_number: int
    max_attempts: int
    external_message_id: Optional[str] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class EncodingStatusVariant(BaseModel):
    quality: VideoQuality
    status: QualityStatus
    progress: int = 0
    width: Optional[int] = None
    height: Optional[int] = None
    file_size: Optional[int] = None
    output_path: Optional[str] = None


class EncodingStatusResponse(BaseModel):
    video_id: str
    status: VideoStatus
    overall_progress: int = Field(..., ge=0, le=100)
    variants: list[EncodingStatusVariant]
    thumbnail_path: Optional[str] = None
    error: Optional[str] = None


class WebhookAck(BaseModel):
    """Response body returned to the encoding worker."""
    success: bool
    event: Optional[str] = None
    job_id: Optional[str] = None
    video_id: Optional[str] = None
    applied: Optional[bool] = None
    error: Optional[str] = None
