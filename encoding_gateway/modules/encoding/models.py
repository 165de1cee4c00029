"""Database models for video encoding state.

Video, EncodingJob and QualityVariant rows are created when an upload is
confirmed and afterwards mutated only by the webhook reducer.
WebhookEventRecord is the reducer's ledger of applied deliveries.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from encoding_gateway.core.database import Base


class VideoStatus(str, Enum):
    """Lifecycle of a video from upload to playback readiness."""
    PENDING = "pending"
    UPLOADING = "uploading"
    ENCODING = "encoding"
    TRANSCRIBING = "transcribing"
    INDEXING = "indexing"
    READY = "ready"
    FAILED_ENCODING = "failed_encoding"
    FAILED_TRANSCRIPTION = "failed_transcription"
    FAILED_INDEXING = "failed_indexing"


TERMINAL_VIDEO_STATUSES = frozenset({
    VideoStatus.READY,
    VideoStatus.FAILED_ENCODING,
    VideoStatus.FAILED_TRANSCRIPTION,
    VideoStatus.FAILED_INDEXING,
})

# Failure status for a failure that happens while the video is in a given stage.
FAILURE_FOR_STAGE = {
    VideoStatus.PENDING: VideoStatus.FAILED_ENCODING,
    VideoStatus.UPLOADING: VideoStatus.FAILED_ENCODING,
    VideoStatus.ENCODING: VideoStatus.FAILED_ENCODING,
    VideoStatus.TRANSCRIBING: VideoStatus.FAILED_TRANSCRIPTION,
    VideoStatus.INDEXING: VideoStatus.FAILED_INDEXING,
}


class VideoVisibility(str, Enum):
    PRIVATE = "private"
    UNLISTED = "unlisted"
    PUBLIC = "public"


class EncodingJobStatus(str, Enum):
    """Status of one encode cycle, distinct from the video's status."""
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset({
    EncodingJobStatus.COMPLETED,
    EncodingJobStatus.FAILED,
    EncodingJobStatus.CANCELLED,
})


class QualityStatus(str, Enum):
    PENDING = "pending"
    ENCODING = "encoding"
    READY = "ready"
    ERROR = "error"
    SKIPPED = "skipped"


class VideoQuality(str, Enum):
    """Supported output qualities, highest first."""
    Q1080P = "1080p"
    Q720P = "720p"
    Q480P = "480p"
    Q360P = "360p"
    Q240P = "240p"


QUALITY_ORDER = {quality: index for index, quality in enumerate(VideoQuality)}


class WebhookEventType(str, Enum):
    """Events the encoding worker reports through the webhook."""
    JOB_STARTED = "job.started"
    JOB_PROGRESS = "job.progress"
    QUALITY_COMPLETED = "quality.completed"
    JOB_COMPLETED = "job.completed"
    JOB_FAILED = "job.failed"
    THUMBNAIL_GENERATED = "thumbnail.generated"
    AUDIO_EXTRACTED = "audio.extracted"


class Video(Base):
    """An uploaded video and its aggregate encoding state."""

    __tablename__ = "videos"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)

    status: Mapped[str] = mapped_column(String(50), default=VideoStatus.PENDING.value)
    visibility: Mapped[str] = mapped_column(String(20), default=VideoVisibility.PRIVATE.value)
    duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # seconds
    progress: Mapped[int] = mapped_column(Integer, default=0)  # 0-100
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Encode cycle whose webhooks may mutate this video
    current_job_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Object storage paths
    raw_path: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    thumbnail_path: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    audio_path: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    audio_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    # Source metadata reported by the worker
    source_width: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    source_height: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    source_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    variants: Mapped[list["QualityVariant"]] = relationship(
        "QualityVariant",
        back_populates="video",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def is_terminal(self) -> bool:
        return VideoStatus(self.status) in TERMINAL_VIDEO_STATUSES

    def __repr__(self) -> str:
        return f"<Video {self.id} - {self.status}>"


class EncodingJob(Base):
    """One encode cycle of a video, identified by a caller-generated job ID."""

    __tablename__ = "encoding_jobs"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    video_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("videos.id", ondelete="CASCADE"), nullable=False, index=True
    )
    requested_qualities: Mapped[list[str]] = mapped_column(JSON, nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=EncodingJobStatus.PENDING.value)
    progress: Mapped[int] = mapped_column(Integer, default=0)  # 0-100
    progress_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Broker message ID, kept for audit only
    external_message_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    attempt_number: Mapped[int] = mapped_column(Integer, default=1)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)

    queued_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def is_terminal(self) -> bool:
        return EncodingJobStatus(self.status) in TERMINAL_JOB_STATUSES

    def can_retry(self) -> bool:
        return (
            self.status == EncodingJobStatus.FAILED.value
            and self.attempt_number < self.max_attempts
        )

    def __repr__(self) -> str:
        return f"<EncodingJob {self.id} - {self.status}>"


class QualityVariant(Base):
    """One rendition of a video at a specific quality."""

    __tablename__ = "video_variants"
    __table_args__ = (UniqueConstraint("video_id", "quality", name="uq_video_variants_video_quality"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    video_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("videos.id", ondelete="CASCADE"), nullable=False, index=True
    )
    quality: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=QualityStatus.PENDING.value)
    progress: Mapped[int] = mapped_column(Integer, default=0)

    width: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    height: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    bitrate: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # kbps
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)  # bytes
    output_path: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    video: Mapped["Video"] = relationship("Video", back_populates="variants")

    def __repr__(self) -> str:
        return f"<QualityVariant {self.video_id} {self.quality} - {self.status}>"


class WebhookEventRecord(Base):
    """Last applied delivery for one (job, event type, quality) tuple."""

    __tablename__ = "encoding_webhook_events"
    __table_args__ = (
        UniqueConstraint("job_id", "event_type", "quality_key", name="uq_encoding_webhook_events_key"),
    )
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    video_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    quality_key: Mapped[str] = mapped_column(String(10), nullable=False, default="")

    # Event time in microseconds since the epoch, as reported by the worker
    event_time_us: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<WebhookEventRecord {self.job_id} {self.event_type} {self.quality_key or '-'}>"
