"""Idempotent webhook state reducer.

Every accepted delivery is stored in a ledger keyed by
``(job_id, event, quality)``. A delivery older than the ledger entry for its
key, or identical to it, changes nothing. Otherwise the entry is replaced and
the job, video and variant state is recomputed by replaying the job's ledger
in event-time order. Terminal video states absorb every event that follows
them in event time, so the final state depends only on the set of accepted
events and not on the order they arrived in.
"""

import asyncio
import logging
import time
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from encoding_gateway.core.metrics import WEBHOOK_REDUCE_DURATION_SECONDS
from encoding_gateway.core.tracing import add_span_attributes, create_span, cycle_attributes
from encoding_gateway.modules.encoding.events import (
    AudioExtractedEvent,
    JobCompletedEvent,
    JobFailedEvent,
    JobProgressEvent,
    JobStartedEvent,
    QualityCompletedEvent,
    ThumbnailGeneratedEvent,
    WebhookEvent,
    event_from_record,
    event_to_record,
    event_type,
)
from encoding_gateway.modules.encoding.exceptions import StateConflictError
from encoding_gateway.modules.encoding.models import (
    FAILURE_FOR_STAGE,
    QUALITY_ORDER,
    TERMINAL_VIDEO_STATUSES,
    EncodingJob,
    EncodingJobStatus,
    QualityStatus,
    QualityVariant,
    Video,
    VideoQuality,
    VideoStatus,
    WebhookEventRecord,
    WebhookEventType,
)
from encoding_gateway.modules.encoding.repository import (
    EncodingJobRepository,
    QualityVariantRepository,
    VideoRepository,
    WebhookEventRepository,
)
from encoding_gateway.modules.encoding.schemas import get_quality_config
from encoding_gateway.modules.encoding.storage import StoragePaths

logger = logging.getLogger(__name__)

NO_VARIANT_COMPLETED = "No quality variant completed"

# Tie-break for events carrying the same timestamp
EVENT_RANK = {
    WebhookEventType.JOB_STARTED: 0,
    WebhookEventType.JOB_PROGRESS: 1,
    WebhookEventType.QUALITY_COMPLETED: 2,
    WebhookEventType.JOB_FAILED: 3,
    WebhookEventType.THUMBNAIL_GENERATED: 4,
    WebhookEventType.AUDIO_EXTRACTED: 5,
    WebhookEventType.JOB_COMPLETED: 6,
}

_OPEN_VARIANT_STATUSES = (QualityStatus.PENDING, QualityStatus.ENCODING)


# ==================== Projection ====================

@dataclass
class VariantProjection:
    quality: VideoQuality
    status: QualityStatus = QualityStatus.PENDING
    progress: int = 0
    width: Optional[int] = None
    height: Optional[int] = None
    bitrate: Optional[int] = None
    file_size: Optional[int] = None
    output_path: Optional[str] = None
    completed_at: Optional[datetime] = None


@dataclass
class EncodeProjection:
    """Job, video and variant state derived from one job's events."""

    job_status: EncodingJobStatus
    variants: dict[VideoQuality, VariantProjection]
    # None until an event of this cycle sets the video status
    video_status: Optional[VideoStatus] = None
    video_error: Optional[str] = None
    duration: Optional[int] = None
    job_progress: int = 0
    progress_message: Optional[str] = None
    error_code: Optional[str] = None
    last_error: Optional[str] = None
    error_details: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    source_width: Optional[int] = None
    source_height: Optional[int] = None
    source_metadata: Optional[dict[str, Any]] = None
    thumbnail_path: Optional[str] = None
    audio_path: Optional[str] = None
    audio_metadata: Optional[dict[str, Any]] = None
    unknown_qualities: set[VideoQuality] = field(default_factory=set)

    @property
    def terminal(self) -> bool:
        return self.video_status in TERMINAL_VIDEO_STATUSES

    @property
    def overall_progress(self) -> int:
        """Share of requested variants that are ready or skipped, as 0-100."""
        if not self.variants:
            return 0
        done = sum(
            1 for v in self.variants.values()
            if v.status in (QualityStatus.READY, QualityStatus.SKIPPED)
        )
        return max(0, min(100, round(100 * done / len(self.variants))))


def _clamp_progress(value: float) -> int:
    return max(0, min(100, round(value)))


def event_sort_key(event: WebhookEvent) -> tuple[int, int, int]:
    quality = event.quality_key
    return (
        event.event_time_us,
        EVENT_RANK[event_type(event)],
        QUALITY_ORDER[VideoQuality(quality)] if quality else -1,
    )


def project_encode_state(
    requested_qualities: Iterable[VideoQuality],
    base_job_status: EncodingJobStatus,
    events: Iterable[WebhookEvent],
) -> EncodeProjection:
    """Fold a job's events, in event-time order, into its derived state.

    Pure function of its inputs; the order of ``events`` does not matter.
    """
    state = EncodeProjection(
        job_status=base_job_status,
        variants={VideoQuality(q): VariantProjection(quality=VideoQuality(q)) for q in requested_qualities},
    )
    for event in sorted(events, key=event_sort_key):
        _apply_event(state, event)
    return state


def _apply_event(state: EncodeProjection, event: WebhookEvent) -> None:
    match event:
        case JobStartedEvent(data=data):
            state.source_width = data.source_width
            state.source_height = data.source_height
            state.source_metadata = {
                "duration": data.duration,
                "codec": data.codec,
                "bitrate": data.bitrate,
                "fps": data.fps,
            }
            state.duration = round(data.duration)
            if state.terminal:
                return
            state.video_status = VideoStatus.ENCODING
            state.job_status = EncodingJobStatus.PROCESSING
            state.started_at = event.timestamp

        case JobProgressEvent(data=data):
            if state.terminal:
                return
            state.job_progress = _clamp_progress(data.progress)
            state.progress_message = data.message
            if data.quality is not None:
                variant = _variant_for(state, data.quality)
                if variant is not None and variant.status in _OPEN_VARIANT_STATUSES:
                    variant.status = QualityStatus.ENCODING
                    variant.progress = _clamp_progress(data.progress)

        case QualityCompletedEvent(data=data):
            if state.terminal:
                return
            variant = _variant_for(state, data.quality)
            if variant is None or variant.status not in _OPEN_VARIANT_STATUSES:
                return
            variant.status = QualityStatus.READY
            variant.progress = 100
            variant.width = data.width
            variant.height = data.height
            variant.bitrate = data.bitrate
            variant.file_size = data.file_size
            variant.output_path = data.r2_path
            variant.completed_at = event.timestamp

        case JobFailedEvent(data=data):
            if state.terminal:
                return
            if data.quality is not None:
                # A single variant failing leaves the job-level error fields alone
                variant = _variant_for(state, data.quality)
                if variant is not None and variant.status in _OPEN_VARIANT_STATUSES:
                    variant.status = QualityStatus.ERROR
                return
            state.error_code = data.error_code
            state.last_error = data.error_message
            state.error_details = data.error_details
            stage = state.video_status or VideoStatus.PENDING
            state.video_status = FAILURE_FOR_STAGE.get(stage, VideoStatus.FAILED_ENCODING)
            state.video_error = data.error_message
            state.job_status = EncodingJobStatus.FAILED
            state.completed_at = event.timestamp

        case JobCompletedEvent(data=data):
            state.duration = round(data.duration)
            if state.terminal:
                return
            for completed in data.qualities:
                variant = _variant_for(state, completed.quality)
                if variant is not None and variant.status in _OPEN_VARIANT_STATUSES:
                    variant.status = QualityStatus.READY
                    variant.progress = 100
                    variant.output_path = completed.r2_path
                    variant.file_size = completed.file_size
                    variant.completed_at = event.timestamp
            for variant in state.variants.values():
                if variant.status in _OPEN_VARIANT_STATUSES:
                    variant.status = QualityStatus.SKIPPED
            state.completed_at = event.timestamp
            if any(v.status == QualityStatus.READY for v in state.variants.values()):
                state.video_status = VideoStatus.READY
                state.job_status = EncodingJobStatus.COMPLETED
                state.job_progress = 100
            else:
                state.video_status = VideoStatus.FAILED_ENCODING
                state.video_error = NO_VARIANT_COMPLETED
                state.job_status = EncodingJobStatus.FAILED
                state.error_code = "no_variants"
                state.last_error = NO_VARIANT_COMPLETED

        case ThumbnailGeneratedEvent(data=data):
            state.thumbnail_path = data.r2_path

        case AudioExtractedEvent(data=data):
            state.audio_path = data.output_path
            state.audio_metadata = {
                "file_size_bytes": data.file_size_bytes,
                "duration_seconds": data.duration_seconds,
                "format": data.format,
                "sample_rate": data.sample_rate,
                "channels": data.channels,
                "bit_depth": data.bit_depth,
            }


def _variant_for(state: EncodeProjection, quality: VideoQuality) -> Optional[VariantProjection]:
    variant = state.variants.get(quality)
    if variant is None:
        state.unknown_qualities.add(quality)
    return variant


def base_job_status(job: EncodingJob) -> EncodingJobStatus:
    """Job status before any webhook of the cycle arrived."""
    return EncodingJobStatus.QUEUED if job.queued_at is not None else EncodingJobStatus.PENDING


def write_projection(
    projection: EncodeProjection,
    video: Video,
    job: EncodingJob,
    variants: Iterable[QualityVariant],
) -> None:
    """Copy a projection onto the ORM rows of the cycle."""
    job.status = projection.job_status.value
    job.progress = projection.job_progress
    job.progress_message = projection.progress_message
    job.error_code = projection.error_code
    job.last_error = projection.last_error
    job.error_details = projection.error_details
    job.started_at = projection.started_at
    job.completed_at = projection.completed_at

    if projection.video_status is not None:
        video.status = projection.video_status.value
        video.last_error = projection.video_error
    video.progress = projection.overall_progress
    if projection.duration is not None:
        video.duration = projection.duration
    if projection.source_width is not None:
        video.source_width = projection.source_width
        video.source_height = projection.source_height
        video.source_metadata = projection.source_metadata
    if projection.thumbnail_path is not None:
        video.thumbnail_path = projection.thumbnail_path
    if projection.audio_path is not None:
        video.audio_path = projection.audio_path
        video.audio_metadata = projection.audio_metadata

    # Variant columns are fully rewritten from the projection
    for row in variants:
        quality = VideoQuality(row.quality)
        state = projection.variants.get(quality)
        if state is None:
            continue
        row.status = state.status.value
        row.progress = state.progress
        row.width = state.width
        row.height = state.height
        row.file_size = state.file_size
        row.completed_at = state.completed_at
        row.bitrate = state.bitrate if state.bitrate is not None else get_quality_config(quality).bitrate
        row.output_path = state.output_path or StoragePaths.encoded(video.id, quality)


# ==================== Reducer ====================

class VideoLockRegistry:
    """In-process lock per video ID.

    Serializes reductions for one video inside a worker; reductions for
    different videos never wait on each other. Locks are dropped once no
    coroutine holds a reference to them.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock_for(self, video_id: str) -> asyncio.Lock:
        lock = self._locks.get(video_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[video_id] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


video_locks = VideoLockRegistry()


@dataclass
class ReduceResult:
    applied: bool
    reason: str  # applied, duplicate or stale
    video_status: Optional[str] = None
    job_status: Optional[str] = None


class EncodingStateReducer:
    """Applies verified webhook events to persisted encoding state.

    The per-video lock orders reductions inside one process; the video row
    lock taken with ``SELECT ... FOR UPDATE`` orders them across processes.
    The reducer never performs network I/O.
    """

    def __init__(self, session: AsyncSession, locks: Optional[VideoLockRegistry] = None):
        self.session = session
        self.locks = locks or video_locks
        self.video_repo = VideoRepository(session)
        self.job_repo = EncodingJobRepository(session)
        self.variant_repo = QualityVariantRepository(session)
        self.event_repo = WebhookEventRepository(session)

    async def apply(self, event: WebhookEvent) -> ReduceResult:
        """Apply one event and commit.

        Raises:
            StateConflictError: If the job is unknown, belongs to another video,
                was cancelled or has been superseded by a newer job
        """
        kind = event_type(event)
        started = time.perf_counter()
        with create_span(
            "encoding.reduce_event",
            attributes=cycle_attributes(event.job_id, event.video_id, event=kind.value),
        ):
            async with self.locks.lock_for(event.video_id):
                try:
                    result = await self._apply_locked(event)
                except Exception:
                    await self.session.rollback()
                    raise
            add_span_attributes({"encoding.applied": result.applied, "encoding.outcome": result.reason})

        WEBHOOK_REDUCE_DURATION_SECONDS.labels(event=kind.value).observe(time.perf_counter() - started)
        return result

    async def _apply_locked(self, event: WebhookEvent) -> ReduceResult:
        job = await self.job_repo.get_by_id(event.job_id)
        if job is None:
            raise StateConflictError("Unknown encoding job", job_id=event.job_id, video_id=event.video_id)
        if job.video_id != event.video_id:
            raise StateConflictError(
                "Job belongs to a different video", job_id=event.job_id, video_id=event.video_id
            )

        video = await self.video_repo.get_for_update(job.video_id)
        if video is None:
            raise StateConflictError("Unknown video", job_id=job.id, video_id=job.video_id)
        if video.current_job_id is not None and video.current_job_id != job.id:
            raise StateConflictError("Job has been superseded", job_id=job.id, video_id=video.id)
        if job.status == EncodingJobStatus.CANCELLED.value:
            raise StateConflictError("Job has been cancelled", job_id=job.id, video_id=video.id)

        kind = event_type(event)
        payload = event_to_record(event)
        record = await self.event_repo.get(job.id, kind.value, event.quality_key)
        if record is not None:
            if event.event_time_us < record.event_time_us:
                return await self._skip("stale", video, job)
            if event.event_time_us == record.event_time_us and record.payload == payload:
                return await self._skip("duplicate", video, job)
            record.event_time_us = event.event_time_us
            record.payload = payload
        else:
            await self.event_repo.add(
                job_id=job.id,
                video_id=video.id,
                event_type=kind.value,
                quality_key=event.quality_key,
                event_time_us=event.event_time_us,
                payload=payload,
            )

        records = await self.event_repo.list_for_job(job.id)
        projection = project_encode_state(
            [VideoQuality(q) for q in job.requested_qualities],
            base_job_status(job),
            [_record_event(r) for r in records],
        )
        if projection.unknown_qualities:
            logger.warning(
                "Webhook referenced qualities the job did not request",
                extra={
                    "job_id": job.id,
                    "video_id": video.id,
                    "qualities": sorted(q.value for q in projection.unknown_qualities),
                },
            )

        variants = await self.variant_repo.list_for_video(video.id)
        write_projection(projection, video, job, variants)
        await self.session.commit()

        logger.info(
            "Applied encoding webhook",
            extra={
                "event": kind.value,
                "job_id": job.id,
                "video_id": video.id,
                "video_status": video.status,
                "job_status": job.status,
            },
        )
        return ReduceResult(True, "applied", video.status, job.status)

    async def _skip(self, reason: str, video: Video, job: EncodingJob) -> ReduceResult:
        # Read state before rollback expires the rows
        result = ReduceResult(False, reason, video.status, job.status)
        ids = {"job_id": job.id, "video_id": video.id}
        await self.session.rollback()
        logger.info("Ignored encoding webhook", extra={"reason": reason, **ids})
        return result


def _record_event(record: WebhookEventRecord) -> WebhookEvent:
    return event_from_record(record.payload)
