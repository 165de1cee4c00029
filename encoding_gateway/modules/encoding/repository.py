"""Repository for encoding state database operations."""

from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from encoding_gateway.modules.encoding.models import (
    QUALITY_ORDER,
    EncodingJob,
    EncodingJobStatus,
    QualityStatus,
    QualityVariant,
    Video,
    VideoQuality,
    VideoStatus,
    WebhookEventRecord,
)
from encoding_gateway.modules.encoding.storage import StoragePaths, generate_variant_id


class VideoRepository:
    """Repository for Video operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        video_id: str,
        user_id: str,
        title: str,
        raw_path: Optional[str] = None,
        visibility: Optional[str] = None,
        status: VideoStatus = VideoStatus.PENDING,
    ) -> Video:
        """Create a video row for a confirmed upload."""
        video = Video(
            id=video_id,
            user_id=user_id,
            title=title,
            raw_path=raw_path,
            status=status.value,
            progress=0,
        )
        if visibility:
            video.visibility = visibility
        self.session.add(video)
        await self.session.flush()
        return video

    async def get_by_id(self, video_id: str) -> Optional[Video]:
        result = await self.session.execute(
            select(Video)
            .where(Video.id == video_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, video_id: str) -> Optional[Video]:
        """Load a video and take its row lock for the rest of the transaction."""
        result = await self.session.execute(
            select(Video)
            .where(Video.id == video_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()


class EncodingJobRepository:
    """Repository for EncodingJob operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        job_id: str,
        video_id: str,
        requested_qualities: list[VideoQuality],
        attempt_number: int = 1,
        max_attempts: int = 3,
    ) -> EncodingJob:
        job = EncodingJob(
            id=job_id,
            video_id=video_id,
            requested_qualities=[VideoQuality(q).value for q in requested_qualities],
            status=EncodingJobStatus.PENDING.value,
            progress=0,
            attempt_number=attempt_number,
            max_attempts=max_attempts,
        )
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: str) -> Optional[EncodingJob]:
        result = await self.session.execute(
            select(EncodingJob)
            .where(EncodingJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_video(self, video_id: str) -> list[EncodingJob]:
        result = await self.session.execute(
            select(EncodingJob)
            .where(EncodingJob.video_id == video_id)
            .order_by(EncodingJob.created_at.desc(), EncodingJob.attempt_number.desc())
        )
        return list(result.scalars().all())

    async def mark_queued(self, job: EncodingJob, message_id: str, queued_at: datetime) -> None:
        job.status = EncodingJobStatus.QUEUED.value
        job.external_message_id = message_id
        job.queued_at = queued_at

    async def mark_dispatch_failed(self, job: EncodingJob, error: str, failed_at: datetime) -> None:
        job.status = EncodingJobStatus.FAILED.value
        job.error_code = "dispatch_failed"
        job.last_error = error
        job.completed_at = failed_at

    async def mark_cancelled(self, job: EncodingJob, cancelled_at: datetime) -> None:
        job.status = EncodingJobStatus.CANCELLED.value
        job.completed_at = cancelled_at


class QualityVariantRepository:
    """Repository for QualityVariant operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_for_video(self, video_id: str) -> list[QualityVariant]:
        result = await self.session.execute(
            select(QualityVariant)
            .where(QualityVariant.video_id == video_id)
            .execution_options(populate_existing=True)
        )
        variants = list(result.scalars().all())
        variants.sort(key=lambda v: QUALITY_ORDER[VideoQuality(v.quality)])
        return variants

    async def reset_for_cycle(
        self,
        video_id: str,
        qualities: list[VideoQuality],
        bitrates: Optional[dict[VideoQuality, int]] = None,
    ) -> list[QualityVariant]:
        """Prepare one variant row per requested quality for a new encode cycle.

        Existing rows are reset to ``pending``; rows for qualities that are not
        requested this cycle are left untouched.
        """
        existing = {VideoQuality(v.quality): v for v in await self.list_for_video(video_id)}
        variants = []
        for quality in qualities:
            quality = VideoQuality(quality)
            variant = existing.get(quality)
            if variant is None:
                variant = QualityVariant(
                    id=generate_variant_id(),
                    video_id=video_id,
                    quality=quality.value,
                )
                self.session.add(variant)
            variant.status = QualityStatus.PENDING.value
            variant.progress = 0
            variant.width = None
            variant.height = None
            variant.file_size = None
            variant.completed_at = None
            variant.bitrate = (bitrates or {}).get(quality)
            variant.output_path = StoragePaths.encoded(video_id, quality)
            variants.append(variant)
        await self.session.flush()
        return variants


class WebhookEventRepository:
    """Repository for the applied-webhook ledger."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, job_id: str, event_type: str, quality_key: str) -> Optional[WebhookEventRecord]:
        result = await self.session.execute(
            select(WebhookEventRecord).where(
                WebhookEventRecord.job_id == job_id,
                WebhookEventRecord.event_type == event_type,
                WebhookEventRecord.quality_key == quality_key,
            )
        )
        return result.scalar_one_or_none()

    async def add(
        self,
        job_id: str,
        video_id: str,
        event_type: str,
        quality_key: str,
        event_time_us: int,
        payload: dict,
    ) -> WebhookEventRecord:
        record = WebhookEventRecord(
            job_id=job_id,
            video_id=video_id,
            event_type=event_type,
            quality_key=quality_key,
            event_time_us=event_time_us,
            payload=payload,
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def list_for_job(self, job_id: str) -> list[WebhookEventRecord]:
        result = await self.session.execute(
            select(WebhookEventRecord).where(WebhookEventRecord.job_id == job_id)
        )
        return list(result.scalars().all())
