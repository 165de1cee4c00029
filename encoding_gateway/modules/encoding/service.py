"""Service layer for encoding jobs.

Starts encode cycles for confirmed uploads, dispatches them to the worker
through the job publisher, and reports encoding status.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from encoding_gateway.core.config import Settings, settings as default_settings
from encoding_gateway.modules.encoding.credentials import ServiceAccountCredentials, TokenIssuer
from encoding_gateway.modules.encoding.exceptions import CredentialError, EncodingError, JobStateError
from encoding_gateway.modules.encoding.models import (
    EncodingJob,
    EncodingJobStatus,
    QualityStatus,
    Video,
    VideoQuality,
    VideoStatus,
)
from encoding_gateway.modules.encoding.pubsub import JobPublisher
from encoding_gateway.modules.encoding.reducer import VideoLockRegistry, video_locks
from encoding_gateway.modules.encoding.repository import (
    EncodingJobRepository,
    QualityVariantRepository,
    VideoRepository,
)
from encoding_gateway.modules.encoding.schemas import (
    EncodingJobAudioForStt,
    EncodingJobCallback,
    EncodingJobCreate,
    EncodingJobMessage,
    EncodingJobMetadata,
    EncodingJobOutput,
    EncodingJobSource,
    EncodingJobThumbnail,
    EncodingStatusResponse,
    EncodingStatusVariant,
    QualityConfig,
    determine_qualities,
)
from encoding_gateway.modules.encoding.storage import (
    StoragePaths,
    generate_job_id,
    split_object_key,
)

logger = logging.getLogger(__name__)


def build_publisher_from_settings(config: Settings = default_settings) -> Optional[JobPublisher]:
    """Build a job publisher from configuration, or None when Pub/Sub is not configured.

    Raises:
        CredentialError: If the configured service account key is unusable
    """
    if not config.pubsub_configured:
        return None
    credentials = ServiceAccountCredentials.from_base64(config.GCP_SERVICE_ACCOUNT_KEY)
    issuer = TokenIssuer(credentials, cache_tokens=config.ENCODING_TOKEN_CACHE)
    return JobPublisher(
        issuer,
        project_id=config.GCP_PROJECT_ID,
        topic=config.GCP_PUBSUB_TOPIC,
        api_base=config.PUBSUB_API_BASE,
    )


class EncodingJobService:
    """Service for starting and tracking encode cycles."""

    def __init__(
        self,
        session: AsyncSession,
        publisher: Optional[JobPublisher] = None,
        webhook_url: str = "",
        webhook_secret: str = "",
        bucket: str = "",
        max_attempts: int = 3,
        locks: Optional[VideoLockRegistry] = None,
    ):
        self.session = session
        self.publisher = publisher
        self.webhook_url = webhook_url
        self.webhook_secret = webhook_secret
        self.bucket = bucket
        self.max_attempts = max_attempts
        self.locks = locks or video_locks
        self.video_repo = VideoRepository(session)
        self.job_repo = EncodingJobRepository(session)
        self.variant_repo = QualityVariantRepository(session)

    @classmethod
    def from_settings(
        cls,
        session: AsyncSession,
        publisher: Optional[JobPublisher] = None,
        config: Settings = default_settings,
    ) -> "EncodingJobService":
        return cls(
            session,
            publisher=publisher,
            webhook_url=config.ENCODING_WEBHOOK_URL,
            webhook_secret=config.ENCODING_WEBHOOK_SECRET,
            bucket=config.STORAGE_BUCKET,
            max_attempts=config.ENCODING_MAX_ATTEMPTS,
        )

    def build_job_message(
        self,
        job_id: str,
        video: Video,
        qualities: list[QualityConfig],
        extract_audio: bool = True,
    ) -> EncodingJobMessage:
        """Build the broker message for one encode cycle of a video."""
        raw_key = video.raw_path or StoragePaths.raw(video.id, "video.mp4")
        folder, filename = split_object_key(raw_key)
        created_at = video.created_at or datetime.now(timezone.utc)
        return EncodingJobMessage(
            job_id=job_id,
            video_id=video.id,
            source=EncodingJobSource(bucket=self.bucket, path=folder, filename=filename),
            output=EncodingJobOutput(bucket=self.bucket, base_path=StoragePaths.encoded_base(video.id)),
            qualities=qualities,
            thumbnail=EncodingJobThumbnail(path=StoragePaths.thumbnail(video.id)),
            audio_for_stt=EncodingJobAudioForStt(enabled=extract_audio),
            callback=EncodingJobCallback(webhook_url=self.webhook_url, webhook_secret=self.webhook_secret),
            metadata=EncodingJobMetadata(
                user_id=video.user_id,
                title=video.title,
                created_at=created_at.isoformat(),
            ),
        )

    async def create_encoding_job(
        self,
        video: Video,
        data: Optional[EncodingJobCreate] = None,
        attempt_number: int = 1,
    ) -> EncodingJob:
        """Start a new encode cycle for a video and dispatch it.

        The job and its variant rows are committed before publishing so that
        webhooks arriving right after dispatch always find them.

        Args:
            video: Video whose upload has been confirmed
            data: Optional quality selection and source dimensions
            attempt_number: Attempt counter of the new job

        Returns:
            The queued EncodingJob

        Raises:
            CredentialError: If no bearer token could be obtained
            PublishError: If the broker rejected the message
        """
        data = data or EncodingJobCreate()
        source_width = data.source_width or video.source_width
        source_height = data.source_height or video.source_height
        qualities = determine_qualities(source_width, source_height, data.qualities)

        job_id = generate_job_id()
        job = await self.job_repo.create(
            job_id=job_id,
            video_id=video.id,
            requested_qualities=[q.quality for q in qualities],
            attempt_number=attempt_number,
            max_attempts=self.max_attempts,
        )
        await self.variant_repo.reset_for_cycle(
            video.id,
            [q.quality for q in qualities],
            bitrates={q.quality: q.bitrate for q in qualities},
        )
        video.current_job_id = job.id
        video.status = VideoStatus.PENDING.value
        video.progress = 0
        video.last_error = None
        message = self.build_job_message(job.id, video, qualities, extract_audio=data.extract_audio)
        await self.session.commit()

        try:
            if self.publisher is None:
                raise CredentialError("Encoding job dispatch is not configured")
            message_id = await self.publisher.publish(message)
        except EncodingError as e:
            await self._record_dispatch(job.id, video.id, error=str(e))
            logger.error(
                "Encoding job dispatch failed",
                extra={"job_id": job.id, "video_id": video.id, "error": str(e)},
            )
            raise

        await self._record_dispatch(job.id, video.id, message_id=message_id)
        logger.info(
            "Encoding job queued",
            extra={
                "job_id": job.id,
                "video_id": video.id,
                "qualities": job.requested_qualities,
                "attempt": attempt_number,
            },
        )
        return job

    async def _record_dispatch(
        self,
        job_id: str,
        video_id: str,
        message_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Store the dispatch outcome without overwriting webhook-driven state."""
        now = datetime.now(timezone.utc)
        async with self.locks.lock_for(video_id):
            await self.video_repo.get_for_update(video_id)
            job = await self.job_repo.get_by_id(job_id)
            if job is None:
                await self.session.rollback()
                return
            if error is not None:
                if job.status == EncodingJobStatus.PENDING.value:
                    await self.job_repo.mark_dispatch_failed(job, error, now)
            elif job.status == EncodingJobStatus.PENDING.value:
                await self.job_repo.mark_queued(job, message_id, now)
            else:
                job.external_message_id = message_id
                job.queued_at = now
            await self.session.commit()

    async def get_job(self, job_id: str) -> Optional[EncodingJob]:
        return await self.job_repo.get_by_id(job_id)

    async def get_video(self, video_id: str) -> Optional[Video]:
        return await self.video_repo.get_by_id(video_id)

    async def retry_failed_job(self, job_id: str) -> Optional[EncodingJob]:
        """Start a new encode cycle for a failed job's video.

        Returns:
            The new job, or None if the job does not exist

        Raises:
            JobStateError: If the job is not failed, is out of attempts or
                has been superseded by a newer job
        """
        job = await self.job_repo.get_by_id(job_id)
        if job is None:
            return None
        if not job.can_retry():
            raise JobStateError(
                f"Job {job.id} cannot be retried (status {job.status}, "
                f"attempt {job.attempt_number} of {job.max_attempts})"
            )

        video = await self.video_repo.get_by_id(job.video_id)
        if video is None:
            return None
        if video.current_job_id not in (None, job.id):
            raise JobStateError(f"Job {job.id} has been superseded by {video.current_job_id}")

        logger.info(
            "Retrying encoding job",
            extra={"job_id": job.id, "video_id": video.id, "attempt": job.attempt_number + 1},
        )
        return await self.create_encoding_job(
            video,
            EncodingJobCreate(qualities=[VideoQuality(q) for q in job.requested_qualities]),
            attempt_number=job.attempt_number + 1,
        )

    async def cancel_job(self, job_id: str) -> Optional[EncodingJob]:
        """Mark a job that has not finished as cancelled.

        Later webhooks for a cancelled job are ignored. The worker is not told.

        Raises:
            JobStateError: If the job already finished
        """
        job = await self.job_repo.get_by_id(job_id)
        if job is None:
            return None

        async with self.locks.lock_for(job.video_id):
            await self.video_repo.get_for_update(job.video_id)
            job = await self.job_repo.get_by_id(job_id)
            if job.is_terminal():
                finished_status = job.status
                await self.session.rollback()
                raise JobStateError(f"Job {job_id} already finished with status {finished_status}")
            await self.job_repo.mark_cancelled(job, datetime.now(timezone.utc))
            await self.session.commit()

        logger.info("Encoding job cancelled", extra={"job_id": job.id, "video_id": job.video_id})
        return job

    async def get_encoding_status(self, video_id: str) -> Optional[EncodingStatusResponse]:
        """Get aggregate and per-variant encoding status for a video."""
        video = await self.video_repo.get_by_id(video_id)
        if video is None:
            return None

        requested = None
        if video.current_job_id:
            job = await self.job_repo.get_by_id(video.current_job_id)
            if job is not None:
                requested = set(job.requested_qualities)

        variants = [
            EncodingStatusVariant(
                quality=VideoQuality(v.quality),
                status=QualityStatus(v.status),
                progress=v.progress or 0,
                width=v.width,
                height=v.height,
                file_size=v.file_size,
                output_path=v.output_path if v.status == QualityStatus.READY.value else None,
            )
            for v in await self.variant_repo.list_for_video(video.id)
            if requested is None or v.quality in requested
        ]
        return EncodingStatusResponse(
            video_id=video.id,
            status=VideoStatus(video.status),
            overall_progress=max(0, min(100, video.progress or 0)),
            variants=variants,
            thumbnail_path=video.thumbnail_path,
            error=video.last_error,
        )
