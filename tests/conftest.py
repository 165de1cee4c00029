"""Shared fixtures for encoding tests."""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from encoding_gateway.core.database import Base
from encoding_gateway.modules.encoding.events import WebhookEvent, event_from_record, event_to_record
from encoding_gateway.modules.encoding.models import (
    EncodingJob,
    QualityVariant,
    Video,
    VideoQuality,
    WebhookEventRecord,
)
from encoding_gateway.modules.encoding.repository import (
    EncodingJobRepository,
    QualityVariantRepository,
    VideoRepository,
)
from encoding_gateway.modules.encoding.storage import generate_job_id

BASE_TIME = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


# ==================== Database ====================

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'encoding.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


async def create_cycle(
    session_maker: async_sessionmaker[AsyncSession],
    video_id: str,
    qualities: list[VideoQuality],
    queued: bool = True,
) -> str:
    """Create a video with one encode cycle and return the job ID."""
    async with session_maker() as session:
        video = await VideoRepository(session).create(
            video_id=video_id,
            user_id="user_1",
            title=f"Video {video_id}",
            raw_path=f"videos/raw/{video_id}/clip.mp4",
        )
        job = await EncodingJobRepository(session).create(
            job_id=generate_job_id(),
            video_id=video.id,
            requested_qualities=qualities,
        )
        await QualityVariantRepository(session).reset_for_cycle(video.id, qualities)
        video.current_job_id = job.id
        if queued:
            await EncodingJobRepository(session).mark_queued(job, "msg-1", BASE_TIME)
        await session.commit()
        return job.id


@pytest.fixture
def seed_cycle(session_maker):
    async def _seed(video_id: str, qualities: list[VideoQuality], queued: bool = True) -> str:
        return await create_cycle(session_maker, video_id, qualities, queued=queued)
    return _seed


_VOLATILE_COLUMNS = {
    "id",
    "video_id",
    "job_id",
    "current_job_id",
    "created_at",
    "updated_at",
    "received_at",
}


def _row_dict(row: Any, include_volatile: bool, video_id: str) -> dict[str, Any]:
    values = {}
    for column in row.__table__.columns:
        if not include_volatile and column.key in _VOLATILE_COLUMNS:
            continue
        value = getattr(row, column.key)
        if not include_volatile and isinstance(value, str):
            # Lets states of different videos be compared
            value = value.replace(video_id, "<video>")
        values[column.key] = value
    return values


async def snapshot_state(
    session_maker: async_sessionmaker[AsyncSession],
    video_id: str,
    include_volatile: bool = False,
) -> dict[str, Any]:
    """Read the persisted state of one video, its jobs, variants and ledger."""
    async with session_maker() as session:
        video = (await session.execute(select(Video).where(Video.id == video_id))).scalar_one()
        jobs = (await session.execute(
            select(EncodingJob).where(EncodingJob.video_id == video_id).order_by(EncodingJob.id)
        )).scalars().all()
        variants = (await session.execute(
            select(QualityVariant).where(QualityVariant.video_id == video_id).order_by(QualityVariant.quality)
        )).scalars().all()
        ledger = (await session.execute(
            select(WebhookEventRecord)
            .where(WebhookEventRecord.video_id == video_id)
            .order_by(WebhookEventRecord.event_type, WebhookEventRecord.quality_key)
        )).scalars().all()

        snapshot = {
            "video": _row_dict(video, include_volatile, video_id),
            "jobs": [_row_dict(j, include_volatile, video_id) for j in jobs],
            "variants": [_row_dict(v, include_volatile, video_id) for v in variants],
        }
        if include_volatile:
            snapshot["ledger"] = [_row_dict(r, True, video_id) for r in ledger]
        return snapshot


@pytest.fixture
def read_state(session_maker):
    async def _read(video_id: str, include_volatile: bool = False) -> dict[str, Any]:
        return await snapshot_state(session_maker, video_id, include_volatile=include_volatile)
    return _read


# ==================== Webhook events ====================

class EventFactory:
    """Builds wire-format webhook payloads for one job."""

    def __init__(self, job_id: str, video_id: str):
        self.job_id = job_id
        self.video_id = video_id

    def payload(self, kind: str, offset: float, data: dict[str, Any]) -> dict[str, Any]:
        return {
            "event": kind,
            "jobId": self.job_id,
            "videoId": self.video_id,
            "timestamp": (BASE_TIME + timedelta(seconds=offset)).isoformat(),
            "data": data,
        }

    def body(self, kind: str, offset: float, data: dict[str, Any]) -> bytes:
        return json.dumps(self.payload(kind, offset, data)).encode("utf-8")

    def event(self, kind: str, offset: float, data: dict[str, Any]) -> WebhookEvent:
        return event_from_record(self.payload(kind, offset, data))

    @staticmethod
    def wire(event: WebhookEvent) -> bytes:
        """Serialize an event the way the worker posts it."""
        return json.dumps(event_to_record(event)).encode("utf-8")

    def started(self, offset: float = 0, width: int = 1920, height: int = 1080) -> WebhookEvent:
        return self.event("job.started", offset, {
            "sourceWidth": width,
            "sourceHeight": height,
            "duration": 120.4,
            "codec": "h264",
            "bitrate": 8000,
            "fps": 30,
        })

    def progress(self, offset: float, progress: float, quality: Optional[str] = None) -> WebhookEvent:
        data: dict[str, Any] = {"progress": progress, "message": f"Encoding {quality or 'all'}"}
        if quality:
            data["quality"] = quality
        return self.event("job.progress", offset, data)

    def quality_completed(self, offset: float, quality: str, file_size: int = 1_000_000) -> WebhookEvent:
        width, height = {
            "1080p": (1920, 1080),
            "720p": (1280, 720),
            "480p": (854, 480),
            "360p": (640, 360),
            "240p": (426, 240),
        }[quality]
        return self.event("quality.completed", offset, {
            "quality": quality,
            "width": width,
            "height": height,
            "bitrate": 2500,
            "fileSize": file_size,
            "r2Path": f"videos/encoded/{self.video_id}/{quality}.mp4",
        })

    def completed(self, offset: float, qualities: list[str], duration: float = 120.4) -> WebhookEvent:
        return self.event("job.completed", offset, {
            "duration": duration,
            "qualities": [
                {
                    "quality": q,
                    "r2Path": f"videos/encoded/{self.video_id}/{q}.mp4",
                    "fileSize": 1_000_000,
                }
                for q in qualities
            ],
        })

    def failed(self, offset: float, quality: Optional[str] = None, message: str = "ffmpeg exited with 1") -> WebhookEvent:
        data: dict[str, Any] = {
            "errorCode": "ENCODE_FAILED",
            "errorMessage": message,
            "errorDetails": "stderr tail",
        }
        if quality:
            data["quality"] = quality
        return self.event("job.failed", offset, data)

    def thumbnail(self, offset: float) -> WebhookEvent:
        return self.event("thumbnail.generated", offset, {
            "r2Path": f"videos/thumbnails/{self.video_id}.jpg",
            "width": 1280,
            "height": 720,
        })

    def audio(self, offset: float) -> WebhookEvent:
        return self.event("audio.extracted", offset, {
            "outputPath": f"videos/audio/{self.video_id}/audio_for_stt.wav",
            "fileSizeBytes": 3_840_000,
            "durationSeconds": 120.4,
            "format": "wav",
            "sampleRate": 16000,
            "channels": 1,
            "bitDepth": 16,
        })


@pytest.fixture
def event_factory():
    return EventFactory


# ==================== Service account keys ====================

@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_key_pem(rsa_private_key) -> str:
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


@pytest.fixture(scope="session")
def public_key_pem(rsa_private_key) -> str:
    return rsa_private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")


@pytest.fixture(scope="session")
def service_account_info(private_key_pem) -> dict[str, str]:
    return {
        "type": "service_account",
        "project_id": "media-project",
        "private_key_id": "key-123",
        "private_key": private_key_pem,
        "client_email": "encoder@media-project.iam.gserviceaccount.com",
        "token_uri": "https://oauth2.googleapis.com/token",
    }
