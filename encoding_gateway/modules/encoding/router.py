"""API routes for the encoding module.

The webhook route is called by the encoding worker; the job and status
routes are called by the upload service and the dashboard.
"""

import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from encoding_gateway.core.config import Settings, settings
from encoding_gateway.core.database import get_session
from encoding_gateway.core.logging import log_error, log_warning
from encoding_gateway.core.metrics import WEBHOOK_EVENTS_TOTAL, WEBHOOK_REJECTIONS_TOTAL
from encoding_gateway.modules.encoding.events import event_type, parse_webhook_event
from encoding_gateway.modules.encoding.exceptions import (
    CredentialError,
    EncodingError,
    JobStateError,
    SignatureError,
    StateConflictError,
    ValidationError,
)
from encoding_gateway.modules.encoding.pubsub import JobPublisher
from encoding_gateway.modules.encoding.reducer import EncodingStateReducer
from encoding_gateway.modules.encoding.schemas import (
    EncodingJobCreate,
    EncodingJobResponse,
    EncodingStatusResponse,
    WebhookAck,
)
from encoding_gateway.modules.encoding.service import (
    EncodingJobService,
    build_publisher_from_settings,
)
from encoding_gateway.modules.encoding.signature import SIGNATURE_HEADER, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/encoding", tags=["encoding"])

DISPATCH_FAILED_DETAIL = "Failed to dispatch encoding job"


def get_settings() -> Settings:
    return settings


@lru_cache
def _cached_publisher() -> Optional[JobPublisher]:
    return build_publisher_from_settings(settings)


def get_job_publisher() -> Optional[JobPublisher]:
    try:
        return _cached_publisher()
    except CredentialError as e:
        log_error(logger, "Encoding publisher could not be configured", exception=e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=DISPATCH_FAILED_DETAIL)


def get_encoding_service(
    session: AsyncSession = Depends(get_session),
    config: Settings = Depends(get_settings),
) -> EncodingJobService:
    return EncodingJobService.from_settings(session, config=config)


def get_dispatching_service(
    session: AsyncSession = Depends(get_session),
    publisher: Optional[JobPublisher] = Depends(get_job_publisher),
    config: Settings = Depends(get_settings),
) -> EncodingJobService:
    return EncodingJobService.from_settings(session, publisher=publisher, config=config)


# ==================== Webhook ====================

@router.post("/webhook", response_model=WebhookAck)
async def receive_encoding_webhook(
    request: Request,
    signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
    session: AsyncSession = Depends(get_session),
    config: Settings = Depends(get_settings),
) -> WebhookAck:
    """Receive a signed status event from the encoding worker.

    The signature is checked against the exact request bytes before the body
    is parsed. Events that reference unknown jobs, and failures while
    applying an event, are acknowledged with ``success: false`` so the worker
    keeps delivering other events.
    """
    raw_body = await request.body()

    if not config.ENCODING_WEBHOOK_SECRET:
        log_error(logger, "Encoding webhook secret is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification is not configured",
        )

    try:
        verify_signature(
            raw_body,
            signature,
            config.ENCODING_WEBHOOK_SECRET,
            tolerance=config.WEBHOOK_TOLERANCE_SECONDS,
        )
    except SignatureError as e:
        WEBHOOK_REJECTIONS_TOTAL.labels(reason=e.reason.value).inc()
        log_warning(logger, "Rejected encoding webhook signature", reason=e.reason.value)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    try:
        event = parse_webhook_event(raw_body)
    except ValidationError as e:
        WEBHOOK_REJECTIONS_TOTAL.labels(reason="invalid").inc()
        log_warning(logger, "Rejected invalid encoding webhook payload", errors=e.errors)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(e), "errors": e.errors},
        )

    kind = event_type(event).value
    ack = WebhookAck(success=True, event=kind, job_id=event.job_id, video_id=event.video_id)

    try:
        result = await EncodingStateReducer(session).apply(event)
    except StateConflictError as e:
        WEBHOOK_EVENTS_TOTAL.labels(event=kind, outcome="conflict").inc()
        log_warning(
            logger,
            "Ignored encoding webhook for untracked job",
            event=kind,
            job_id=event.job_id,
            video_id=event.video_id,
            error=str(e),
        )
        return ack.model_copy(update={"success": False, "applied": False, "error": str(e)})
    except Exception as e:
        WEBHOOK_EVENTS_TOTAL.labels(event=kind, outcome="error").inc()
        log_error(
            logger,
            "Failed to apply encoding webhook",
            exception=e,
            event=kind,
            job_id=event.job_id,
            video_id=event.video_id,
        )
        return ack.model_copy(
            update={"success": False, "applied": False, "error": "Failed to apply event"}
        )

    WEBHOOK_EVENTS_TOTAL.labels(event=kind, outcome=result.reason).inc()
    return ack.model_copy(update={"applied": result.applied})


# ==================== Jobs ====================

@router.post(
    "/videos/{video_id}/jobs",
    response_model=EncodingJobResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_encoding_job(
    video_id: str,
    data: Optional[EncodingJobCreate] = None,
    service: EncodingJobService = Depends(get_dispatching_service),
) -> EncodingJobResponse:
    """Start an encode cycle for a confirmed upload."""
    video = await service.get_video(video_id)
    if not video:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")

    try:
        job = await service.create_encoding_job(video, data)
    except EncodingError as e:
        log_error(logger, "Encoding job dispatch failed", exception=e, video_id=video_id)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=DISPATCH_FAILED_DETAIL)
    return EncodingJobResponse.model_validate(job)


@router.get("/jobs/{job_id}", response_model=EncodingJobResponse)
async def get_encoding_job(
    job_id: str,
    service: EncodingJobService = Depends(get_encoding_service),
) -> EncodingJobResponse:
    job = await service.get_job(job_id)
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Encoding job not found")
    return EncodingJobResponse.model_validate(job)


@router.post(
    "/jobs/{job_id}/retry",
    response_model=EncodingJobResponse,
    status_code=status.HTTP_201_CREATED,
)
async def retry_encoding_job(
    job_id: str,
    service: EncodingJobService = Depends(get_dispatching_service),
) -> EncodingJobResponse:
    """Start a new encode cycle for a failed job."""
    try:
        job = await service.retry_failed_job(job_id)
    except JobStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except EncodingError as e:
        log_error(logger, "Encoding job retry dispatch failed", exception=e, job_id=job_id)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=DISPATCH_FAILED_DETAIL)

    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Encoding job not found")
    return EncodingJobResponse.model_validate(job)


@router.post("/jobs/{job_id}/cancel", response_model=EncodingJobResponse)
async def cancel_encoding_job(
    job_id: str,
    service: EncodingJobService = Depends(get_encoding_service),
) -> EncodingJobResponse:
    try:
        job = await service.cancel_job(job_id)
    except JobStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Encoding job not found")
    return EncodingJobResponse.model_validate(job)


# ==================== Status ====================

@router.get("/videos/{video_id}/status", response_model=EncodingStatusResponse)
async def get_encoding_status(
    video_id: str,
    service: EncodingJobService = Depends(get_encoding_service),
) -> EncodingStatusResponse:
    """Get aggregate and per-variant encoding status for a video."""
    result = await service.get_encoding_status(video_id)
    if not result:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")
    return result
