"""Exceptions raised by the encoding module."""

from enum import Enum
from typing import Any, Optional


class EncodingError(Exception):
    """Base class for encoding pipeline errors."""


class CredentialError(EncodingError):
    """The service account key could not be loaded or the token exchange failed."""


class PublishError(EncodingError):
    """The broker rejected an encode job message."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class SignatureFailure(str, Enum):
    """Why a webhook signature was rejected."""
    MISSING = "missing"
    STALE = "stale"
    MISMATCH = "mismatch"


class SignatureError(EncodingError):
    """A webhook request failed signature verification."""

    def __init__(self, reason: SignatureFailure, message: Optional[str] = None):
        super().__init__(message or f"Webhook signature {reason.value}")
        self.reason = reason


class ValidationError(EncodingError):
    """A verified webhook body is not one of the known event shapes."""

    def __init__(self, message: str, errors: Optional[list[dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


class StateConflictError(EncodingError):
    """A webhook event references a job or video this service does not track."""

    def __init__(self, message: str, job_id: Optional[str] = None, video_id: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id
        self.video_id = video_id


class JobStateError(EncodingError):
    """A job operation is not allowed in the job's current state."""
