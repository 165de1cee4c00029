"""Object storage key conventions for encoding inputs and outputs.

Storage itself is handled by the upload service; this module only names the
keys that the job message and the worker agree on.
"""

import secrets

from encoding_gateway.modules.encoding.models import VideoQuality


class StoragePaths:
    """Object keys for one video's raw upload and encoded outputs."""

    @staticmethod
    def raw(video_id: str, filename: str) -> str:
        return f"videos/raw/{video_id}/{filename}"

    @staticmethod
    def encoded_base(video_id: str) -> str:
        return f"videos/encoded/{video_id}"

    @staticmethod
    def encoded(video_id: str, quality: VideoQuality) -> str:
        return f"videos/encoded/{video_id}/{VideoQuality(quality).value}.mp4"

    @staticmethod
    def thumbnail(video_id: str) -> str:
        return f"videos/thumbnails/{video_id}.jpg"

    @staticmethod
    def audio(video_id: str) -> str:
        return f"videos/audio/{video_id}/audio_for_stt.wav"


def split_object_key(key: str) -> tuple[str, str]:
    """Split an object key into (folder, filename)."""
    folder, _, filename = key.rpartition("/")
    return folder, filename or "video.mp4"


def generate_job_id() -> str:
    return f"job_{secrets.token_hex(16)}"


def generate_variant_id() -> str:
    return f"var_{secrets.token_hex(16)}"
