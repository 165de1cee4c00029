"""Property-based tests for encode job publishing.

**Feature: encoding-gateway, Property 3: Job Dispatch Contract**
**Validates: job messages are wrapped, base64-encoded and attributed the way
the worker expects, and broker failures surface as PublishError**
"""

import base64
import json

import httpx
import pytest
from hypothesis import given, settings, strategies as st

from encoding_gateway.modules.encoding.exceptions import CredentialError, PublishError
from encoding_gateway.modules.encoding.models import VideoQuality
from encoding_gateway.modules.encoding.pubsub import JobPublisher, build_publish_body
from encoding_gateway.modules.encoding.schemas import (
    EncodingJobCallback,
    EncodingJobMessage,
    EncodingJobMetadata,
    EncodingJobOutput,
    EncodingJobSource,
    EncodingJobThumbnail,
    determine_qualities,
)


class StaticIssuer:
    """Stands in for TokenIssuer with a fixed token."""

    def __init__(self, token: str = "ya29.static", error: Exception | None = None):
        self.token = token
        self.error = error
        self.calls = 0

    async def get_access_token(self) -> str:
        self.calls += 1
        if self.error:
            raise self.error
        return self.token


def make_message(job_id: str = "job_abc", video_id: str = "vid_123", title: str | None = "Holiday") -> EncodingJobMessage:
    return EncodingJobMessage(
        job_id=job_id,
        video_id=video_id,
        source=EncodingJobSource(bucket="media", path=f"videos/raw/{video_id}", filename="clip.mp4"),
        output=EncodingJobOutput(bucket="media", base_path=f"videos/encoded/{video_id}"),
        qualities=determine_qualities(1280, 720),
        thumbnail=EncodingJobThumbnail(path=f"videos/thumbnails/{video_id}.jpg"),
        callback=EncodingJobCallback(webhook_url="https://api.example.com/api/v1/encoding/webhook", webhook_secret="s3cret"),
        metadata=EncodingJobMetadata(user_id="user_1", title=title, created_at="2026-01-01T00:00:00+00:00"),
    )


def broker_transport(captured: list, status_code: int = 200, json_body=None, text=None) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        if text is not None:
            return httpx.Response(status_code, text=text)
        return httpx.Response(status_code, json=json_body if json_body is not None else {"messageIds": ["1234567890"]})
    return httpx.MockTransport(handler)


id_strategy = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789_", min_size=1, max_size=40)


class TestPublishBody:
    """Property tests for the broker request body."""

    @given(job_id=id_strategy, video_id=id_strategy, title=st.one_of(st.none(), st.text(st.characters(blacklist_categories=("Cs",)), max_size=80)))
    @settings(max_examples=100)
    def test_data_decodes_to_camel_case_job_message(self, job_id: str, video_id: str, title) -> None:
        """**Feature: encoding-gateway, Property 3: Job Dispatch Contract**

        For any job, the published data SHALL be the base64 of the camelCase
        job JSON, and the attributes SHALL carry videoId and jobId.
        """
        body = build_publish_body(make_message(job_id, video_id, title))

        assert len(body["messages"]) == 1
        message = body["messages"][0]
        assert message["attributes"] == {"videoId": video_id, "jobId": job_id}

        decoded = json.loads(base64.b64decode(message["data"]))
        assert decoded["jobId"] == job_id
        assert decoded["videoId"] == video_id
        assert decoded["output"]["basePath"] == f"videos/encoded/{video_id}"
        assert decoded["callback"]["webhookSecret"] == "s3cret"
        assert decoded["audioForStt"] == {"enabled": False}
        if title is None:
            assert "title" not in decoded["metadata"]
        else:
            assert decoded["metadata"]["title"] == title

    def test_qualities_carry_rendition_settings(self) -> None:
        decoded = json.loads(base64.b64decode(build_publish_body(make_message())["messages"][0]["data"]))
        assert [q["quality"] for q in decoded["qualities"]] == ["720p", "480p", "360p", "240p"]
        assert decoded["qualities"][0] == {
            "quality": "720p",
            "width": 1280,
            "height": 720,
            "bitrate": 2500,
            "audioBitrate": 128,
        }


class TestJobPublisher:
    """Tests for publishing through the broker REST API."""

    @pytest.mark.asyncio
    async def test_publish_returns_first_message_id(self) -> None:
        captured: list[httpx.Request] = []
        publisher = JobPublisher(StaticIssuer(), "media-project", "encode-jobs", transport=broker_transport(captured))

        message_id = await publisher.publish(make_message())

        assert message_id == "1234567890"
        request = captured[0]
        assert request.method == "POST"
        assert str(request.url) == "https://pubsub.googleapis.com/v1/projects/media-project/topics/encode-jobs:publish"
        assert request.headers["authorization"] == "Bearer ya29.static"
        assert json.loads(request.content) == build_publish_body(make_message())

    @pytest.mark.asyncio
    async def test_each_publish_obtains_a_token(self) -> None:
        issuer = StaticIssuer()
        publisher = JobPublisher(issuer, "p", "t", transport=broker_transport([]))

        await publisher.publish(make_message())
        await publisher.publish(make_message())

        assert issuer.calls == 2

    @pytest.mark.asyncio
    async def test_server_error_raises_publish_error_with_status(self) -> None:
        """**Feature: encoding-gateway, Property 3: Job Dispatch Contract**

        A broker 500 SHALL raise PublishError and yield no message ID.
        """
        publisher = JobPublisher(StaticIssuer(), "p", "t", transport=broker_transport([], 500, text="backend error"))

        with pytest.raises(PublishError) as exc_info:
            await publisher.publish(make_message())

        assert exc_info.value.status_code == 500
        assert exc_info.value.body == "backend error"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "json_body",
        [{}, {"messageIds": []}, {"messageIds": [123]}, ["1"], {"messageIds": "msg-123"}, {"messageIds": {"a": 1}}],
    )
    async def test_missing_message_id_raises_publish_error(self, json_body) -> None:
        publisher = JobPublisher(StaticIssuer(), "p", "t", transport=broker_transport([], 200, json_body))
        with pytest.raises(PublishError):
            await publisher.publish(make_message())

    @pytest.mark.asyncio
    async def test_token_failure_propagates_without_publishing(self) -> None:
        captured: list[httpx.Request] = []
        issuer = StaticIssuer(error=CredentialError("Failed to get access token: invalid_grant"))
        publisher = JobPublisher(issuer, "p", "t", transport=broker_transport(captured))

        with pytest.raises(CredentialError):
            await publisher.publish(make_message())
        assert captured == []

    def test_custom_api_base_is_used(self) -> None:
        publisher = JobPublisher(StaticIssuer(), "p", "t", api_base="http://localhost:8085/v1/")
        assert publisher.publish_url == "http://localhost:8085/v1/projects/p/topics/t:publish"


def test_requested_quality_subset_is_kept() -> None:
    message = make_message()
    narrowed = message.model_copy(update={"qualities": determine_qualities(1920, 1080, [VideoQuality.Q480P])})
    assert [q.quality for q in narrowed.qualities] == [VideoQuality.Q480P]
