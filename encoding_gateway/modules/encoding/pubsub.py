"""Pub/Sub publisher for encode job messages."""

import base64
import logging
from typing import Optional

import httpx

from encoding_gateway.core.metrics import JOB_PUBLISH_TOTAL
from encoding_gateway.core.tracing import create_span, cycle_attributes, record_exception
from encoding_gateway.modules.encoding.credentials import TokenIssuer
from encoding_gateway.modules.encoding.exceptions import PublishError
from encoding_gateway.modules.encoding.schemas import EncodingJobMessage

logger = logging.getLogger(__name__)

PUBSUB_API_BASE = "https://pubsub.googleapis.com/v1"


def build_publish_body(message: EncodingJobMessage) -> dict:
    """Wrap a job message in the Pub/Sub ``topics.publish`` request body."""
    return {
        "messages": [
            {
                "data": base64.b64encode(message.to_bytes()).decode("ascii"),
                "attributes": {
                    "videoId": message.video_id,
                    "jobId": message.job_id,
                },
            }
        ]
    }


class JobPublisher:
    """Publishes encode jobs to one Pub/Sub topic.

    Each call obtains its own bearer token from the issuer. Failed publishes
    are not retried here; the caller decides whether to retry.
    """

    def __init__(
        self,
        issuer: TokenIssuer,
        project_id: str,
        topic: str,
        api_base: str = PUBSUB_API_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.issuer = issuer
        self.project_id = project_id
        self.topic = topic
        self.api_base = api_base.rstrip("/")
        self.transport = transport
        self.timeout = timeout

    @property
    def publish_url(self) -> str:
        return f"{self.api_base}/projects/{self.project_id}/topics/{self.topic}:publish"

    async def publish(self, message: EncodingJobMessage) -> str:
        """Publish one encode job message.

        Args:
            message: Fully formed job message

        Returns:
            Broker-assigned message ID (for audit only)

        Raises:
            CredentialError: If no bearer token could be obtained
            PublishError: If the broker rejects the message or returns no message ID
        """
        access_token = await self.issuer.get_access_token()

        with create_span(
            "encoding.publish_job",
            attributes={
                "pubsub.topic": self.topic,
                **cycle_attributes(message.job_id, message.video_id),
            },
        ):
            try:
                message_id = await self._send(access_token, message)
            except PublishError as e:
                JOB_PUBLISH_TOTAL.labels(outcome="failure").inc()
                record_exception(e)
                logger.error(
                    "Failed to publish encoding job",
                    extra={
                        "job_id": message.job_id,
                        "video_id": message.video_id,
                        "status_code": e.status_code,
                        "error": str(e),
                    },
                )
                raise

        JOB_PUBLISH_TOTAL.labels(outcome="success").inc()
        logger.info(
            "Published encoding job",
            extra={"job_id": message.job_id, "video_id": message.video_id, "message_id": message_id},
        )
        return message_id

    async def _send(self, access_token: str, message: EncodingJobMessage) -> str:
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.post(
                    self.publish_url,
                    headers={"Authorization": f"Bearer {access_token}"},
                    json=build_publish_body(message),
                )
        except httpx.HTTPError as e:
            raise PublishError(f"Failed to publish message: {e}") from e

        if not response.is_success:
            raise PublishError(
                f"Failed to publish message: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            message_ids = response.json().get("messageIds") or []
        except (ValueError, AttributeError):
            message_ids = []

        if not isinstance(message_ids, list) or not message_ids or not isinstance(message_ids[0], str):
            raise PublishError(
                "Broker response did not contain a message ID",
                status_code=response.status_code,
                body=response.text,
            )
        return message_ids[0]
