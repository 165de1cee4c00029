"""Service account token issuance for outbound broker calls.

Builds an RS256-signed JWT assertion from a service account key and exchanges
it at the OAuth token endpoint for a short-lived bearer token.
"""

import base64
import binascii
import json
import logging
import time
from typing import Callable, Optional

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwt
from jose.exceptions import JOSEError
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from encoding_gateway.core.metrics import TOKEN_EXCHANGE_TOTAL
from encoding_gateway.core.tracing import create_span, record_exception
from encoding_gateway.modules.encoding.exceptions import CredentialError

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
PUBSUB_SCOPE = "https://www.googleapis.com/auth/pubsub"
JWT_BEARER_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"

ASSERTION_LIFETIME_SECONDS = 3600
# Cached tokens are refreshed this long before they expire
TOKEN_REFRESH_MARGIN_SECONDS = 60


class ServiceAccountCredentials(BaseModel):
    """The fields of a service account key file used for token issuance."""

    private_key_id: str
    private_key: str
    client_email: str
    token_uri: str = GOOGLE_TOKEN_URI
    project_id: Optional[str] = None

    @classmethod
    def from_json(cls, raw: str | bytes) -> "ServiceAccountCredentials":
        """Parse a service account key file.

        Raises:
            CredentialError: If the key file is not valid JSON or lacks fields
        """
        try:
            return cls.model_validate(json.loads(raw))
        except (ValueError, PydanticValidationError) as e:
            raise CredentialError(f"Invalid service account key: {e}") from e

    @classmethod
    def from_base64(cls, encoded: str) -> "ServiceAccountCredentials":
        """Parse a base64-encoded service account key file, as stored in configuration."""
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CredentialError("Service account key is not valid base64") from e
        return cls.from_json(raw)


class TokenIssuer:
    """Mints bearer tokens for one service account and scope.

    Every call to :meth:`get_access_token` performs a fresh exchange unless
    ``cache_tokens`` is enabled, in which case a token is reused until shortly
    before it expires.
    """

    def __init__(
        self,
        credentials: ServiceAccountCredentials,
        scope: str = PUBSUB_SCOPE,
        cache_tokens: bool = False,
        clock: Callable[[], float] = time.time,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.credentials = credentials
        self.scope = scope
        self.cache_tokens = cache_tokens
        self.clock = clock
        self.transport = transport
        self.timeout = timeout
        self._cached_token: Optional[str] = None
        self._cached_until: float = 0.0

    def _load_private_key(self) -> str:
        """Check that the PEM key loads as an RSA private key and return it."""
        pem = self.credentials.private_key
        try:
            key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
        except (ValueError, TypeError) as e:
            raise CredentialError(f"Unable to load service account private key: {e}") from e
        if not isinstance(key, rsa.RSAPrivateKey):
            raise CredentialError("Service account private key is not an RSA key")
        return pem

    def build_claims(self, now: Optional[int] = None) -> dict:
        issued_at = int(self.clock()) if now is None else int(now)
        return {
            "iss": self.credentials.client_email,
            "sub": self.credentials.client_email,
            "aud": self.credentials.token_uri,
            "scope": self.scope,
            "iat": issued_at,
            "exp": issued_at + ASSERTION_LIFETIME_SECONDS,
        }

    def build_assertion(self, now: Optional[int] = None) -> str:
        """Build the compact RS256-signed JWT assertion.

        Args:
            now: Issue time in Unix seconds (defaults to the issuer's clock)

        Returns:
            Compact JWS ``header.claims.signature``

        Raises:
            CredentialError: If the private key cannot be loaded or used
        """
        pem = self._load_private_key()
        try:
            return jwt.encode(
                self.build_claims(now),
                pem,
                algorithm="RS256",
                headers={"kid": self.credentials.private_key_id},
            )
        except JOSEError as e:
            raise CredentialError(f"Unable to sign token assertion: {e}") from e

    async def get_access_token(self) -> str:
        """Exchange a fresh assertion for a bearer access token.

        Raises:
            CredentialError: If signing fails or the token endpoint rejects the assertion
        """
        now = self.clock()
        if self.cache_tokens and self._cached_token and now < self._cached_until:
            return self._cached_token

        with create_span(
            "encoding.token_exchange",
            attributes={"token.issuer": self.credentials.client_email, "token.scope": self.scope},
        ):
            try:
                token, expires_in = await self._exchange(self.build_assertion(int(now)))
            except CredentialError as e:
                TOKEN_EXCHANGE_TOTAL.labels(outcome="failure").inc()
                record_exception(e)
                logger.warning(
                    "Service account token exchange failed",
                    extra={"client_email": self.credentials.client_email, "error": str(e)},
                )
                raise

        TOKEN_EXCHANGE_TOTAL.labels(outcome="success").inc()
        if self.cache_tokens:
            self._cached_token = token
            self._cached_until = now + expires_in - TOKEN_REFRESH_MARGIN_SECONDS
        return token

    async def _exchange(self, assertion: str) -> tuple[str, int]:
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.post(
                    self.credentials.token_uri,
                    data={"grant_type": JWT_BEARER_GRANT_TYPE, "assertion": assertion},
                )
        except httpx.HTTPError as e:
            raise CredentialError(f"Failed to get access token: {e}") from e

        if not response.is_success:
            raise CredentialError(f"Failed to get access token: {response.text}")

        try:
            data = response.json()
        except ValueError as e:
            raise CredentialError(f"Failed to get access token: {response.text}") from e

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise CredentialError(f"Failed to get access token: {response.text}")

        expires_in = data.get("expires_in")
        if not isinstance(expires_in, int):
            expires_in = ASSERTION_LIFETIME_SECONDS
        return token, expires_in
