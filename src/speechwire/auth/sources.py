"""Token sources: the sign/exchange capabilities behind CredentialProvider.

- JwtSigner: signs claim sets with a service-account private key
- SelfSignedJwtSource: the signed JWT is itself the bearer credential
- IamTokenSource: exchanges a signed JWT for an IAM access token
- ServiceAccountTokenSource: Google OAuth2 service-account access tokens

Secret storage is not managed here; key material arrives as bytes or
parsed JSON.
"""

import asyncio
import json
import logging
import re
import ssl
import time
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiohttp
import jwt
from cryptography.hazmat.primitives import serialization

from ..core.exceptions import AuthError, ConfigurationError, TransientAuthError

if TYPE_CHECKING:
    from ..core.settings import BackendSettings

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = 3600
_FRACTION_RE = re.compile(r"\.(\d+)")


def parse_rfc3339(value: str) -> float:
    """Parse an RFC 3339 timestamp (nanosecond fractions allowed) to a Unix timestamp."""
    text = value.strip().replace("Z", "+00:00").replace("z", "+00:00")
    # datetime only keeps microseconds
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


class JwtSigner:
    """Signs JWT claim sets with a PEM private key."""

    def __init__(
        self,
        private_key_pem: bytes,
        key_id: str,
        issuer: str,
        algorithm: str = "PS256",
    ):
        try:
            self._key = serialization.load_pem_private_key(private_key_pem, password=None)
        except (ValueError, TypeError) as e:
            raise AuthError(f"Malformed private key for key id {key_id}: {e}") from e
        self.key_id = key_id
        self.issuer = issuer
        self.algorithm = algorithm

    def sign(self, claims: dict[str, Any]) -> str:
        payload = {"iss": self.issuer, **claims}
        return jwt.encode(payload, self._key, algorithm=self.algorithm, headers={"kid": self.key_id})

    def assertion(self, audience: str, lifetime: int = DEFAULT_TOKEN_LIFETIME, now: float | None = None) -> str:
        issued_at = int(now if now is not None else time.time())
        return self.sign({"aud": audience, "iat": issued_at, "exp": issued_at + lifetime})


class SelfSignedJwtSource:
    """Uses a self-signed JWT directly as the bearer credential."""

    def __init__(self, signer: JwtSigner, audience: str, lifetime: int = DEFAULT_TOKEN_LIFETIME):
        self.signer = signer
        self.audience = audience
        self.lifetime = lifetime

    async def fetch(self) -> tuple[str, float]:
        now = time.time()
        return self.signer.assertion(self.audience, self.lifetime, now=now), float(int(now) + self.lifetime)


class IamTokenSource:
    """Exchanges a signed JWT assertion for an IAM token.

    Request:  POST token_url {"jwt": "<assertion>"}
    Response: {"iamToken": "...", "expiresAt": "<RFC 3339>"}
    """

    def __init__(
        self,
        signer: JwtSigner,
        token_url: str,
        lifetime: int = DEFAULT_TOKEN_LIFETIME,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 10.0,
    ):
        self.signer = signer
        self.token_url = token_url
        self.lifetime = lifetime
        self._ssl_context = ssl_context or ssl.create_default_context()
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(ssl=self._ssl_context),
                timeout=self._timeout,
            )
        return self._session

    async def fetch(self) -> tuple[str, float]:
        assertion = self.signer.assertion(self.token_url, self.lifetime)
        session = self._get_session()
        logger.debug(f"Exchanging JWT assertion for key {self.signer.key_id} at {self.token_url}")
        try:
            async with session.post(self.token_url, json={"jwt": assertion}) as response:
                if response.status in (400, 401, 403):
                    body = await response.text()
                    raise AuthError(f"Token endpoint rejected assertion ({response.status}): {body[:200]}")
                if response.status >= 400:
                    raise TransientAuthError(f"Token endpoint returned {response.status}")
                payload = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise TransientAuthError(f"Token exchange failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise TransientAuthError("Token exchange timed out") from e

        try:
            return str(payload["iamToken"]), parse_rfc3339(str(payload["expiresAt"]))
        except (KeyError, TypeError, ValueError) as e:
            raise AuthError(f"Unexpected token endpoint response: {e}") from e

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


class ServiceAccountTokenSource:
    """OAuth2 access tokens for a Google service account.

    google-auth refreshes synchronously, so the refresh runs in a worker thread.
    """

    def __init__(self, info: dict[str, Any], scopes: Iterable[str]):
        from google.oauth2 import service_account

        try:
            self._credentials = service_account.Credentials.from_service_account_info(info, scopes=list(scopes))
        except (ValueError, KeyError) as e:
            raise AuthError(f"Malformed service account key: {e}") from e

    async def fetch(self) -> tuple[str, float]:
        from google.auth import exceptions as google_auth_exceptions
        from google.auth.transport.requests import Request

        try:
            await asyncio.to_thread(self._credentials.refresh, Request())
        except google_auth_exceptions.RefreshError as e:
            if getattr(e, "retryable", False):
                raise TransientAuthError(f"Service account refresh failed: {e}") from e
            raise AuthError(f"Service account refresh rejected: {e}") from e
        except google_auth_exceptions.TransportError as e:
            raise TransientAuthError(f"Service account refresh failed: {e}") from e

        expiry = self._credentials.expiry
        if expiry is None:
            expires_at = time.time() + DEFAULT_TOKEN_LIFETIME
        else:
            # google-auth reports naive UTC datetimes
            expires_at = expiry.replace(tzinfo=timezone.utc).timestamp()
        return self._credentials.token, expires_at


def _read_file(path: str, what: str, backend_id: str) -> bytes:
    if not path:
        raise ConfigurationError(f"Backend {backend_id!r} has no {what} configured")
    try:
        return Path(path).expanduser().read_bytes()
    except OSError as e:
        raise ConfigurationError(f"Cannot read {what} for {backend_id!r}: {e}") from e


def build_token_source(backend: "BackendSettings", ssl_context: ssl.SSLContext | None = None):
    """Create the token source a backend's settings describe."""
    kind = backend.credentials
    backend_id = backend.backend_id

    if kind == "service_account":
        raw = _read_file(backend.option("service_account_file", ""), "service_account_file", backend_id)
        try:
            info = json.loads(raw)
        except json.JSONDecodeError as e:
            raise AuthError(f"Malformed service account file for {backend_id!r}: {e}") from e
        scopes = backend.option("scopes", ["https://www.googleapis.com/auth/cloud-platform"])
        return ServiceAccountTokenSource(info, scopes)

    if kind in ("iam_jwt", "self_signed_jwt"):
        pem = _read_file(backend.option("private_key_file", ""), "private_key_file", backend_id)
        signer = JwtSigner(
            pem,
            key_id=str(backend.option("key_id", "")),
            issuer=str(backend.option("service_account_id", "")),
            algorithm=str(backend.option("algorithm", "PS256")),
        )
        lifetime = int(backend.option("token_lifetime_seconds", DEFAULT_TOKEN_LIFETIME))
        if kind == "iam_jwt":
            token_url = backend.option("token_url", "")
            if not token_url:
                raise ConfigurationError(f"Backend {backend_id!r} has no token_url configured")
            return IamTokenSource(signer, token_url, lifetime=lifetime, ssl_context=ssl_context)
        audience = backend.option("audience", "") or backend.endpoint
        return SelfSignedJwtSource(signer, audience, lifetime=lifetime)

    raise ConfigurationError(f"Backend {backend_id!r} has unknown credentials type {kind!r}")
