"""HTTP streaming adapter (chunked NDJSON, bearer token from an IAM exchange).

Request body, one JSON object per line:
    {"config": {...}}
    {"seq": 0, "audio": "<base64>"}
    ...
    {"event": "end_of_audio"}

Response body, one JSON object per line:
    {"result": {"text": ..., "isFinal": ..., "stability": ..., "confidence": ..., "index": ...}}
    {"ack": {"seq": n}}
    {"error": {"code": <http status>, "message": ..., "retryAfter": seconds}}
    {"event": "completed"}
"""

import asyncio
import base64
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import aiohttp

from ...core.exceptions import (
    AuthError,
    ConfigurationError,
    ConnectError,
    CredentialRejectedError,
    ProtocolError,
    QuotaError,
    SpeechwireError,
    StreamDisconnected,
)
from ...transport.channel import HttpChannel, TrustConfig
from ..types import AudioChunk, ControlSignal, RecognitionResult, SessionConfig
from .base import DecodedItem

if TYPE_CHECKING:
    from ...auth.credentials import Credential
    from ...core.settings import BackendSettings, TransportSettings

logger = logging.getLogger(__name__)

NDJSON = "application/x-ndjson"
END_OF_AUDIO_LINE = b'{"event":"end_of_audio"}\n'

# Short names the recognize endpoint expects in its ``format`` parameter
_RECOGNIZE_FORMATS = {"linear16": "lpcm", "ogg_opus": "oggopus", "mulaw": "mulaw"}


def parse_retry_after(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        # HTTP-date form is not used by speech endpoints
        return None
    return max(0.0, seconds)


def map_http_status(status: int, message: str, retry_after: float | None = None) -> SpeechwireError:
    """Map an HTTP status (or an in-band error code) onto the error taxonomy."""
    text = f"HTTP {status}: {message[:200]}"
    if status == 401:
        return CredentialRejectedError(text)
    if status == 403:
        return AuthError(text)
    if status == 429:
        return QuotaError(text, retry_after=retry_after)
    if status >= 500:
        return StreamDisconnected(text)
    return ProtocolError(text)


def _encode_line(record: dict[str, Any]) -> bytes:
    return json.dumps(record, separators=(",", ":")).encode("utf-8") + b"\n"


@dataclass(frozen=True)
class HttpInitialFrame:
    headers: dict[str, str]
    config_line: bytes
    params: dict[str, str] = field(default_factory=dict)


class HttpStreamingCall:
    """WireCall over one chunked POST.

    Outbound lines go through a bounded queue feeding the request body, so
    ``write()`` suspends once the upload falls behind. The request itself
    runs in a background task because aiohttp only returns the response
    after the headers arrive, which may be long after upload starts.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        url: str,
        initial: HttpInitialFrame,
        queue_size: int = 16,
    ):
        self.url = url
        self._outbound: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=max(1, queue_size))
        self._outbound.put_nowait(initial.config_line)
        self._response: aiohttp.ClientResponse | None = None
        self._writing_done = False
        self._request_task = asyncio.create_task(
            self._start_request(session, initial), name="http-stream-request"
        )
        self._request_task.add_done_callback(self._request_done)

    async def _body(self) -> AsyncIterator[bytes]:
        while True:
            line = await self._outbound.get()
            if line is None:
                return
            yield line

    async def _start_request(self, session: aiohttp.ClientSession, initial: HttpInitialFrame) -> aiohttp.ClientResponse:
        try:
            response = await session.post(self.url, data=self._body(), headers=initial.headers, params=initial.params)
        except aiohttp.ClientConnectorError as e:
            raise ConnectError(f"Cannot connect to {self.url}: {e}") from e
        except aiohttp.ClientError as e:
            raise StreamDisconnected(f"Request to {self.url} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise StreamDisconnected(f"Request to {self.url} timed out") from e

        if response.status >= 400:
            try:
                body = await response.text()
            except aiohttp.ClientError:
                body = ""
            response.release()
            raise map_http_status(response.status, body, parse_retry_after(response.headers.get("Retry-After")))
        return response

    @staticmethod
    def _request_done(task: asyncio.Task) -> None:
        if not task.cancelled():
            # Marks the exception retrieved; read()/write() re-raise it
            task.exception()

    def _raise_if_failed(self) -> None:
        if self._request_task.done() and not self._request_task.cancelled():
            error = self._request_task.exception()
            if error is not None:
                raise error

    async def write(self, frame: bytes) -> None:
        if self._writing_done:
            raise StreamDisconnected("Stream already half-closed")
        self._raise_if_failed()
        await self._outbound.put(frame)

    async def done_writing(self) -> None:
        if self._writing_done:
            return
        self._raise_if_failed()
        await self._outbound.put(END_OF_AUDIO_LINE)
        await self._outbound.put(None)
        self._writing_done = True

    async def read(self) -> bytes | None:
        if self._response is None:
            self._response = await self._request_task
        while True:
            try:
                line = await self._response.content.readline()
            except (aiohttp.ClientPayloadError, aiohttp.ClientConnectionError) as e:
                raise StreamDisconnected(f"Response stream from {self.url} broke: {e}") from e
            except asyncio.TimeoutError as e:
                raise StreamDisconnected(f"Response stream from {self.url} timed out") from e
            if not line:
                return None
            line = line.strip()
            if line:
                return line

    def cancel(self) -> None:
        self._request_task.cancel()
        if self._response is not None:
            if self._response.content.at_eof():
                self._response.release()
            else:
                self._response.close()
        self._writing_done = True


class HttpJwtAdapter:
    """Streaming recognition over chunked HTTP with IAM bearer tokens."""

    name = "http"

    def __init__(
        self,
        backend: "BackendSettings",
        trust: TrustConfig | None = None,
        transport: "TransportSettings | None" = None,
    ):
        self.backend = backend
        self.trust = trust or TrustConfig()
        self.connect_timeout = transport.connect_timeout if transport else 10.0
        self.pool_size = transport.pool_size if transport else 4
        self.upload_queue_size = int(backend.option("upload_queue_size", 16))
        self.request_timeout = float(backend.option("request_timeout_seconds", 60.0))
        self.folder_id = backend.option("folder_id", None)

    def create_channel(self, endpoint: str) -> HttpChannel:
        return HttpChannel(endpoint, self.trust, connect_timeout=self.connect_timeout, pool_size=self.pool_size)

    def encode_config(self, config: SessionConfig, credential: "Credential") -> HttpInitialFrame:
        settings: dict[str, Any] = {
            "encoding": config.audio_encoding,
            "sampleRateHertz": config.sample_rate,
            "language": config.language,
            "interimResults": config.interim_results,
            "channels": config.channels,
            "profanityFilter": config.profanity_filter,
        }
        if config.model:
            settings["model"] = config.model
        if self.folder_id:
            settings["folderId"] = self.folder_id
        headers = {
            "Authorization": credential.authorization,
            "Content-Type": NDJSON,
            "Accept": NDJSON,
        }
        return HttpInitialFrame(headers=headers, config_line=_encode_line({"config": settings}))

    def encode_audio(self, chunk: AudioChunk) -> bytes:
        return _encode_line({"seq": chunk.seq, "audio": base64.b64encode(chunk.data).decode("ascii")})

    def decode_result(self, frame: bytes) -> list[DecodedItem]:
        try:
            record = json.loads(frame)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(f"Malformed response line: {e}") from e
        if not isinstance(record, dict):
            raise ProtocolError(f"Expected a JSON object, got {type(record).__name__}")

        try:
            if "result" in record:
                result = record["result"]
                return [
                    RecognitionResult(
                        text=str(result["text"]),
                        is_final=bool(result.get("isFinal", False)),
                        stability=float(result.get("stability", 0.0)),
                        confidence=float(result.get("confidence", 0.0)),
                        result_index=int(result["index"]),
                    )
                ]
            if "ack" in record:
                return [ControlSignal.ack(int(record["ack"]["seq"]))]
            if "error" in record:
                error = record["error"]
                code = int(error.get("code", 500))
                message = str(error.get("message", ""))
                retry_after = parse_retry_after(error.get("retryAfter"))
            elif record.get("event") == "completed":
                return [ControlSignal.completed()]
            else:
                raise ProtocolError(f"Unrecognized response line: {sorted(record)}")
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ProtocolError(f"Malformed response record: {e}") from e

        raise map_http_status(code, message, retry_after)

    async def open_call(self, channel: HttpChannel, initial_frame: HttpInitialFrame) -> HttpStreamingCall:
        if channel.session is None:
            raise ConnectError(f"HTTP channel to {channel.endpoint} is not open")
        logger.debug(f"Opening chunked stream to {channel.endpoint}")
        return HttpStreamingCall(channel.session, channel.endpoint, initial_frame, queue_size=self.upload_queue_size)

    async def recognize(
        self,
        channel: HttpChannel,
        credential: "Credential",
        config: SessionConfig,
        audio: bytes,
    ) -> str | None:
        if not self.backend.recognize_url:
            raise ConfigurationError(f"Backend {self.backend.backend_id!r} has no recognize_url configured")
        if channel.session is None:
            raise ConnectError(f"HTTP channel to {channel.endpoint} is not open")

        params = {
            "lang": config.language,
            "format": _RECOGNIZE_FORMATS.get(config.audio_encoding.lower(), config.audio_encoding),
            "sampleRateHertz": str(config.sample_rate),
        }
        if config.model:
            params["topic"] = config.model
        if self.folder_id:
            params["folderId"] = str(self.folder_id)

        try:
            async with channel.session.post(
                self.backend.recognize_url,
                data=audio,
                params=params,
                headers={"Authorization": credential.authorization},
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise map_http_status(
                        response.status, body, parse_retry_after(response.headers.get("Retry-After"))
                    )
                payload = await response.json(content_type=None)
        except aiohttp.ClientConnectorError as e:
            raise ConnectError(f"Cannot connect to {self.backend.recognize_url}: {e}") from e
        except aiohttp.ClientError as e:
            raise StreamDisconnected(f"Recognize request failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise StreamDisconnected("Recognize request timed out") from e
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Malformed recognize response: {e}") from e

        if not isinstance(payload, dict):
            raise ProtocolError("Malformed recognize response")
        text = payload.get("result")
        return str(text) if text is not None else None
