"""gRPC streaming adapter for Google Cloud Speech v1.

Stream layout: one StreamingRecognizeRequest carrying the streaming config,
then one request per audio chunk, then a half-close. Responses are read
concurrently off the same call.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import grpc
from google.cloud.speech_v1 import types as cloud_speech

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
from ...transport.channel import GrpcChannel, TrustConfig
from ..types import AudioChunk, ControlSignal, RecognitionResult, SessionConfig
from .base import DecodedItem

if TYPE_CHECKING:
    from ...auth.credentials import Credential
    from ...core.settings import BackendSettings, TransportSettings

logger = logging.getLogger(__name__)

STREAMING_RECOGNIZE_METHOD = "/google.cloud.speech.v1.Speech/StreamingRecognize"
RECOGNIZE_METHOD = "/google.cloud.speech.v1.Speech/Recognize"

# Only fixed-width PCM encodings let us map result end times back to chunks
_BYTES_PER_SAMPLE = {"linear16": 2, "mulaw": 1}

_STATUS_BY_CODE = {status.value[0]: status for status in grpc.StatusCode}

_PROTOCOL_STATUSES = (
    grpc.StatusCode.INVALID_ARGUMENT,
    grpc.StatusCode.FAILED_PRECONDITION,
    grpc.StatusCode.OUT_OF_RANGE,
    grpc.StatusCode.UNIMPLEMENTED,
    grpc.StatusCode.NOT_FOUND,
)


def map_status(code: grpc.StatusCode, details: str, retry_after: float | None = None) -> SpeechwireError:
    """Map a gRPC status onto the speechwire error taxonomy."""
    message = f"{code.name}: {details}"
    if code == grpc.StatusCode.UNAUTHENTICATED:
        return CredentialRejectedError(message)
    if code == grpc.StatusCode.PERMISSION_DENIED:
        return AuthError(message)
    if code == grpc.StatusCode.RESOURCE_EXHAUSTED:
        return QuotaError(message, retry_after=retry_after)
    if code in _PROTOCOL_STATUSES:
        return ProtocolError(message)
    return StreamDisconnected(message)


def _retry_after(metadata: Any) -> float | None:
    for key, value in metadata or ():
        if key.lower() == "retry-after":
            try:
                return float(value)
            except (TypeError, ValueError):
                return None
    return None


def map_rpc_error(error: grpc.aio.AioRpcError) -> SpeechwireError:
    return map_status(error.code(), error.details() or "", _retry_after(error.trailing_metadata()))


def _duration_seconds(value: Any) -> float | None:
    if value is None:
        return None
    if hasattr(value, "total_seconds"):
        return value.total_seconds()
    return getattr(value, "seconds", 0) + getattr(value, "nanos", 0) / 1e9


def resolve_encoding(name: str) -> cloud_speech.RecognitionConfig.AudioEncoding:
    try:
        return cloud_speech.RecognitionConfig.AudioEncoding[name.upper()]
    except KeyError:
        raise ConfigurationError(f"Unsupported audio encoding for gRPC backend: {name}") from None


@dataclass(frozen=True)
class GrpcInitialFrame:
    request: cloud_speech.StreamingRecognizeRequest
    metadata: tuple[tuple[str, str], ...]


class GrpcStreamingCall:
    """WireCall over a grpc.aio stream-stream call."""

    def __init__(self, call: Any):
        self._call = call

    async def write(self, frame: cloud_speech.StreamingRecognizeRequest) -> None:
        try:
            await self._call.write(frame)
        except grpc.aio.AioRpcError as e:
            raise map_rpc_error(e) from e
        except asyncio.InvalidStateError as e:
            raise StreamDisconnected(f"Stream no longer writable: {e}") from e

    async def done_writing(self) -> None:
        try:
            await self._call.done_writing()
        except grpc.aio.AioRpcError as e:
            raise map_rpc_error(e) from e
        except asyncio.InvalidStateError as e:
            raise StreamDisconnected(f"Stream no longer writable: {e}") from e

    async def read(self) -> cloud_speech.StreamingRecognizeResponse | None:
        try:
            response = await self._call.read()
        except grpc.aio.AioRpcError as e:
            raise map_rpc_error(e) from e
        if response is grpc.aio.EOF:
            return None
        return response

    def cancel(self) -> None:
        self._call.cancel()


class GrpcStreamingAdapter:
    """Google Cloud Speech v1 over grpc.aio."""

    name = "grpc"

    def __init__(
        self,
        backend: "BackendSettings",
        trust: TrustConfig | None = None,
        transport: "TransportSettings | None" = None,
    ):
        self.backend = backend
        self.trust = trust or TrustConfig()
        self.connect_timeout = transport.connect_timeout if transport else 10.0
        self.request_timeout = float(backend.option("request_timeout_seconds", 60.0))

        # Per-stream state
        self._finalized = 0
        self._bytes_per_second: int | None = None
        self._audio_seconds = 0.0
        self._chunk_ends: deque[tuple[int, float]] = deque()

    def create_channel(self, endpoint: str) -> GrpcChannel:
        return GrpcChannel(endpoint, self.trust, connect_timeout=self.connect_timeout)

    def recognition_config(self, config: SessionConfig) -> cloud_speech.RecognitionConfig:
        kwargs: dict[str, Any] = {
            "encoding": resolve_encoding(config.audio_encoding),
            "sample_rate_hertz": config.sample_rate,
            "language_code": config.language,
            "audio_channel_count": config.channels,
            "profanity_filter": config.profanity_filter,
        }
        if config.model:
            kwargs["model"] = config.model
        return cloud_speech.RecognitionConfig(**kwargs)

    def encode_config(self, config: SessionConfig, credential: "Credential") -> GrpcInitialFrame:
        bytes_per_sample = _BYTES_PER_SAMPLE.get(config.audio_encoding.lower())
        self._bytes_per_second = (
            bytes_per_sample * config.sample_rate * config.channels if bytes_per_sample else None
        )
        request = cloud_speech.StreamingRecognizeRequest(
            streaming_config=cloud_speech.StreamingRecognitionConfig(
                config=self.recognition_config(config),
                interim_results=config.interim_results,
            )
        )
        return GrpcInitialFrame(request=request, metadata=(("authorization", credential.authorization),))

    def encode_audio(self, chunk: AudioChunk) -> cloud_speech.StreamingRecognizeRequest:
        if self._bytes_per_second:
            self._audio_seconds += len(chunk.data) / self._bytes_per_second
            self._chunk_ends.append((chunk.seq, self._audio_seconds))
        return cloud_speech.StreamingRecognizeRequest(audio_content=chunk.data)

    def _ack_through(self, end_seconds: float | None) -> int | None:
        if end_seconds is None:
            return None
        acked = None
        # Tolerate rounding in the service's millisecond offsets
        while self._chunk_ends and self._chunk_ends[0][1] <= end_seconds + 1e-3:
            acked = self._chunk_ends.popleft()[0]
        return acked

    def decode_result(self, frame: cloud_speech.StreamingRecognizeResponse) -> list[DecodedItem]:
        """Turn one response into results and acknowledgements.

        Finals take the next index each. The interim results of a response are
        the stable and unstable parts of the same pending segment, so they are
        joined into one result at the index after the last final.
        """
        error = getattr(frame, "error", None)
        if error is not None and error.code:
            status = _STATUS_BY_CODE.get(error.code, grpc.StatusCode.UNKNOWN)
            raise map_status(status, error.message)

        items: list[DecodedItem] = []
        interims = []
        for result in frame.results:
            if not result.is_final:
                interims.append(result)
                continue
            alternative = result.alternatives[0] if result.alternatives else None
            end_seconds = _duration_seconds(result.result_end_time)
            items.append(
                RecognitionResult(
                    text=alternative.transcript if alternative else "",
                    is_final=True,
                    stability=result.stability,
                    confidence=alternative.confidence if alternative else 0.0,
                    result_index=self._finalized,
                    end_offset_seconds=end_seconds,
                )
            )
            self._finalized += 1
            acked = self._ack_through(end_seconds)
            if acked is not None:
                items.append(ControlSignal.ack(acked))

        if interims:
            alternatives = [r.alternatives[0] for r in interims if r.alternatives]
            ends = [end for end in (_duration_seconds(r.result_end_time) for r in interims) if end is not None]
            items.append(
                RecognitionResult(
                    text="".join(alt.transcript for alt in alternatives),
                    is_final=False,
                    # The leading part is the stable one
                    stability=interims[0].stability,
                    confidence=sum(alt.confidence for alt in alternatives) / len(alternatives) if alternatives else 0.0,
                    result_index=self._finalized,
                    end_offset_seconds=max(ends) if ends else None,
                )
            )
        return items

    async def open_call(self, channel: GrpcChannel, initial_frame: GrpcInitialFrame) -> GrpcStreamingCall:
        if channel.channel is None:
            raise ConnectError(f"gRPC channel to {channel.target} is not open")
        streaming_recognize = channel.channel.stream_stream(
            STREAMING_RECOGNIZE_METHOD,
            request_serializer=cloud_speech.StreamingRecognizeRequest.serialize,
            response_deserializer=cloud_speech.StreamingRecognizeResponse.deserialize,
        )
        call = GrpcStreamingCall(streaming_recognize(metadata=initial_frame.metadata))
        await call.write(initial_frame.request)
        logger.debug(f"StreamingRecognize opened on {channel.target}")
        return call

    async def recognize(
        self,
        channel: GrpcChannel,
        credential: "Credential",
        config: SessionConfig,
        audio: bytes,
    ) -> str | None:
        if channel.channel is None:
            raise ConnectError(f"gRPC channel to {channel.target} is not open")
        recognize = channel.channel.unary_unary(
            RECOGNIZE_METHOD,
            request_serializer=cloud_speech.RecognizeRequest.serialize,
            response_deserializer=cloud_speech.RecognizeResponse.deserialize,
        )
        request = cloud_speech.RecognizeRequest(
            config=self.recognition_config(config),
            audio=cloud_speech.RecognitionAudio(content=audio),
        )
        try:
            response = await recognize(
                request,
                metadata=(("authorization", credential.authorization),),
                timeout=self.request_timeout,
            )
        except grpc.aio.AioRpcError as e:
            raise map_rpc_error(e) from e

        for result in response.results:
            if result.alternatives:
                return result.alternatives[0].transcript
        return None
