"""Unit tests for the chunked HTTP adapter, including runs against a local aiohttp server."""

import asyncio
import base64
import json
import time

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from fakes import FakeTokenSource
from speechwire.auth.credentials import Credential
from speechwire.client import SpeechClient
from speechwire.core.exceptions import (
    AuthError,
    CredentialRejectedError,
    ProtocolError,
    QuotaError,
    SessionClosedError,
    StreamDisconnected,
)
from speechwire.core.settings import BackendSettings, ClientSettings
from speechwire.streaming.adapters.http_adapter import END_OF_AUDIO_LINE, HttpJwtAdapter, map_http_status
from speechwire.streaming.channels import Transcript
from speechwire.streaming.retry import RetryPolicy
from speechwire.streaming.types import AudioChunk, ControlSignal, SessionConfig, SessionState

BACKEND = BackendSettings(
    backend_id="yandex",
    provider="http",
    endpoint="https://stt.example.test/v3/stream",
    recognize_url="https://stt.example.test/v1/recognize",
    options={"folder_id": "b1g-folder"},
)


def credential():
    return Credential(bearer_value="t1.iam", expires_at=time.time() + 3600, backend_id="yandex")


def line(record):
    return json.dumps(record).encode()


class TestHttpStatusMapping:
    """Test HTTP status to error mapping."""

    @pytest.mark.parametrize(
        "status,expected",
        [
            (401, CredentialRejectedError),
            (403, AuthError),
            (429, QuotaError),
            (400, ProtocolError),
            (502, StreamDisconnected),
            (503, StreamDisconnected),
        ],
    )
    def test_map_http_status(self, status, expected):
        assert type(map_http_status(status, "body")) is expected

    def test_quota_keeps_retry_after(self):
        assert map_http_status(429, "slow down", retry_after=2.0).retry_after == 2.0


class TestHttpCodec:
    """Test NDJSON encoding and decoding."""

    def test_config_line_and_headers(self):
        adapter = HttpJwtAdapter(BACKEND)

        frame = adapter.encode_config(SessionConfig(backend_id="yandex", language="ru-RU"), credential())

        assert frame.headers["Authorization"] == "Bearer t1.iam"
        config = json.loads(frame.config_line)["config"]
        assert config["language"] == "ru-RU"
        assert config["sampleRateHertz"] == 16000
        assert config["folderId"] == "b1g-folder"
        assert frame.config_line.endswith(b"\n")

    def test_audio_line(self):
        adapter = HttpJwtAdapter(BACKEND)

        record = json.loads(adapter.encode_audio(AudioChunk(b"\x00\xff", 7)))

        assert record == {"seq": 7, "audio": base64.b64encode(b"\x00\xff").decode()}

    def test_decode_result_and_ack(self):
        adapter = HttpJwtAdapter(BACKEND)

        [result] = adapter.decode_result(
            line({"result": {"text": "privet", "isFinal": True, "confidence": 0.8, "index": 2}})
        )
        [ack] = adapter.decode_result(line({"ack": {"seq": 5}}))
        [completed] = adapter.decode_result(line({"event": "completed"}))

        assert (result.text, result.is_final, result.result_index) == ("privet", True, 2)
        assert ack == ControlSignal.ack(5)
        assert completed == ControlSignal.completed()

    def test_in_band_error(self):
        adapter = HttpJwtAdapter(BACKEND)

        with pytest.raises(QuotaError) as excinfo:
            adapter.decode_result(line({"error": {"code": 429, "message": "too many", "retryAfter": 4}}))

        assert excinfo.value.retry_after == 4.0

    @pytest.mark.parametrize(
        "frame",
        [b"not json", b"[1, 2]", line({"result": {"isFinal": True}}), line({"unexpected": 1})],
    )
    def test_malformed_lines(self, frame):
        with pytest.raises(ProtocolError):
            HttpJwtAdapter(BACKEND).decode_result(frame)


class ScriptedSpeechServer:
    """Local NDJSON speech endpoint.

    Reads the whole upload, then acknowledges every chunk and returns a
    single final result followed by a completion event.
    """

    def __init__(self, reject_tokens=()):
        self.reject_tokens = set(reject_tokens)
        self.uploads = []
        self.recognize_calls = []
        self.app = web.Application()
        self.app.router.add_post("/stream", self.stream)
        self.app.router.add_post("/recognize", self.recognize)

    def _rejected(self, request):
        return request.headers.get("Authorization", "").removeprefix("Bearer ") in self.reject_tokens

    async def stream(self, request):
        if self._rejected(request):
            return web.Response(status=401, text="token expired")

        lines = []
        while True:
            raw = await request.content.readline()
            if not raw or raw == END_OF_AUDIO_LINE:
                break
            lines.append(json.loads(raw))
        self.uploads.append(lines)

        response = web.StreamResponse(headers={"Content-Type": "application/x-ndjson"})
        await response.prepare(request)
        audio = b""
        for record in lines[1:]:
            audio += base64.b64decode(record["audio"])
            await response.write(line({"ack": {"seq": record["seq"]}}) + b"\n")
        text = audio.decode()
        await response.write(line({"result": {"text": text, "isFinal": True, "confidence": 0.9, "index": 0}}) + b"\n")
        await response.write(line({"event": "completed"}) + b"\n")
        await response.write_eof()
        return response

    async def recognize(self, request):
        self.recognize_calls.append(dict(request.query))
        if self._rejected(request):
            return web.Response(status=401, text="token expired")
        audio = await request.read()
        return web.json_response({"result": audio.decode()})


@pytest_asyncio.fixture
async def speech_server():
    server = ScriptedSpeechServer(reject_tokens={"token-1"})
    test_server = TestServer(server.app)
    await test_server.start_server()
    server.url = lambda path: str(test_server.make_url(path))
    yield server
    await test_server.close()


def make_client(server):
    backend = BackendSettings(
        backend_id="yandex",
        provider="http",
        endpoint=server.url("/stream"),
        recognize_url=server.url("/recognize"),
    )
    settings = ClientSettings(
        backends={"yandex": backend},
        retry=RetryPolicy(max_attempts=3, base_delay=0.0, jitter=0.0),
    )
    source = FakeTokenSource()
    return SpeechClient(settings, token_source_factory=lambda backend_id: source), source


class TestHttpEndToEnd:
    """Streams and one-shot requests against a local server."""

    @pytest.mark.asyncio
    async def test_stream_refreshes_rejected_token_and_completes(self, speech_server):
        client, source = make_client(speech_server)
        async with client:
            sink, results = client.open_stream(SessionConfig(backend_id="yandex"))
            async with sink:
                for word in (b"hello ", b"wor", b"ld"):
                    await sink.send(word)

            transcript = Transcript()
            events = []
            async for event in results:
                events.append(event)
                transcript.apply(event)

            assert transcript.text == "hello world"
            assert results.state == SessionState.CLOSED
            assert source.fetches == 2
            assert [record["seq"] for record in speech_server.uploads[0][1:]] == [0, 1, 2]
            assert client.health_snapshot()["sessions_completed"] == 1

    @pytest.mark.asyncio
    async def test_recognize_retries_once_after_rejection(self, speech_server):
        client, source = make_client(speech_server)
        async with client:
            text = await client.recognize(SessionConfig(backend_id="yandex", model="general"), b"one shot")

        assert text == "one shot"
        assert source.fetches == 2
        assert len(speech_server.recognize_calls) == 2
        assert speech_server.recognize_calls[-1]["format"] == "lpcm"
        assert speech_server.recognize_calls[-1]["topic"] == "general"

    @pytest.mark.asyncio
    async def test_second_rejection_is_raised(self, speech_server):
        speech_server.reject_tokens.add("token-2")
        client, _ = make_client(speech_server)
        async with client:
            with pytest.raises(CredentialRejectedError):
                await client.recognize(SessionConfig(backend_id="yandex"), b"audio")

            assert len(client.pool) == 1

    @pytest.mark.asyncio
    async def test_shutdown_cancels_live_stream(self, speech_server):
        client, _ = make_client(speech_server)
        sink, results = client.open_stream(SessionConfig(backend_id="yandex"))
        await sink.send(b"partial")
        await asyncio.sleep(0.05)

        await client.shutdown()

        assert results.state.is_terminal
        assert len(client.pool) == 0
        with pytest.raises(SessionClosedError):
            await client.recognize(SessionConfig(backend_id="yandex"), b"late")
