"""Process-scoped entry point for streaming and one-shot recognition.

SpeechClient owns the state shared across sessions:
- CredentialProvider (created lazily on first use)
- ChannelPool (one channel per backend endpoint)
- SessionStats (served by the optional /health endpoint)

shutdown() cancels live streams, closes every channel and drops cached
credentials.
"""

import asyncio
from collections.abc import Callable
from typing import Any

from aiohttp import web

from .auth.credentials import CredentialProvider, TokenSource
from .auth.sources import build_token_source
from .core.config import ConfigLoader, setup_logging
from .core.exceptions import (
    ConfigurationError,
    ConnectError,
    CredentialRejectedError,
    RetryExhaustedError,
    SessionClosedError,
    SpeechwireError,
    StreamDisconnected,
)
from .core.settings import BackendSettings, ClientSettings
from .health import SessionStats, start_health_server
from .streaming.adapters import ADAPTERS, ProviderAdapter
from .streaming.channels import ChunkSink, ResultStream
from .streaming.session import StreamSession
from .streaming.supervisor import SessionSupervisor
from .streaming.types import SessionConfig
from .transport.channel import ChannelPool, TrustConfig

logger = setup_logging(__name__)

AdapterFactory = Callable[..., ProviderAdapter]


class SpeechClient:
    """Uniform client for every configured speech backend.

    Example:
        async with SpeechClient.from_config() as client:
            sink, results = client.open_stream(SessionConfig(backend_id="google"))
            ...
            text = await client.recognize(SessionConfig(backend_id="yandex"), audio)

    """

    def __init__(
        self,
        settings: ClientSettings | None = None,
        token_source_factory: Callable[[str], TokenSource] | None = None,
        adapters: dict[str, AdapterFactory] | None = None,
    ):
        self.settings = settings or ClientSettings()
        self.trust = TrustConfig.from_file(self.settings.transport.trust_roots_file)
        self._token_source_factory = token_source_factory or self._build_token_source
        self._adapters: dict[str, AdapterFactory] = {**ADAPTERS, **(adapters or {})}
        self._credentials: CredentialProvider | None = None
        self.pool = ChannelPool(idle_timeout=self.settings.transport.idle_timeout)
        self.stats = SessionStats()
        self._supervisors: set[SessionSupervisor] = set()
        self._health_runner: web.AppRunner | None = None
        self._closed = False

    @classmethod
    def from_config(cls, loader: ConfigLoader | None = None, **kwargs: Any) -> "SpeechClient":
        return cls(ClientSettings.from_config(loader), **kwargs)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def credentials(self) -> CredentialProvider:
        if self._credentials is None:
            self._credentials = CredentialProvider(self._token_source_factory, min_validity=self.settings.min_validity)
        return self._credentials

    def _build_token_source(self, backend_id: str) -> TokenSource:
        return build_token_source(self.settings.backend(backend_id), ssl_context=self.trust.ssl_context())

    def _create_adapter(self, backend: BackendSettings) -> ProviderAdapter:
        factory = self._adapters.get(backend.provider)
        if factory is None:
            raise ConfigurationError(f"No adapter for provider {backend.provider!r}")
        return factory(backend, trust=self.trust, transport=self.settings.transport)

    def _check_open(self) -> None:
        if self._closed:
            raise SessionClosedError("SpeechClient has been shut down")

    def open_stream(self, config: SessionConfig) -> tuple[ChunkSink, ResultStream]:
        """Start a supervised stream.

        Returns:
            (sink, results): feed audio into sink, iterate results

        Raises:
            ConfigurationError: Unknown backend or no endpoint configured

        """
        self._check_open()
        backend = self.settings.backend(config.backend_id)
        endpoint = config.endpoint_uri or backend.endpoint
        if not endpoint:
            raise ConfigurationError(f"Backend {backend.backend_id!r} has no streaming endpoint configured")
        credentials = self.credentials

        def session_factory(session_id: str) -> StreamSession:
            return StreamSession(
                config,
                self._create_adapter(backend),
                credentials,
                self.pool,
                endpoint,
                session_id=session_id,
            )

        supervisor = SessionSupervisor(
            config,
            session_factory,
            credentials,
            policy=self.settings.retry,
            replay_window=self.settings.replay_window,
            input_queue_size=self.settings.input_queue_size,
            result_queue_size=self.settings.result_queue_size,
            stats=self.stats,
        )
        sink, results = supervisor.start()
        self._supervisors.add(supervisor)
        supervisor.add_done_callback(self._supervisors.discard)
        return sink, results

    async def recognize(self, config: SessionConfig, audio: bytes) -> str | None:
        """Recognize a complete utterance in one request.

        Retryable faults are retried per the configured RetryPolicy.

        Returns:
            Transcript text, or None when nothing was recognized

        """
        self._check_open()
        backend = self.settings.backend(config.backend_id)
        adapter = self._create_adapter(backend)
        endpoint = config.endpoint_uri or (backend.recognize_url if backend.provider == "http" else backend.endpoint)
        if not endpoint:
            raise ConfigurationError(f"Backend {backend.backend_id!r} has no recognize endpoint configured")

        policy = self.settings.retry
        attempts = 0
        refreshed = False
        while True:
            try:
                return await self._recognize_once(adapter, config, endpoint, audio)
            except CredentialRejectedError:
                if refreshed:
                    raise
                refreshed = True
                self.credentials.invalidate(config.backend_id)
                continue
            except SpeechwireError as e:
                if not e.retryable:
                    raise
                attempts += 1
                if policy.exhausted(attempts):
                    raise RetryExhaustedError(attempts, e) from e
                delay = policy.delay_for(attempts, e)
                if delay is None:
                    raise
                logger.warning(f"recognize on {config.backend_id} failed ({e}), retrying in {delay:.2f}s")
                await asyncio.sleep(delay)

    async def _recognize_once(
        self,
        adapter: ProviderAdapter,
        config: SessionConfig,
        endpoint: str,
        audio: bytes,
    ) -> str | None:
        credential = await self.credentials.token(config.backend_id)
        channel = await self.pool.acquire(config.backend_id, endpoint, lambda: adapter.create_channel(endpoint))
        try:
            text = await adapter.recognize(channel, credential, config, audio)
        except ConnectError as e:
            if isinstance(e, StreamDisconnected):
                self.pool.release(channel)
            else:
                await self.pool.discard(channel)
            raise
        except BaseException:
            self.pool.release(channel)
            raise
        self.pool.release(channel)
        logger.debug(f"recognize on {config.backend_id}: {len(audio)} bytes -> {len(text or '')} chars")
        return text

    def health_snapshot(self) -> dict:
        """Read-only counters for host monitoring."""
        return {
            **self.stats.snapshot(),
            "channels_open": len(self.pool),
            "backends": sorted(self.settings.backends),
        }

    async def start_health_server(self, host: str | None = None, port: int | None = None) -> web.AppRunner:
        """Serve health_snapshot() at /health until shutdown().

        Host and port default to the health settings. Calling it again returns
        the running server.
        """
        self._check_open()
        if self._health_runner is None:
            self._health_runner = await start_health_server(
                self,
                host or self.settings.health_host,
                self.settings.health_port if port is None else port,
            )
        return self._health_runner

    async def shutdown(self) -> None:
        """Cancel live streams, close channels and drop cached credentials."""
        if self._closed:
            return
        self._closed = True
        supervisors = list(self._supervisors)
        if supervisors:
            logger.info(f"Cancelling {len(supervisors)} live stream(s)")
            await asyncio.gather(*(supervisor.cancel() for supervisor in supervisors), return_exceptions=True)
        if self._health_runner is not None:
            await self._health_runner.cleanup()
            self._health_runner = None
        await self.pool.close_all()
        if self._credentials is not None:
            await self._credentials.shutdown()
            self._credentials = None
        logger.info("SpeechClient shut down")

    async def __aenter__(self) -> "SpeechClient":
        if self.settings.health_enabled:
            await self.start_health_server()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
