"""Network channels shared by streaming sessions.

- TrustConfig: TLS trust roots (verification is always on)
- GrpcChannel: one grpc.aio channel per provider endpoint
- HttpChannel: one aiohttp session (bounded connection pool) per endpoint
- ChannelPool: reference-counted sharing with idle close
"""

import asyncio
import logging
import ssl
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

import aiohttp
import grpc

from ..core.exceptions import ConfigurationError, ConnectError

logger = logging.getLogger(__name__)

ChannelKey = tuple[str, str]  # (backend_id, endpoint)

_LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1")


@dataclass(frozen=True)
class TrustConfig:
    """Trust roots for server certificate verification.

    ``root_certificates=None`` means the platform default store.
    """

    root_certificates: bytes | None = None

    @classmethod
    def from_file(cls, path: str | None) -> "TrustConfig":
        if not path:
            return cls()
        try:
            return cls(Path(path).expanduser().read_bytes())
        except OSError as e:
            raise ConfigurationError(f"Cannot read trust roots from {path}: {e}") from e

    def ssl_context(self) -> ssl.SSLContext:
        if self.root_certificates:
            return ssl.create_default_context(cadata=self.root_certificates.decode("ascii"))
        return ssl.create_default_context()

    def grpc_credentials(self) -> grpc.ChannelCredentials:
        return grpc.ssl_channel_credentials(root_certificates=self.root_certificates)


class TransportChannel(ABC):
    """A physical connection (or bounded pool) to one provider endpoint."""

    def __init__(self, endpoint: str):
        self.endpoint = endpoint
        self.key: ChannelKey = ("", endpoint)  # Assigned by ChannelPool

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    async def open(self) -> None:
        """Establish the connection.

        Raises:
            ConnectError: Handshake, DNS or refused connection

        """

    @abstractmethod
    async def close(self) -> None:
        ...


def grpc_target(endpoint: str) -> str:
    """``https://host[:port]`` or ``host[:port]`` -> ``host:port`` (443 default)."""
    parsed = urlparse(endpoint if "://" in endpoint else f"//{endpoint}")
    if not parsed.hostname:
        raise ConfigurationError(f"Invalid gRPC endpoint: {endpoint!r}")
    host = f"[{parsed.hostname}]" if ":" in parsed.hostname else parsed.hostname
    return f"{host}:{parsed.port or 443}"


class GrpcChannel(TransportChannel):
    """TLS gRPC channel; HTTP/2 multiplexes every session over it."""

    def __init__(
        self,
        endpoint: str,
        trust: TrustConfig,
        connect_timeout: float = 10.0,
        options: tuple = (),
    ):
        super().__init__(endpoint)
        self.target = grpc_target(endpoint)
        self.trust = trust
        self.connect_timeout = connect_timeout
        self.options = options
        self.channel: grpc.aio.Channel | None = None

    @property
    def is_open(self) -> bool:
        return self.channel is not None

    async def open(self) -> None:
        self.channel = grpc.aio.secure_channel(self.target, self.trust.grpc_credentials(), options=list(self.options))
        try:
            await asyncio.wait_for(self.channel.channel_ready(), timeout=self.connect_timeout)
        except asyncio.TimeoutError as e:
            await self.close()
            raise ConnectError(f"gRPC channel to {self.target} not ready after {self.connect_timeout}s") from e
        except grpc.RpcError as e:
            await self.close()
            raise ConnectError(f"gRPC channel to {self.target} failed: {e}") from e
        logger.info(f"gRPC channel ready: {self.target}")

    async def close(self) -> None:
        if self.channel is not None:
            channel, self.channel = self.channel, None
            await channel.close()
            logger.info(f"gRPC channel closed: {self.target}")


class HttpChannel(TransportChannel):
    """aiohttp session bound to one endpoint with a bounded connection pool."""

    def __init__(
        self,
        endpoint: str,
        trust: TrustConfig,
        connect_timeout: float = 10.0,
        pool_size: int = 4,
    ):
        super().__init__(endpoint)
        self.trust = trust
        self.connect_timeout = connect_timeout
        self.pool_size = pool_size
        self.session: aiohttp.ClientSession | None = None

    @property
    def is_open(self) -> bool:
        return self.session is not None and not self.session.closed

    async def open(self) -> None:
        parsed = urlparse(self.endpoint)
        if parsed.scheme == "http" and parsed.hostname not in _LOOPBACK_HOSTS:
            raise ConnectError(f"Refusing plaintext HTTP to {parsed.hostname}")
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ConfigurationError(f"Invalid HTTP endpoint: {self.endpoint!r}")

        connector = aiohttp.TCPConnector(ssl=self.trust.ssl_context(), limit_per_host=self.pool_size)
        self.session = aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.connect_timeout),
        )
        logger.info(f"HTTP channel opened: {parsed.hostname} (pool_size={self.pool_size})")

    async def close(self) -> None:
        if self.session is not None:
            session, self.session = self.session, None
            await session.close()
            logger.info(f"HTTP channel closed: {self.endpoint}")


@dataclass
class _PoolEntry:
    channel: TransportChannel
    refcount: int = 0
    idle_task: asyncio.Task | None = field(default=None, repr=False)


class ChannelPool:
    """Shares one open channel per (backend_id, endpoint) among sessions.

    Channels are reference-counted. When the last session releases a
    channel it is closed after ``idle_timeout`` seconds (0 closes at once,
    None keeps it until close_all()).
    """

    def __init__(self, idle_timeout: float | None = 60.0):
        self.idle_timeout = idle_timeout
        self._entries: dict[ChannelKey, _PoolEntry] = {}
        # Discarded channels still held by sessions, by id(channel)
        self._retired: dict[int, _PoolEntry] = {}
        self._opening: dict[ChannelKey, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self.opened_count = 0

    def __len__(self) -> int:
        return len(self._entries)

    def refcount(self, backend_id: str, endpoint: str) -> int:
        entry = self._entries.get((backend_id, endpoint))
        return entry.refcount if entry else 0

    async def acquire(
        self,
        backend_id: str,
        endpoint: str,
        factory: Callable[[], TransportChannel],
    ) -> TransportChannel:
        """Return the shared open channel for the key, opening it if needed.

        Raises:
            ConnectError: If the channel cannot be opened

        """
        key = (backend_id, endpoint)
        entry = self._entries.get(key)
        if entry is None:
            task = self._opening.get(key)
            if task is None:
                task = asyncio.create_task(self._open(key, factory), name=f"channel-open-{backend_id}")
                self._opening[key] = task
                task.add_done_callback(lambda t, k=key: self._opening.pop(k, None))
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                # The open keeps running; an unclaimed channel must still be idle-closed.
                task.add_done_callback(lambda t, k=key: self._reap_unclaimed(k))
                raise
            entry = self._entries[key]

        self._cancel_idle(entry)
        entry.refcount += 1
        return entry.channel

    async def _open(self, key: ChannelKey, factory: Callable[[], TransportChannel]) -> TransportChannel:
        channel = factory()
        channel.key = key
        try:
            await channel.open()
        except ConnectError:
            raise
        except OSError as e:
            raise ConnectError(f"Cannot open channel to {key[1]}: {e}") from e
        self.opened_count += 1
        self._entries[key] = _PoolEntry(channel)
        return channel

    def _reap_unclaimed(self, key: ChannelKey) -> None:
        entry = self._entries.get(key)
        if entry is not None and entry.refcount == 0:
            self._schedule_idle(key, entry)

    def release(self, channel: TransportChannel) -> None:
        entry = self._entries.get(channel.key)
        if entry is not None and entry.channel is channel:
            entry.refcount = max(0, entry.refcount - 1)
            if entry.refcount == 0:
                self._schedule_idle(channel.key, entry)
            return

        retired = self._retired.get(id(channel))
        if retired is not None:
            retired.refcount -= 1
            if retired.refcount <= 0:
                del self._retired[id(channel)]
                self._spawn(channel.close())

    async def discard(self, channel: TransportChannel) -> None:
        """Release a broken channel and keep it out of later acquires.

        Sessions still holding the channel keep using it; it is closed once
        the last of them lets go.
        """
        entry = self._entries.get(channel.key)
        if entry is not None and entry.channel is channel:
            self._cancel_idle(entry)
            del self._entries[channel.key]
            logger.warning(f"Discarding channel {channel.key[0]}@{channel.endpoint}")
        else:
            entry = self._retired.pop(id(channel), None)
            if entry is None:
                await channel.close()
                return

        entry.refcount -= 1
        if entry.refcount > 0:
            self._retired[id(channel)] = entry
            return
        await channel.close()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _cancel_idle(self, entry: _PoolEntry) -> None:
        if entry.idle_task is not None:
            entry.idle_task.cancel()
            entry.idle_task = None

    def _schedule_idle(self, key: ChannelKey, entry: _PoolEntry) -> None:
        if self.idle_timeout is None or entry.idle_task is not None:
            return
        task = asyncio.create_task(self._close_when_idle(key, entry, self.idle_timeout))
        entry.idle_task = task
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _close_when_idle(self, key: ChannelKey, entry: _PoolEntry, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        if entry.idle_task is asyncio.current_task():
            entry.idle_task = None
        if self._entries.get(key) is not entry or entry.refcount > 0:
            return
        del self._entries[key]
        logger.debug(f"Closing idle channel {key[0]}@{key[1]}")
        await entry.channel.close()

    async def close_all(self) -> None:
        for task in list(self._opening.values()):
            task.cancel()
        entries = list(self._entries.values()) + list(self._retired.values())
        self._entries.clear()
        self._retired.clear()
        for entry in entries:
            self._cancel_idle(entry)
        # Remaining background tasks are closes already under way
        closing = [entry.channel.close() for entry in entries]
        await asyncio.gather(*closing, *self._background, return_exceptions=True)
