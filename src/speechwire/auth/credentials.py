"""Bearer credential cache with refresh deduplication.

CredentialProvider hands out short-lived bearer credentials per backend.
Concurrent callers share a single in-flight refresh, and a refresh keeps
running (and its result is cached) even when the caller that started it is
cancelled.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from ..core.exceptions import ConfigurationError, SpeechwireError, TransientAuthError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    """An issued bearer credential. Replaced on refresh, never mutated."""

    bearer_value: str
    expires_at: float  # Unix timestamp
    backend_id: str

    def is_usable(self, now: float, skew: float) -> bool:
        return now < self.expires_at - skew

    def seconds_left(self, now: float) -> float:
        return self.expires_at - now

    @property
    def authorization(self) -> str:
        return f"Bearer {self.bearer_value}"

    def __repr__(self) -> str:
        return f"Credential(backend_id={self.backend_id!r}, expires_at={self.expires_at!r})"


@runtime_checkable
class TokenSource(Protocol):
    """Anything that can mint a fresh bearer value for one backend."""

    async def fetch(self) -> tuple[str, float]:
        """Return (bearer_value, expires_at unix timestamp)."""
        ...


TokenSourceFactory = Callable[[str], TokenSource]


class CredentialProvider:
    """Process-scoped credential cache.

    Token sources are created lazily from ``source_factory`` the first time
    a backend asks for a token. ``shutdown()`` drops every cached credential.
    """

    def __init__(
        self,
        source_factory: TokenSourceFactory,
        min_validity: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self._source_factory = source_factory
        self.min_validity = min_validity
        self._clock = clock
        self._sources: dict[str, TokenSource] = {}
        self._cache: dict[str, Credential] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self.refresh_count = 0

    def cached(self, backend_id: str) -> Credential | None:
        return self._cache.get(backend_id)

    async def token(self, backend_id: str) -> Credential:
        """Return a credential valid for at least ``min_validity`` seconds.

        Raises:
            AuthError: The token endpoint rejected our key material
            TransientAuthError: Network failure during refresh (retryable)

        """
        cached = self._cache.get(backend_id)
        if cached is not None and cached.is_usable(self._clock(), self.min_validity):
            return cached

        task = self._inflight.get(backend_id)
        if task is None:
            task = asyncio.create_task(self._refresh(backend_id), name=f"credential-refresh-{backend_id}")
            self._inflight[backend_id] = task
            task.add_done_callback(lambda t, b=backend_id: self._refresh_done(b, t))

        # Shielded: cancelling this caller must not abort a refresh other sessions share.
        return await asyncio.shield(task)

    def _refresh_done(self, backend_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(backend_id) is task:
            del self._inflight[backend_id]
        if not task.cancelled():
            # Retrieve the exception so an unawaited failure is not reported as never retrieved.
            task.exception()

    async def _refresh(self, backend_id: str) -> Credential:
        source = self._source_for(backend_id)
        self.refresh_count += 1
        try:
            bearer_value, expires_at = await source.fetch()
        except SpeechwireError:
            raise
        except (OSError, asyncio.TimeoutError) as e:
            raise TransientAuthError(f"Credential refresh for {backend_id} failed: {e}") from e

        now = self._clock()
        credential = Credential(bearer_value=bearer_value, expires_at=expires_at, backend_id=backend_id)
        if credential.seconds_left(now) <= 0:
            raise TransientAuthError(f"Token endpoint for {backend_id} issued an already expired credential")
        if not credential.is_usable(now, self.min_validity):
            # Never cached or returned below min_validity
            raise TransientAuthError(
                f"Credential for {backend_id} expires in {credential.seconds_left(now):.0f}s, "
                f"less than min_validity={self.min_validity:.0f}s"
            )

        self._cache[backend_id] = credential
        logger.info(f"Refreshed credential for {backend_id}, valid for {credential.seconds_left(now):.0f}s")
        return credential

    def _source_for(self, backend_id: str) -> TokenSource:
        source = self._sources.get(backend_id)
        if source is None:
            try:
                source = self._source_factory(backend_id)
            except ConfigurationError:
                raise
            except (KeyError, ValueError) as e:
                raise ConfigurationError(f"Cannot build token source for {backend_id}: {e}") from e
            self._sources[backend_id] = source
        return source

    def invalidate(self, backend_id: str) -> None:
        """Drop the cached credential so the next token() refreshes."""
        if self._cache.pop(backend_id, None) is not None:
            logger.info(f"Invalidated cached credential for {backend_id}")

    async def shutdown(self) -> None:
        """Drop cached credentials. In-flight refreshes are allowed to finish."""
        pending = list(self._inflight.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for source in self._sources.values():
            close = getattr(source, "close", None)
            if close is not None:
                await close()
        self._sources.clear()
        self._cache.clear()
