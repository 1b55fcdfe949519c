"""Single provider stream.

StreamSession binds one credential and one shared channel to one wire call:
- connect(): token, channel, initial config frame
- send() / end_input(): audio out, then half-close
- results(): decoded results and acknowledgements, in remote order

It does not reconnect; SessionSupervisor owns retries.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from ..core.exceptions import (
    ConnectError,
    ProtocolError,
    SessionStateError,
    SpeechwireError,
    StreamDisconnected,
)
from .types import AudioChunk, ControlSignal, RecognitionResult, SessionConfig, SessionState, SignalKind

if TYPE_CHECKING:
    from ..auth.credentials import CredentialProvider
    from ..transport.channel import ChannelPool, TransportChannel
    from .adapters.base import ProviderAdapter, WireCall

logger = logging.getLogger(__name__)


class StreamSession:
    """One authenticated stream against one provider endpoint.

    Example:
        session = StreamSession(config, adapter, credentials, pool, endpoint)
        await session.connect()
        await session.send(AudioChunk(data, seq=0))
        await session.end_input()
        async for item in session.results():
            ...
        await session.close()

    """

    def __init__(
        self,
        config: SessionConfig,
        adapter: "ProviderAdapter",
        credentials: "CredentialProvider",
        pool: "ChannelPool",
        endpoint: str,
        session_id: str | None = None,
    ):
        self.session_id = session_id or f"stream_{uuid.uuid4().hex[:8]}"
        self.config = config
        self.adapter = adapter
        self.endpoint = endpoint
        self._credentials = credentials
        self._pool = pool

        self._state = SessionState.CONNECTING
        self.failure: BaseException | None = None
        self._channel: "TransportChannel | None" = None
        self._call: "WireCall | None" = None

        # Ordering
        self._last_seq: int | None = None
        self._last_index: int | None = None
        self._last_final_index: int | None = None

        self.chunks_sent = 0
        self.results_received = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def last_seq(self) -> int | None:
        return self._last_seq

    def _update_state(self, new_state: SessionState) -> None:
        if new_state != self._state:
            logger.debug(f"{self.session_id}: {self._state.value} -> {new_state.value}")
        self._state = new_state

    def _fail(self, error: BaseException) -> None:
        if self._state.is_terminal:
            return
        self.failure = error
        self._update_state(SessionState.FAILED)
        logger.warning(f"{self.session_id} failed: {type(error).__name__}: {error}")

    async def connect(self) -> None:
        """Obtain a credential and a channel, then open the wire call.

        Raises:
            AuthError, TransientAuthError: Credential could not be obtained
            ConnectError: Channel could not be opened

        """
        if self._state != SessionState.CONNECTING:
            raise SessionStateError(f"Session {self.session_id} already connected (state={self._state.value})")

        backend_id = self.config.backend_id
        try:
            credential = await self._credentials.token(backend_id)
            self._channel = await self._pool.acquire(
                backend_id, self.endpoint, lambda: self.adapter.create_channel(self.endpoint)
            )
            initial_frame = self.adapter.encode_config(self.config, credential)
            self._call = await self.adapter.open_call(self._channel, initial_frame)
        except SpeechwireError as e:
            self._fail(e)
            await self.close()
            raise
        except asyncio.CancelledError:
            await self.close()
            raise

        self._update_state(SessionState.STREAMING)
        logger.info(f"{self.session_id} streaming to {backend_id} ({self.adapter.name})")

    async def send(self, chunk: AudioChunk) -> None:
        """Encode and transmit one chunk; suspends on transport backpressure.

        Raises:
            SessionStateError: Not streaming, or seq not increasing
            ConnectError: The transport failed (session is then FAILED)

        """
        if self._state != SessionState.STREAMING:
            raise SessionStateError(f"Cannot send on {self.session_id} in state {self._state.value}")
        if self._last_seq is not None and chunk.seq <= self._last_seq:
            raise SessionStateError(f"Chunk seq {chunk.seq} is not greater than last seq {self._last_seq}")

        frame = self.adapter.encode_audio(chunk)
        try:
            await self._call.write(frame)
        except SpeechwireError as e:
            self._fail(e)
            raise
        self._last_seq = chunk.seq
        self.chunks_sent += 1

    async def end_input(self) -> None:
        """Tell the remote no more audio follows and move to DRAINING."""
        if self._state != SessionState.STREAMING:
            raise SessionStateError(f"Cannot end input on {self.session_id} in state {self._state.value}")
        self._update_state(SessionState.DRAINING)
        try:
            await self._call.done_writing()
        except SpeechwireError as e:
            self._fail(e)
            raise
        logger.debug(f"{self.session_id}: end of input after {self.chunks_sent} chunks")

    def _check_order(self, result: RecognitionResult) -> None:
        index = result.result_index
        if self._last_index is not None and index < self._last_index:
            raise ProtocolError(f"Result index went backwards: {index} after {self._last_index}")
        if not result.is_final and self._last_final_index is not None and index <= self._last_final_index:
            raise ProtocolError(f"Interim result for index {index} after index {self._last_final_index} was finalized")
        self._last_index = index
        if result.is_final:
            self._last_final_index = index

    async def results(self) -> AsyncIterator[RecognitionResult | ControlSignal]:
        """Yield results and acknowledgements until the remote completes.

        Completion signals are consumed here and end the iteration.

        Raises:
            StreamDisconnected: Stream ended before end of input
            ProtocolError: Malformed or out-of-order frame

        """
        if self._call is None:
            raise SessionStateError(f"Session {self.session_id} is not connected")

        while not self._state.is_terminal:
            try:
                frame = await self._call.read()
                if frame is None:
                    if self._state != SessionState.DRAINING:
                        raise StreamDisconnected(f"Remote closed {self.session_id} before end of input")
                    self._update_state(SessionState.CLOSED)
                    return
                items = self.adapter.decode_result(frame)
                completed = False
                for item in items:
                    if isinstance(item, RecognitionResult):
                        self._check_order(item)
                        self.results_received += 1
                    elif item.kind is SignalKind.COMPLETED:
                        completed = True
                        continue
                    yield item
            except SpeechwireError as e:
                if self._state == SessionState.CLOSED:
                    # Aborted locally while a read was pending
                    return
                self._fail(e)
                raise

            if completed:
                self._update_state(SessionState.CLOSED)
                logger.debug(f"{self.session_id}: remote completed the stream")
                return

    def abort(self) -> None:
        """Cancel the wire call immediately."""
        if self._call is not None:
            self._call.cancel()
        if not self._state.is_terminal:
            self._update_state(SessionState.CLOSED)

    async def close(self) -> None:
        """Abort if still live and hand the channel back to the pool."""
        self.abort()
        channel, self._channel = self._channel, None
        if channel is None:
            return
        if isinstance(self.failure, ConnectError) and not isinstance(self.failure, StreamDisconnected):
            await self._pool.discard(channel)
        else:
            self._pool.release(channel)
