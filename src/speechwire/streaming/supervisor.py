"""Reconnecting driver around StreamSession.

SessionSupervisor owns one logical stream for the caller. It opens a
StreamSession, pumps audio into it and results out of it, and when a
recoverable fault ends the session it:
1. Tears the failed session down
2. Waits per RetryPolicy (reporting RetryScheduled in-band)
3. Opens a new session (fresh credential, possibly fresh channel)
4. Reports PartialDataLoss if unacknowledged audio fell out of the window
5. Replays the remaining unacknowledged chunks and resumes

Non-retryable faults end the stream at once with that error.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import TYPE_CHECKING

from ..core.exceptions import (
    CredentialRejectedError,
    RetryExhaustedError,
    SessionClosedError,
    SessionStateError,
    SpeechwireError,
)
from .channels import END_OF_INPUT, ChunkSink, ResultQueue, ResultStream
from .replay import ReplayBuffer
from .retry import RetryPolicy
from .session import StreamSession
from .types import ControlSignal, RecognitionResult, RetryScheduled, SessionConfig, SessionState, SignalKind

if TYPE_CHECKING:
    from ..auth.credentials import CredentialProvider
    from ..health import SessionStats

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str], StreamSession]


class SessionSupervisor:
    """Drives retries, replay and index rebasing for one logical stream.

    Example:
        supervisor = SessionSupervisor(config, session_factory, credentials)
        sink, results = supervisor.start()

    """

    def __init__(
        self,
        config: SessionConfig,
        session_factory: SessionFactory,
        credentials: "CredentialProvider",
        policy: RetryPolicy | None = None,
        replay_window: int = 200,
        input_queue_size: int = 32,
        result_queue_size: int = 64,
        stats: "SessionStats | None" = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.stream_id = f"stream_{uuid.uuid4().hex[:8]}"
        self.config = config
        self.policy = policy or RetryPolicy()
        self._session_factory = session_factory
        self._credentials = credentials
        self._stats = stats
        self._sleep = sleep

        self._input: asyncio.Queue = asyncio.Queue(maxsize=max(1, input_queue_size))
        self._results = ResultQueue(result_queue_size)
        self._replay = ReplayBuffer(replay_window)
        self.sink = ChunkSink(self._input, self)
        self.stream = ResultStream(self._results, self)

        self._state = SessionState.CONNECTING
        self.failure: BaseException | None = None
        self._driver: asyncio.Task | None = None
        self._session: StreamSession | None = None
        self._input_ended = False
        self._progress = False

        # Caller-visible result indexes stay monotonic across sessions
        self._index_base = 0
        self._last_final_index: int | None = None

        self.attempts = 0  # Consecutive failed attempts
        self.sessions_opened = 0

    @property
    def state(self) -> SessionState:
        return self._state

    def _update_state(self, new_state: SessionState) -> None:
        if new_state != self._state and not self._state.is_terminal:
            logger.debug(f"{self.stream_id}: {self._state.value} -> {new_state.value}")
            self._state = new_state

    def start(self) -> tuple[ChunkSink, ResultStream]:
        """Start the driver task and return the caller's two ends."""
        if self._driver is not None:
            raise SessionStateError(f"Supervisor {self.stream_id} already started")
        if self._stats is not None:
            self._stats.session_started()
        self._driver = asyncio.create_task(self._drive(), name=f"supervisor-{self.stream_id}")
        logger.info(f"{self.stream_id} started for backend {self.config.backend_id}")
        return self.sink, self.stream

    async def cancel(self) -> None:
        """Cancel the stream; the live call is aborted and channels released."""
        driver = self._driver
        if driver is not None and not driver.done():
            driver.cancel()
            try:
                await driver
            except asyncio.CancelledError:
                if not driver.cancelled():
                    raise
        # No-op if the driver already terminated the stream
        self._terminate(SessionClosedError(f"Stream {self.stream_id} was cancelled"))

    async def wait_closed(self) -> None:
        if self._driver is not None:
            await asyncio.wait({self._driver})

    def add_done_callback(self, callback: Callable[["SessionSupervisor"], None]) -> None:
        if self._driver is None:
            raise SessionStateError(f"Supervisor {self.stream_id} not started")
        self._driver.add_done_callback(lambda _task: callback(self))

    async def _drive(self) -> None:
        try:
            await self._run()
        except asyncio.CancelledError:
            self._terminate(SessionClosedError(f"Stream {self.stream_id} was cancelled"))
            raise
        except SpeechwireError as e:
            self._terminate(e)
        except Exception as e:
            logger.exception(f"Unexpected failure in {self.stream_id}")
            self._terminate(e)
        else:
            self._terminate(None)

    def _terminate(self, error: BaseException | None) -> None:
        if self._state.is_terminal:
            return
        self.failure = error
        self._state = SessionState.FAILED if error is not None else SessionState.CLOSED
        self._results.close(error)
        self.sink.mark_terminated()

        # Unblock producers suspended on a full input queue
        while True:
            try:
                self._input.get_nowait()
            except asyncio.QueueEmpty:
                break

        if self._stats is not None:
            self._stats.session_finished(error)
        if error is None:
            logger.info(f"{self.stream_id} completed after {self.sessions_opened} session(s)")
        else:
            logger.warning(f"{self.stream_id} ended with {type(error).__name__}: {error}")

    def _open_session(self) -> StreamSession:
        session_id = f"{self.stream_id}.{self.sessions_opened}"
        self.sessions_opened += 1
        self._index_base = self._last_final_index + 1 if self._last_final_index is not None else 0
        return self._session_factory(session_id)

    async def _run(self) -> None:
        forced_refresh = False

        while True:
            session = self._open_session()
            self._session = session
            self._progress = False
            try:
                await session.connect()
                self._update_state(SessionState.DRAINING if self._input_ended else SessionState.STREAMING)
                if self.sessions_opened > 1:
                    loss = self._replay.take_loss()
                    if loss is not None:
                        logger.warning(
                            f"{self.stream_id}: {loss.count} chunk(s) seq {loss.first_seq}..{loss.last_seq} "
                            f"fell out of the replay window"
                        )
                        await self._results.put(loss)
                await self._exchange(session)
            except SpeechwireError as e:
                error = e
            else:
                return
            finally:
                await session.close()
                self._session = None

            if self._progress:
                self.attempts = 0
                forced_refresh = False
            self.attempts += 1

            if isinstance(error, CredentialRejectedError):
                if forced_refresh:
                    raise error
                forced_refresh = True
                self._credentials.invalidate(self.config.backend_id)
                delay = 0.0
            else:
                forced_refresh = False
                if not error.retryable:
                    raise error
                delay = self.policy.delay_for(self.attempts, error)
                if delay is None:
                    raise error

            if self.policy.exhausted(self.attempts):
                raise RetryExhaustedError(self.attempts, error) from error

            if self._stats is not None:
                self._stats.reconnect()
            logger.warning(
                f"{self.stream_id}: {type(error).__name__} ({error}), "
                f"reconnecting in {delay:.2f}s (attempt {self.attempts}/{self.policy.max_attempts})"
            )
            await self._results.put(RetryScheduled(attempt=self.attempts, delay_seconds=delay, reason=str(error)))
            self._update_state(SessionState.CONNECTING)
            if delay > 0:
                await self._sleep(delay)

    async def _exchange(self, session: StreamSession) -> None:
        sender = asyncio.create_task(self._send_loop(session), name=f"{session.session_id}-send")
        receiver = asyncio.create_task(self._receive_loop(session), name=f"{session.session_id}-recv")
        try:
            done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in done and receiver.exception() is None:
                return
            errors = [task.exception() for task in done if task.exception() is not None]
            if errors:
                # Prefer the fault that failed the session over a follow-on error
                if isinstance(session.failure, SpeechwireError):
                    raise session.failure
                raise errors[0]
            if receiver not in done:
                await receiver
        finally:
            for task in (sender, receiver):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sender, receiver, return_exceptions=True)

    async def _send_loop(self, session: StreamSession) -> None:
        pending = self._replay.pending()
        if pending:
            logger.info(f"{session.session_id}: replaying {len(pending)} unacknowledged chunk(s)")
        for chunk in pending:
            await session.send(chunk)

        if not self._input_ended:
            while True:
                item = await self._input.get()
                if item is END_OF_INPUT:
                    self._input_ended = True
                    break
                self._replay.append(item)
                await session.send(item)

        await session.end_input()
        self._update_state(SessionState.DRAINING)

    async def _receive_loop(self, session: StreamSession) -> None:
        async for item in session.results():
            self._progress = True
            if isinstance(item, ControlSignal):
                if item.kind is SignalKind.ACK and item.seq is not None:
                    self._replay.ack(item.seq)
                continue
            await self._results.put(self._rebase(item))

    def _rebase(self, result: RecognitionResult) -> RecognitionResult:
        index = result.result_index + self._index_base
        if result.is_final:
            self._last_final_index = index
        if index == result.result_index:
            return result
        return replace(result, result_index=index)
