"""Caller-facing ends of a supervised stream.

- ChunkSink: audio in (bounded, suspends when full)
- ResultStream: results and advisories out, ending cleanly or with one error
- ResultQueue: the bounded buffer behind ResultStream
- Transcript: latest-result-per-index view for callers that want text
"""

import asyncio
from collections import deque
from typing import Protocol

from ..core.exceptions import SessionClosedError, SessionStateError
from .types import AudioChunk, RecognitionResult, SessionState, StreamEvent

# Queued by ChunkSink.close(); tells the sender to half-close the stream
END_OF_INPUT = object()


class ResultQueue:
    """Bounded result buffer with interim coalescing.

    If the newest pending item is an interim result and a newer interim
    for the same index arrives, the pending one is replaced instead of
    queueing both. A consumer that falls behind therefore sees the latest
    revision rather than every revision.
    """

    def __init__(self, maxsize: int = 64):
        self.maxsize = max(1, maxsize)
        self._items: deque[StreamEvent] = deque()
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()
        self._writable.set()
        self._closed = False
        self._error: BaseException | None = None
        self._error_delivered = False
        self.coalesced = 0

    def __len__(self) -> int:
        return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    def _coalesce(self, event: StreamEvent) -> bool:
        if not isinstance(event, RecognitionResult) or event.is_final or not self._items:
            return False
        last = self._items[-1]
        if isinstance(last, RecognitionResult) and not last.is_final and last.result_index == event.result_index:
            self._items[-1] = event
            self.coalesced += 1
            return True
        return False

    async def put(self, event: StreamEvent) -> bool:
        """Queue an event, suspending while the queue is full.

        Returns:
            False if the queue was closed and the event dropped

        """
        while True:
            if self._closed:
                return False
            if self._coalesce(event):
                return True
            if len(self._items) < self.maxsize:
                break
            self._writable.clear()
            await self._writable.wait()

        self._items.append(event)
        self._readable.set()
        return True

    async def get(self) -> StreamEvent | None:
        """Next event; None once closed and drained.

        A terminal error passed to close() is raised exactly once, after
        every queued event has been delivered.
        """
        while not self._items:
            if self._closed:
                if self._error is not None and not self._error_delivered:
                    self._error_delivered = True
                    raise self._error
                return None
            self._readable.clear()
            await self._readable.wait()

        event = self._items.popleft()
        self._writable.set()
        return event

    def close(self, error: BaseException | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        self._error = error
        self._readable.set()
        self._writable.set()


class StreamController(Protocol):
    """What the caller-facing ends need from the supervisor."""

    @property
    def state(self) -> SessionState:
        ...

    async def cancel(self) -> None:
        ...


class ChunkSink:
    """Accepts audio for one supervised stream.

    Raw bytes are numbered automatically; AudioChunks must carry strictly
    increasing sequence numbers.

    Example:
        async with sink:
            for block in blocks:
                await sink.send(block)
        # Leaving the block signals end of audio

    """

    def __init__(self, queue: asyncio.Queue, controller: StreamController):
        self._queue = queue
        self._controller = controller
        self._last_seq: int | None = None
        self._send_lock = asyncio.Lock()
        self._input_closed = False
        self._terminated = False

    @property
    def closed(self) -> bool:
        return self._input_closed or self._terminated

    @property
    def last_seq(self) -> int | None:
        return self._last_seq

    def mark_terminated(self) -> None:
        self._terminated = True

    async def send(self, audio: bytes | AudioChunk) -> AudioChunk:
        """Queue audio for sending; suspends while the input queue is full.

        Raises:
            SessionClosedError: Input was closed or the stream has ended
            SessionStateError: AudioChunk sequence number did not increase

        """
        async with self._send_lock:
            if self.closed:
                raise SessionClosedError("Stream no longer accepts audio")

            if isinstance(audio, AudioChunk):
                if self._last_seq is not None and audio.seq <= self._last_seq:
                    raise SessionStateError(f"Chunk seq {audio.seq} is not greater than last seq {self._last_seq}")
                chunk = audio
            else:
                seq = 0 if self._last_seq is None else self._last_seq + 1
                chunk = AudioChunk(bytes(audio), seq)

            await self._queue.put(chunk)
            # A send cancelled while the queue was full leaves the numbering untouched
            self._last_seq = chunk.seq
        if self._terminated:
            raise SessionClosedError("Stream ended before the chunk was sent")
        return chunk

    async def close(self) -> None:
        """Signal end of audio. Safe to call more than once."""
        if self.closed:
            return
        self._input_closed = True
        await self._queue.put(END_OF_INPUT)

    async def abort(self) -> None:
        """Cancel the whole stream without waiting for remaining results."""
        self._input_closed = True
        await self._controller.cancel()

    async def __aenter__(self) -> "ChunkSink":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            await self.close()
        else:
            await self.abort()


class ResultStream:
    """Async iterator over RecognitionResults and advisories."""

    def __init__(self, queue: ResultQueue, controller: StreamController):
        self._queue = queue
        self._controller = controller

    @property
    def state(self) -> SessionState:
        return self._controller.state

    def __aiter__(self) -> "ResultStream":
        return self

    async def __anext__(self) -> StreamEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def aclose(self) -> None:
        await self._controller.cancel()


class Transcript:
    """Latest result per result_index.

    apply() returns True when the visible state changed, so counting True
    returns gives the number of distinct states a caller observed.
    """

    def __init__(self):
        self._segments: dict[int, RecognitionResult] = {}

    def apply(self, event: StreamEvent) -> bool:
        if not isinstance(event, RecognitionResult):
            return False
        current = self._segments.get(event.result_index)
        if current == event or (current is not None and current.is_final):
            return False
        self._segments[event.result_index] = event
        return True

    @property
    def segments(self) -> list[RecognitionResult]:
        return [self._segments[index] for index in sorted(self._segments)]

    @property
    def is_final(self) -> bool:
        return bool(self._segments) and all(result.is_final for result in self._segments.values())

    @property
    def text(self) -> str:
        return " ".join(result.text for result in self.segments if result.is_final and result.text)
