"""Unit tests for ResultQueue, ChunkSink, ResultStream and Transcript."""

import asyncio

import pytest

from fakes import final, interim
from speechwire.core.exceptions import SessionClosedError, SessionStateError, StreamDisconnected
from speechwire.streaming.channels import END_OF_INPUT, ChunkSink, ResultQueue, ResultStream, Transcript
from speechwire.streaming.types import AudioChunk, PartialDataLoss, SessionState


class StubController:
    def __init__(self):
        self.state = SessionState.STREAMING
        self.cancelled = 0

    async def cancel(self):
        self.cancelled += 1
        self.state = SessionState.FAILED


class TestResultQueue:
    """Test ResultQueue ordering, coalescing and termination."""

    @pytest.mark.asyncio
    async def test_interims_for_same_index_coalesce(self):
        queue = ResultQueue(8)
        await queue.put(interim("h"))
        await queue.put(interim("he"))
        await queue.put(interim("hel"))

        assert len(queue) == 1
        assert queue.coalesced == 2
        assert (await queue.get()).text == "hel"

    @pytest.mark.asyncio
    async def test_finals_and_other_indexes_are_kept(self):
        queue = ResultQueue(8)
        await queue.put(interim("a"))
        await queue.put(final("a"))
        await queue.put(interim("b", 1))
        await queue.put(PartialDataLoss(0, 1, 2))
        await queue.put(interim("bc", 1))

        assert len(queue) == 5

    @pytest.mark.asyncio
    async def test_error_delivered_after_items_exactly_once(self):
        queue = ResultQueue(8)
        await queue.put(final("a"))
        queue.close(StreamDisconnected("gone"))

        assert (await queue.get()).text == "a"
        with pytest.raises(StreamDisconnected):
            await queue.get()
        assert await queue.get() is None

    @pytest.mark.asyncio
    async def test_put_waits_for_room(self):
        queue = ResultQueue(1)
        await queue.put(final("a"))
        blocked = asyncio.create_task(queue.put(final("b", 1)))
        await asyncio.sleep(0)
        assert not blocked.done()

        await queue.get()
        assert await asyncio.wait_for(blocked, 1)
        assert (await queue.get()).text == "b"

    @pytest.mark.asyncio
    async def test_put_after_close_is_dropped(self):
        queue = ResultQueue(1)
        queue.close()

        assert await queue.put(final("late")) is False
        assert await queue.get() is None


class TestChunkSink:
    """Test ChunkSink numbering and closing."""

    @pytest.mark.asyncio
    async def test_bytes_are_numbered_from_zero(self):
        queue = asyncio.Queue()
        sink = ChunkSink(queue, StubController())

        first = await sink.send(b"a")
        second = await sink.send(b"b")

        assert (first.seq, second.seq) == (0, 1)
        assert sink.last_seq == 1

    @pytest.mark.asyncio
    async def test_explicit_seq_must_increase(self):
        sink = ChunkSink(asyncio.Queue(), StubController())
        await sink.send(AudioChunk(b"a", 10))

        with pytest.raises(SessionStateError):
            await sink.send(AudioChunk(b"b", 10))

        assert (await sink.send(b"c")).seq == 11

    @pytest.mark.asyncio
    async def test_cancelled_send_does_not_consume_seq(self):
        queue = asyncio.Queue(maxsize=1)
        sink = ChunkSink(queue, StubController())
        await sink.send(b"a")
        blocked = asyncio.create_task(sink.send(b"b"))
        await asyncio.sleep(0)

        blocked.cancel()
        with pytest.raises(asyncio.CancelledError):
            await blocked
        assert sink.last_seq == 0

        queue.get_nowait()
        assert (await sink.send(b"c")).seq == 1

    @pytest.mark.asyncio
    async def test_concurrent_sends_get_distinct_seqs(self):
        queue = asyncio.Queue(maxsize=1)
        sink = ChunkSink(queue, StubController())
        senders = [asyncio.create_task(sink.send(data)) for data in (b"a", b"b", b"c")]

        received = []
        while len(received) < 3:
            received.append(await queue.get())
        chunks = await asyncio.gather(*senders)

        assert sorted(chunk.seq for chunk in chunks) == [0, 1, 2]
        assert [chunk.seq for chunk in received] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_close_queues_end_marker_once(self):
        queue = asyncio.Queue()
        sink = ChunkSink(queue, StubController())

        await sink.close()
        await sink.close()

        assert queue.qsize() == 1
        assert queue.get_nowait() is END_OF_INPUT
        with pytest.raises(SessionClosedError):
            await sink.send(b"late")

    @pytest.mark.asyncio
    async def test_context_manager_closes_or_aborts(self):
        controller = StubController()
        queue = asyncio.Queue()
        async with ChunkSink(queue, controller) as sink:
            await sink.send(b"a")
        assert queue.qsize() == 2
        assert controller.cancelled == 0

        with pytest.raises(RuntimeError):
            async with ChunkSink(asyncio.Queue(), controller) as sink:
                raise RuntimeError("microphone unplugged")
        assert controller.cancelled == 1

    @pytest.mark.asyncio
    async def test_terminated_sink_rejects_audio(self):
        sink = ChunkSink(asyncio.Queue(), StubController())
        sink.mark_terminated()

        with pytest.raises(SessionClosedError):
            await sink.send(b"a")


class TestResultStream:
    """Test ResultStream iteration."""

    @pytest.mark.asyncio
    async def test_iterates_until_closed(self):
        queue = ResultQueue(4)
        stream = ResultStream(queue, StubController())
        await queue.put(final("a"))
        queue.close()

        assert [event.text async for event in stream] == ["a"]

    @pytest.mark.asyncio
    async def test_aclose_cancels_controller(self):
        controller = StubController()
        stream = ResultStream(ResultQueue(4), controller)

        await stream.aclose()

        assert controller.cancelled == 1
        assert stream.state == SessionState.FAILED


class TestTranscript:
    """Test Transcript state tracking."""

    def test_tracks_latest_per_index(self):
        transcript = Transcript()
        changes = [
            transcript.apply(interim("hel")),
            transcript.apply(interim("hel")),
            transcript.apply(final("hello")),
            transcript.apply(interim("wor", 1)),
        ]

        assert changes == [True, False, True, True]
        assert transcript.text == "hello"
        assert not transcript.is_final

    def test_final_is_not_revised(self):
        transcript = Transcript()
        transcript.apply(final("hello"))

        assert transcript.apply(interim("jello")) is False
        assert transcript.segments[0].text == "hello"
        assert transcript.is_final

    def test_ignores_advisories(self):
        transcript = Transcript()

        assert transcript.apply(PartialDataLoss(0, 0, 1)) is False
        assert transcript.text == ""
