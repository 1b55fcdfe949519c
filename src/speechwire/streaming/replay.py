"""Replay buffer for unacknowledged audio.

Provides ReplayBuffer that keeps a bounded window of sent-but-unacknowledged
chunks with:
- Trimming on acknowledgement
- Eviction of the oldest chunk when the window overflows
- Tracking of evicted ranges so a reconnect can report the gap
"""

import logging
from collections import deque

from .types import AudioChunk, PartialDataLoss

logger = logging.getLogger(__name__)


class ReplayBuffer:
    """Sliding window of unacknowledged chunks, bounded by chunk count.

    Example:
        replay = ReplayBuffer(window=200)
        replay.append(chunk)       # Before the chunk is written to the wire
        replay.ack(41)             # Remote confirmed everything through seq 41

        # After a reconnect
        loss = replay.take_loss()  # None when nothing fell out of the window
        for chunk in replay.pending():
            ...

    """

    def __init__(self, window: int = 200):
        if window < 1:
            raise ValueError(f"Replay window must hold at least one chunk, got {window}")
        self.window = window

        # Buffer state
        self._chunks: deque[AudioChunk] = deque()
        self._acked_through: int | None = None
        self._lost_first: int | None = None
        self._lost_last: int | None = None
        self._lost_count = 0

    def __len__(self) -> int:
        return len(self._chunks)

    @property
    def acked_through(self) -> int | None:
        """Highest sequence number the remote has acknowledged."""
        return self._acked_through

    @property
    def has_loss(self) -> bool:
        return self._lost_count > 0

    def append(self, chunk: AudioChunk) -> int:
        """Remember a chunk about to be sent.

        Returns:
            Number of chunks evicted (0 or 1)

        """
        self._chunks.append(chunk)
        if len(self._chunks) <= self.window:
            return 0

        evicted = self._chunks.popleft()
        if self._lost_first is None:
            self._lost_first = evicted.seq
        self._lost_last = evicted.seq
        self._lost_count += 1
        logger.debug(f"Replay window full, evicted unacknowledged chunk seq={evicted.seq}")
        return 1

    def ack(self, seq: int) -> int:
        """Drop every chunk with sequence number <= seq.

        An acknowledgement that covers the evicted range means that audio
        reached the remote after all, so the recorded gap is cleared.

        Returns:
            Number of chunks released

        """
        if self._acked_through is not None and seq <= self._acked_through:
            return 0
        self._acked_through = seq

        released = 0
        while self._chunks and self._chunks[0].seq <= seq:
            self._chunks.popleft()
            released += 1

        if self._lost_last is not None and seq >= self._lost_last:
            self._clear_loss()
        return released

    def pending(self) -> list[AudioChunk]:
        """Chunks to resend after a reconnect, oldest first."""
        return list(self._chunks)

    def take_loss(self) -> PartialDataLoss | None:
        """Report and reset the evicted range, if any."""
        if not self._lost_count:
            return None
        loss = PartialDataLoss(first_seq=self._lost_first, last_seq=self._lost_last, count=self._lost_count)
        self._clear_loss()
        return loss

    def _clear_loss(self) -> None:
        self._lost_first = None
        self._lost_last = None
        self._lost_count = 0

    def clear(self) -> None:
        self._chunks.clear()
        self._clear_loss()
