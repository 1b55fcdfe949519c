"""Type definitions for streaming recognition.

Provides:
- SessionConfig: Per-session recognition settings
- AudioChunk: Opaque audio bytes with a sequence number
- RecognitionResult: Interim or final transcription segment
- ControlSignal: Acknowledgement / completion frames from the remote
- SessionState: Lifecycle of a single provider stream
- PartialDataLoss, RetryScheduled: In-band advisories for the caller
"""

from dataclasses import dataclass
from enum import Enum


class SessionState(Enum):
    """State of a streaming session."""

    CONNECTING = "connecting"
    STREAMING = "streaming"
    DRAINING = "draining"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.CLOSED, SessionState.FAILED)


@dataclass(frozen=True)
class SessionConfig:
    """Recognition settings, immutable for the lifetime of one session."""

    backend_id: str
    audio_encoding: str = "linear16"
    sample_rate: int = 16000
    language: str = "en-US"
    interim_results: bool = True
    endpoint_uri: str | None = None  # None: use the backend's configured endpoint
    model: str | None = None
    channels: int = 1
    profanity_filter: bool = False


@dataclass(frozen=True)
class AudioChunk:
    """Audio bytes already in the wire format the remote expects."""

    data: bytes
    seq: int

    def __len__(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class RecognitionResult:
    """One transcription segment.

    Interim results (is_final=False) for a result_index may be revised;
    a final result for an index is never followed by another result for
    the same or a lower index.
    """

    text: str
    is_final: bool = False
    stability: float = 0.0
    confidence: float = 0.0
    result_index: int = 0
    end_offset_seconds: float | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "text": self.text,
            "is_final": self.is_final,
            "stability": self.stability,
            "confidence": self.confidence,
            "result_index": self.result_index,
            "end_offset_seconds": self.end_offset_seconds,
        }


class SignalKind(Enum):
    ACK = "ack"
    COMPLETED = "completed"


@dataclass(frozen=True)
class ControlSignal:
    """Non-result frame decoded from the remote."""

    kind: SignalKind
    seq: int | None = None  # Highest acknowledged chunk for ACK

    @classmethod
    def ack(cls, seq: int) -> "ControlSignal":
        return cls(SignalKind.ACK, seq)

    @classmethod
    def completed(cls) -> "ControlSignal":
        return cls(SignalKind.COMPLETED)


class Advisory:
    """Marker base for in-band, non-terminal events on a result stream."""


@dataclass(frozen=True)
class PartialDataLoss(Advisory):
    """Audio that fell out of the replay window could not be resent."""

    first_seq: int
    last_seq: int
    count: int


@dataclass(frozen=True)
class RetryScheduled(Advisory):
    """The supervisor is about to reconnect after a recoverable fault."""

    attempt: int
    delay_seconds: float
    reason: str


StreamEvent = RecognitionResult | Advisory
