"""Streaming recognition: sessions, supervision and provider adapters.

Usage:
    from speechwire.streaming import SessionSupervisor, SessionConfig

    supervisor = SessionSupervisor(config, session_factory, credentials)
    sink, results = supervisor.start()
"""

from .adapters import GrpcStreamingAdapter, HttpJwtAdapter, ProviderAdapter, WireCall, create_adapter
from .channels import ChunkSink, ResultQueue, ResultStream, Transcript
from .replay import ReplayBuffer
from .retry import RetryPolicy
from .session import StreamSession
from .supervisor import SessionSupervisor
from .types import (
    Advisory,
    AudioChunk,
    ControlSignal,
    PartialDataLoss,
    RecognitionResult,
    RetryScheduled,
    SessionConfig,
    SessionState,
    SignalKind,
    StreamEvent,
)

__all__ = [
    "Advisory",
    "AudioChunk",
    "ChunkSink",
    "ControlSignal",
    "GrpcStreamingAdapter",
    "HttpJwtAdapter",
    "PartialDataLoss",
    "ProviderAdapter",
    "RecognitionResult",
    "ReplayBuffer",
    "ResultQueue",
    "ResultStream",
    "RetryPolicy",
    "RetryScheduled",
    "SessionConfig",
    "SessionState",
    "SessionSupervisor",
    "SignalKind",
    "StreamEvent",
    "StreamSession",
    "Transcript",
    "WireCall",
    "create_adapter",
]
