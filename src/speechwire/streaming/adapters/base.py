"""Protocol definitions for provider adapters.

Uses Protocol-based typing for flexibility - adapters don't need to inherit
from a base class, just implement the required methods. Adapters are created
per session because they may track per-stream state (finalized segment
counts, audio offsets for acknowledgements).
"""

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..types import AudioChunk, ControlSignal, RecognitionResult, SessionConfig

if TYPE_CHECKING:
    from ...auth.credentials import Credential
    from ...transport.channel import TransportChannel


DecodedItem = RecognitionResult | ControlSignal


@runtime_checkable
class WireCall(Protocol):
    """One live bidirectional exchange with the remote.

    Errors raised by these methods are already mapped onto the speechwire
    taxonomy (ConnectError, ProtocolError, QuotaError, ...).
    """

    async def write(self, frame: Any) -> None:
        """Send one frame; suspends while the transport's send buffer is full."""
        ...

    async def done_writing(self) -> None:
        """Signal end of audio (half-close)."""
        ...

    async def read(self) -> Any | None:
        """Next inbound frame, or None at end of stream."""
        ...

    def cancel(self) -> None:
        """Abort the exchange immediately."""
        ...


@runtime_checkable
class ProviderAdapter(Protocol):
    """Translates the generic session contract into one provider's wire format.

    All adapters must implement:
    - create_channel(): Build an unopened channel for an endpoint
    - encode_config(): First frame of a stream (carries the credential)
    - encode_audio(): One frame per audio chunk
    - decode_result(): Inbound frame -> results and control signals
    - open_call(): Start a stream and send the initial frame
    - recognize(): One-shot recognition of a complete utterance
    """

    name: str

    def create_channel(self, endpoint: str) -> "TransportChannel":
        ...

    def encode_config(self, config: SessionConfig, credential: "Credential") -> Any:
        ...

    def encode_audio(self, chunk: AudioChunk) -> Any:
        ...

    def decode_result(self, frame: Any) -> list[DecodedItem]:
        """Decode one inbound frame.

        Raises:
            ProtocolError: Malformed frame
            QuotaError: Remote signalled rate limiting
            AuthError: Remote rejected the credential

        """
        ...

    async def open_call(self, channel: "TransportChannel", initial_frame: Any) -> WireCall:
        ...

    async def recognize(
        self,
        channel: "TransportChannel",
        credential: "Credential",
        config: SessionConfig,
        audio: bytes,
    ) -> str | None:
        ...
