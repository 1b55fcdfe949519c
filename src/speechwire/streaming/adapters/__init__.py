"""Provider adapters and the registry that picks one per backend."""

from typing import TYPE_CHECKING

from ...core.exceptions import ConfigurationError
from ...transport.channel import TrustConfig
from .base import DecodedItem, ProviderAdapter, WireCall
from .grpc_adapter import GrpcStreamingAdapter, map_status
from .http_adapter import HttpJwtAdapter, map_http_status

if TYPE_CHECKING:
    from ...core.settings import BackendSettings, TransportSettings

ADAPTERS: dict[str, type] = {
    "grpc": GrpcStreamingAdapter,
    "http": HttpJwtAdapter,
}


def create_adapter(
    backend: "BackendSettings",
    trust: TrustConfig | None = None,
    transport: "TransportSettings | None" = None,
) -> ProviderAdapter:
    """Create a fresh adapter for one session on ``backend``."""
    adapter_class = ADAPTERS.get(backend.provider)
    if adapter_class is None:
        raise ConfigurationError(f"No adapter for provider {backend.provider!r}")
    return adapter_class(backend, trust=trust, transport=transport)


__all__ = [
    "ADAPTERS",
    "DecodedItem",
    "GrpcStreamingAdapter",
    "HttpJwtAdapter",
    "ProviderAdapter",
    "WireCall",
    "create_adapter",
    "map_http_status",
    "map_status",
]
