"""Shared network channels."""

from .channel import (
    ChannelKey,
    ChannelPool,
    GrpcChannel,
    HttpChannel,
    TransportChannel,
    TrustConfig,
    grpc_target,
)

__all__ = [
    "ChannelKey",
    "ChannelPool",
    "GrpcChannel",
    "HttpChannel",
    "TransportChannel",
    "TrustConfig",
    "grpc_target",
]
