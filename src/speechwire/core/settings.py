"""Typed settings built from the config loader.

Provides ClientSettings with one BackendSettings per configured backend.
Values are read once, when the client is created.
"""

from dataclasses import dataclass, field
from typing import Any

from ..streaming.retry import RetryPolicy
from .config import ConfigLoader, get_config
from .exceptions import ConfigurationError


@dataclass(frozen=True)
class BackendSettings:
    """Settings for one provider backend (one ``[backends.<id>]`` table)."""

    backend_id: str
    provider: str  # "grpc" or "http"
    endpoint: str
    recognize_url: str = ""
    credentials: str = ""  # service_account, iam_jwt, self_signed_jwt
    options: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_table(cls, backend_id: str, table: dict[str, Any]) -> "BackendSettings":
        provider = str(table.get("provider", "")).lower()
        if provider not in ("grpc", "http"):
            raise ConfigurationError(f"Backend {backend_id!r} has unknown provider {provider!r}")
        return cls(
            backend_id=backend_id,
            provider=provider,
            endpoint=str(table.get("endpoint", "")),
            recognize_url=str(table.get("recognize_url", "")),
            credentials=str(table.get("credentials", "")),
            options=dict(table),
        )

    def option(self, name: str, default: Any = None) -> Any:
        value = self.options.get(name, default)
        return default if value == "" else value


@dataclass
class TransportSettings:
    trust_roots_file: str = ""
    connect_timeout: float = 10.0
    idle_timeout: float | None = 60.0
    pool_size: int = 4


@dataclass
class ClientSettings:
    """Everything a SpeechClient consumes at session-start time."""

    backends: dict[str, BackendSettings] = field(default_factory=dict)
    min_validity: float = 60.0
    transport: TransportSettings = field(default_factory=TransportSettings)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    replay_window: int = 200
    input_queue_size: int = 32
    result_queue_size: int = 64
    health_enabled: bool = False
    health_host: str = "127.0.0.1"
    health_port: int = 3290

    @classmethod
    def from_config(cls, loader: ConfigLoader | None = None) -> "ClientSettings":
        """Load client settings from the speechwire config file."""
        config = loader or get_config()

        backends = {
            backend_id: BackendSettings.from_table(backend_id, config.backend(backend_id))
            for backend_id in config.backend_ids
        }

        idle_timeout = config.get("transport.idle_timeout_seconds", 60.0)
        transport = TransportSettings(
            trust_roots_file=str(config.get("transport.trust_roots_file", "") or ""),
            connect_timeout=float(config.get("transport.connect_timeout_seconds", 10.0)),
            idle_timeout=None if idle_timeout is None or float(idle_timeout) < 0 else float(idle_timeout),
            pool_size=int(config.get("transport.pool_size", 4)),
        )

        retry = RetryPolicy(
            max_attempts=int(config.get("retry.max_attempts", 5)),
            base_delay=float(config.get("retry.base_delay_seconds", 0.5)),
            max_delay=float(config.get("retry.max_delay_seconds", 10.0)),
            multiplier=float(config.get("retry.multiplier", 2.0)),
            jitter=float(config.get("retry.jitter", 0.1)),
            max_quota_delay=float(config.get("retry.max_quota_delay_seconds", 60.0)),
        )

        return cls(
            backends=backends,
            min_validity=float(config.get("auth.min_validity_seconds", 60.0)),
            transport=transport,
            retry=retry,
            replay_window=int(config.get("replay.window_chunks", 200)),
            input_queue_size=int(config.get("session.input_queue_size", 32)),
            result_queue_size=int(config.get("session.result_queue_size", 64)),
            health_enabled=bool(config.get("health.enabled", False)),
            health_host=str(config.get("health.host", "127.0.0.1")),
            health_port=int(config.get("health.port", 3290)),
        )

    def backend(self, backend_id: str) -> BackendSettings:
        try:
            return self.backends[backend_id]
        except KeyError:
            raise ConfigurationError(f"Unknown backend: {backend_id}") from None
