"""Layered configuration: built-in defaults, then the [speechwire] table of a
TOML file, then explicit overrides, then SPEECHWIRE_* environment variables."""
import copy
import os
from pathlib import Path
from typing import Any

import tomllib

DEFAULT_CONFIG: dict[str, Any] = {
    "auth": {"min_validity_seconds": 60.0},
    "transport": {
        "trust_roots_file": "",
        "connect_timeout_seconds": 10.0,
        "idle_timeout_seconds": 60.0,
        "pool_size": 4,
    },
    "retry": {
        "max_attempts": 5,
        "base_delay_seconds": 0.5,
        "max_delay_seconds": 10.0,
        "multiplier": 2.0,
        "jitter": 0.1,
        "max_quota_delay_seconds": 60.0,
    },
    "replay": {"window_chunks": 200},
    "session": {"input_queue_size": 32, "result_queue_size": 64},
    "health": {"enabled": False, "host": "127.0.0.1", "port": 3290},
    "backends": {
        "google": {
            "provider": "grpc",
            "endpoint": "speech.googleapis.com:443",
            "credentials": "service_account",
            "service_account_file": "",
            "scopes": ["https://www.googleapis.com/auth/cloud-platform"],
        },
        "yandex": {
            "provider": "http",
            "endpoint": "",
            "recognize_url": "https://stt.api.cloud.yandex.net/speech/v1/stt:recognize",
            "credentials": "iam_jwt",
            "private_key_file": "",
            "key_id": "",
            "service_account_id": "",
            "token_url": "https://iam.api.cloud.yandex.net/iam/v1/tokens",
            "folder_id": "",
        },
    },
}

# Environment variable -> (dotted config key, type)
_ENV_OVERRIDES = {
    "SPEECHWIRE_TRUST_ROOTS": ("transport.trust_roots_file", str),
    "SPEECHWIRE_MAX_ATTEMPTS": ("retry.max_attempts", int),
    "SPEECHWIRE_REPLAY_WINDOW": ("replay.window_chunks", int),
}


def default_config_path() -> Path:
    env_path = os.environ.get("SPEECHWIRE_CONFIG")
    return Path(env_path) if env_path else Path.home() / ".speechwire" / "config.toml"


def deep_merge(base: dict[str, Any], layer: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``base`` with ``layer`` merged in; nested tables merge, everything else replaces."""
    result = copy.deepcopy(base)
    for name, incoming in layer.items():
        current = result.get(name)
        if isinstance(current, dict) and isinstance(incoming, dict):
            result[name] = deep_merge(current, incoming)
        else:
            result[name] = copy.deepcopy(incoming)
    return result


def _read_table(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    with path.open("rb") as fh:
        return tomllib.load(fh).get("speechwire", {})


class ConfigLoader:
    """Read-mostly view over the merged configuration tree."""

    def __init__(self, config_path: str | Path | None = None, overrides: dict[str, Any] | None = None) -> None:
        path = Path(config_path) if config_path is not None else default_config_path()
        self.config_file = str(path)

        tree = deep_merge(DEFAULT_CONFIG, _read_table(path))
        self._config = deep_merge(tree, overrides or {})

        for env_name, (key_path, cast) in _ENV_OVERRIDES.items():
            raw = os.environ.get(env_name)
            if not raw:
                continue
            try:
                self.set(key_path, cast(raw))
            except ValueError:
                # Malformed numbers keep the file/default value
                continue

    def get(self, key_path: str, default: Any = None) -> Any:
        """Look up a dotted key such as 'retry.max_attempts'."""
        node: Any = self._config
        for part in key_path.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key_path: str, value: Any) -> None:
        *parents, leaf = key_path.split(".")
        node = self._config
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = value

    @property
    def backend_ids(self) -> list[str]:
        return sorted(self.get("backends", {}))

    def backend(self, backend_id: str) -> dict[str, Any]:
        """Raw settings table for one backend ({} if unknown)."""
        return dict(self.get(f"backends.{backend_id}") or {})


_config_loader: ConfigLoader | None = None


def get_config() -> ConfigLoader:
    """Process-wide loader, built on first use."""
    global _config_loader
    if _config_loader is None:
        _config_loader = ConfigLoader()
    return _config_loader


from .logging import get_logger, setup_logging  # noqa: E402, F401
