"""speechwire - authenticated streaming transport for cloud speech-to-text."""

from importlib import import_module, metadata
from pathlib import Path
import tomllib
from typing import TYPE_CHECKING

_SUBPACKAGES = frozenset({"auth", "core", "streaming", "transport"})


def _get_version() -> str:
    try:
        return metadata.version("speechwire")
    except metadata.PackageNotFoundError:
        # Source checkout without an install: read it from pyproject.toml
        pyproject = Path(__file__).resolve().parents[2] / "pyproject.toml"
        try:
            with pyproject.open("rb") as fh:
                return str(tomllib.load(fh)["project"]["version"])
        except (OSError, KeyError, tomllib.TOMLDecodeError):
            return "unknown"


__version__ = _get_version()

if TYPE_CHECKING:
    from .client import SpeechClient
    from .core.config import ConfigLoader, get_config
    from .core.settings import ClientSettings
    from .streaming.channels import Transcript
    from .streaming.types import (
        AudioChunk,
        PartialDataLoss,
        RecognitionResult,
        RetryScheduled,
        SessionConfig,
        SessionState,
    )

_LAZY_EXPORTS = {
    "SpeechClient": (".client", "SpeechClient"),
    "ClientSettings": (".core.settings", "ClientSettings"),
    "ConfigLoader": (".core.config", "ConfigLoader"),
    "get_config": (".core.config", "get_config"),
    "Transcript": (".streaming.channels", "Transcript"),
    "AudioChunk": (".streaming.types", "AudioChunk"),
    "PartialDataLoss": (".streaming.types", "PartialDataLoss"),
    "RecognitionResult": (".streaming.types", "RecognitionResult"),
    "RetryScheduled": (".streaming.types", "RetryScheduled"),
    "SessionConfig": (".streaming.types", "SessionConfig"),
    "SessionState": (".streaming.types", "SessionState"),
}


def __getattr__(name):
    if name in _SUBPACKAGES:
        value = import_module(f".{name}", __name__)
    elif name in _LAZY_EXPORTS:
        module_name, attr_name = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name, __name__), attr_name)
    else:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    # Cache so later lookups skip __getattr__
    globals()[name] = value
    return value


__all__ = sorted(_LAZY_EXPORTS)
