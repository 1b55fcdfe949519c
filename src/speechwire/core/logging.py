"""Logging for speechwire.

Every speechwire logger hangs off the ``speechwire`` package logger, which
owns a single QueueHandler. A background QueueListener does the file and
console I/O so that logging from inside the event loop never blocks.

Environment:
    SPEECHWIRE_LOG_DIR            directory for the rotating log file
    SPEECHWIRE_LOG_FILE           file name (speechwire.log)
    SPEECHWIRE_LOG_MAX_BYTES      rotation size
    SPEECHWIRE_LOG_BACKUP_COUNT   rotated files kept
    SPEECHWIRE_CONSOLE_LOGS       "1"/"true"/"yes" also logs to stdout
"""

import atexit
import logging
import os
import re
import sys
import threading
from dataclasses import dataclass
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from queue import SimpleQueue

PACKAGE_LOGGER = "speechwire"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+")

_lock = threading.Lock()
_listener: QueueListener | None = None
_installed = False


@dataclass(frozen=True)
class LogSettings:
    logs_dir: Path
    filename: str = "speechwire.log"
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5
    console: bool = False

    @classmethod
    def from_env(cls) -> "LogSettings":
        env_dir = os.environ.get("SPEECHWIRE_LOG_DIR")
        return cls(
            logs_dir=Path(env_dir) if env_dir else Path.home() / ".speechwire" / "logs",
            filename=os.environ.get("SPEECHWIRE_LOG_FILE") or "speechwire.log",
            max_bytes=_env_int("SPEECHWIRE_LOG_MAX_BYTES", 10 * 1024 * 1024),
            backup_count=_env_int("SPEECHWIRE_LOG_BACKUP_COUNT", 5),
            console=(os.environ.get("SPEECHWIRE_CONSOLE_LOGS") or "").strip().lower() in {"1", "true", "yes"},
        )


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return default


class RedactBearerFilter(logging.Filter):
    """Masks bearer values that end up in formatted messages (e.g. echoed error bodies)."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if "Bearer" in message:
            record.msg = _BEARER_RE.sub(r"\1***", message)
            record.args = None
        return True


def _file_handler(settings: LogSettings) -> logging.Handler | None:
    try:
        settings.logs_dir.mkdir(parents=True, exist_ok=True)
        return RotatingFileHandler(
            settings.logs_dir / settings.filename,
            maxBytes=settings.max_bytes,
            backupCount=settings.backup_count,
        )
    except OSError:
        # Read-only home or log dir: run without a file sink
        return None


def _stop_listener() -> None:
    global _listener
    if _listener is not None:
        _listener.stop()
        _listener = None


def _install_package_handler(level: int, include_console: bool, include_file: bool) -> None:
    """Attach the queue handler to the package logger once per process."""
    global _listener, _installed
    with _lock:
        if _installed:
            return
        _installed = True

        settings = LogSettings.from_env()
        formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
        handlers: list[logging.Handler] = []
        if include_file:
            file_handler = _file_handler(settings)
            if file_handler is not None:
                handlers.append(file_handler)
        if include_console or settings.console:
            handlers.append(logging.StreamHandler(sys.stdout))

        package_logger = logging.getLogger(PACKAGE_LOGGER)
        # Keep library output out of the host's root handlers
        package_logger.propagate = False
        if not handlers:
            package_logger.addHandler(logging.NullHandler())
            return

        for handler in handlers:
            handler.setLevel(level)
            handler.setFormatter(formatter)

        log_queue: SimpleQueue = SimpleQueue()
        queue_handler = QueueHandler(log_queue)
        queue_handler.addFilter(RedactBearerFilter())
        package_logger.addHandler(queue_handler)
        package_logger.setLevel(level)

        _listener = QueueListener(log_queue, *handlers, respect_handler_level=True)
        _listener.start()
        atexit.register(_stop_listener)


def setup_logging(
    module_name: str,
    log_level: str = "INFO",
    include_console: bool = False,
    include_file: bool = True,
) -> logging.Logger:
    """Return a logger for a speechwire module, configuring the package sink on first use.

    Args:
        module_name: Name of the module (usually __name__)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        include_console: Also log to stdout (SPEECHWIRE_CONSOLE_LOGS does the same)
        include_file: Log to the shared rotating file

    Returns:
        Logger that propagates to the package handler

    """
    _install_package_handler(getattr(logging, log_level.upper()), include_console, include_file)
    return logging.getLogger(module_name)


def get_logger(module_name: str) -> logging.Logger:
    return setup_logging(module_name)


__all__ = ["LogSettings", "RedactBearerFilter", "get_logger", "setup_logging"]
