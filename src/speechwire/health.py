"""Health counters and HTTP endpoint.

This module exposes read-only session counters for host monitoring:
- SessionStats: counters updated by supervisors
- health_handler: JSON view of SpeechClient.health_snapshot()
- start_health_server: serves it at /health over aiohttp
"""

import functools
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from aiohttp import web

from .core.config import setup_logging
from .core.exceptions import SessionClosedError

if TYPE_CHECKING:
    from .client import SpeechClient

logger = setup_logging(__name__)


@dataclass
class SessionStats:
    """Counters across every stream a client has opened."""

    sessions_started: int = 0
    sessions_completed: int = 0
    sessions_failed: int = 0
    sessions_cancelled: int = 0
    reconnects: int = 0
    started_at: float = field(default_factory=time.time)

    def session_started(self) -> None:
        self.sessions_started += 1

    def session_finished(self, error: BaseException | None) -> None:
        if error is None:
            self.sessions_completed += 1
        elif isinstance(error, SessionClosedError):
            self.sessions_cancelled += 1
        else:
            self.sessions_failed += 1

    def reconnect(self) -> None:
        self.reconnects += 1

    @property
    def sessions_finished(self) -> int:
        return self.sessions_completed + self.sessions_failed + self.sessions_cancelled

    @property
    def sessions_active(self) -> int:
        return self.sessions_started - self.sessions_finished

    @property
    def error_rate(self) -> float:
        """Failed streams as a fraction of finished streams."""
        finished = self.sessions_finished
        return self.sessions_failed / finished if finished else 0.0

    @property
    def is_busy(self) -> bool:
        return self.sessions_active > 0

    def snapshot(self) -> dict:
        return {
            "sessions_active": self.sessions_active,
            "sessions_started": self.sessions_started,
            "sessions_completed": self.sessions_completed,
            "sessions_failed": self.sessions_failed,
            "sessions_cancelled": self.sessions_cancelled,
            "reconnects": self.reconnects,
            "error_rate": round(self.error_rate, 4),
            "is_busy": self.is_busy,
            "uptime_seconds": round(time.time() - self.started_at, 1),
        }


async def health_handler(client: "SpeechClient", request: web.Request | None) -> web.Response:
    """GET /health: the client's counters as JSON.

    Answers 503 once the client has shut down.
    """
    status = "shutdown" if client.closed else "healthy"
    body = {"status": status, "service": "speechwire", **client.health_snapshot(), "timestamp": time.time()}
    return web.json_response(body, status=503 if client.closed else 200)


async def start_health_server(client: "SpeechClient", host: str, port: int) -> web.AppRunner:
    """Bind the /health route on host:port (0 lets the OS choose).

    The caller owns the returned runner and stops it with ``cleanup()``.
    """
    app = web.Application()
    app.router.add_get("/health", functools.partial(health_handler, client))
    runner = web.AppRunner(app)
    await runner.setup()
    await web.TCPSite(runner, host, port).start()
    bound = runner.addresses[0][1] if runner.addresses else port
    logger.info(f"Health endpoint listening on http://{host}:{bound}/health")
    return runner
