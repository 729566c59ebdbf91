"""Health endpoint of the command server.

Serves GET /health from the child's aiohttp application. The lifecycle
manager in the host uses it as its readiness fallback.
"""

import time
from dataclasses import dataclass, field

import structlog
from aiohttp import web

from ..bridge.client import CommandClient

logger = structlog.get_logger(__name__)


@dataclass
class HealthStatus:
    """Health status data for the command server."""

    name: str = "procbridge"
    port: int | None = None
    transport: str = "sse"
    start_time: float = field(default_factory=time.time)
    version: str = "1.0.0"
    client: CommandClient | None = field(default=None, repr=False)

    @property
    def host_connected(self) -> bool:
        return self.client is not None and self.client.is_connected

    @property
    def capability_count(self) -> int:
        return len(self.client.capabilities) if self.client is not None else 0

    @property
    def status(self) -> str:
        """Get overall health status."""
        if not self.host_connected:
            return "degraded"
        return "ok"

    @property
    def uptime_seconds(self) -> int:
        """Get uptime in seconds."""
        return int(time.time() - self.start_time)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "status": self.status,
            "name": self.name,
            "version": self.version,
            "port": self.port,
            "transport": self.transport,
            "uptime_seconds": self.uptime_seconds,
            "host_connected": self.host_connected,
            "capabilities": self.capability_count,
        }


def health_handler(status: HealthStatus):
    """aiohttp handler answering GET /health with the status document.

    Always 200 while the server is up; ``status`` reports "degraded" when the
    host channel is gone.
    """

    async def handle_health(request: web.Request) -> web.Response:
        logger.debug("Health check", status=status.status)
        return web.json_response(status.to_dict())

    return handle_health
