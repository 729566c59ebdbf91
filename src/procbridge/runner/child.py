"""Command server (child process) runtime.

Wires the CommandClient to the host channel, exposes the host's
capabilities through the ToolServer on the chosen transport, signals Ready
and runs until the host goes away or a shutdown signal arrives.
"""

import asyncio
import contextlib
import os
import signal
from dataclasses import dataclass
from typing import TextIO

import structlog
from aiohttp import web

from ..bridge.channel import MessageChannel
from ..bridge.client import DEFAULT_COMMAND_TIMEOUT, CommandClient
from ..bridge.errors import TransportUnavailable
from ..bridge.lifecycle import DEFAULT_HOST, DEFAULT_PORT, IPC_FD_ENV, PORT_ENV
from ..bridge.messages import Ready
from ..bridge.server import ToolServer
from ..bridge.transport import SseTransport, StdioTransport, create_app
from .health_server import HealthStatus, health_handler

logger = structlog.get_logger(__name__)


@dataclass
class ChildSettings:
    """Settings of one command server process."""

    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST
    transport: str = "sse"
    ipc_fd: int | None = None
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT

    @classmethod
    def from_env(cls, **overrides) -> "ChildSettings":
        """Read the port and channel fd handed down by the host."""
        settings = cls(**{k: v for k, v in overrides.items() if v is not None})
        if overrides.get("port") is None and os.environ.get(PORT_ENV):
            settings.port = int(os.environ[PORT_ENV])
        if overrides.get("ipc_fd") is None and os.environ.get(IPC_FD_ENV):
            settings.ipc_fd = int(os.environ[IPC_FD_ENV])
        return settings


class CommandServer:
    """The child's components and their start/stop order."""

    def __init__(self, settings: ChildSettings, channel: MessageChannel | None = None):
        self.settings = settings
        self.client = CommandClient(channel, timeout=settings.command_timeout)
        self.server = ToolServer(self.client)
        self.health = HealthStatus(
            port=settings.port, transport=settings.transport, client=self.client
        )
        self.sse = SseTransport(self.server) if settings.transport == "sse" else None
        self.app = create_app(health_handler(self.health), self.sse)
        self.shutdown_event = asyncio.Event()

        self._runner: web.AppRunner | None = None
        self._tasks: list[asyncio.Task] = []

    @property
    def port(self) -> int | None:
        """Port actually bound (differs from the setting when it was 0)."""
        if self._runner is None or not self._runner.addresses:
            return None
        return self._runner.addresses[0][1]

    async def start(
        self,
        stdin: asyncio.StreamReader | None = None,
        stdout: TextIO | None = None,
    ) -> None:
        """Bind the HTTP server, connect to the host and signal Ready."""
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.settings.host, self.settings.port)
        await site.start()
        self.health.port = self.port
        logger.info("Command server listening", host=self.settings.host, port=self.port)

        if self.client.channel is not None:
            self._watch(self.client.run(), "host channel")
            await self.client.channel.send(Ready(port=self.port))
            await self.client.request_capabilities()
        else:
            logger.warning("No host channel; tool calls will fail")

        if self.settings.transport == "stdio":
            stdio = StdioTransport(self.server, output=stdout)
            self._watch(stdio.serve(self.shutdown_event, reader=stdin), "stdin")

    def _watch(self, coro, name: str) -> None:
        """Run a task whose end shuts the server down."""
        task = asyncio.create_task(coro)

        def on_done(_: asyncio.Task) -> None:
            if self.shutdown_event.is_set():
                return
            logger.info("Shutting down", reason=f"{name} closed")
            self.shutdown_event.set()

        task.add_done_callback(on_done)
        self._tasks.append(task)

    async def serve_forever(self) -> None:
        await self.shutdown_event.wait()

    async def stop(self) -> None:
        """Stop accepting requests and release everything."""
        if self.sse is not None:
            await self.sse.close()
        await self.client.close()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Command server stopped")


async def run_child(settings: ChildSettings) -> None:
    """Run the command server until the host channel closes or a signal arrives."""
    channel = None
    if settings.ipc_fd is not None:
        try:
            channel = await MessageChannel.from_fd(settings.ipc_fd, name="host channel")
        except OSError as e:
            raise TransportUnavailable(
                message=f"Cannot open host channel on fd {settings.ipc_fd}: {e}"
            ) from e

    server = CommandServer(settings, channel)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, server.shutdown_event.set)

    try:
        await server.start()
        await server.serve_forever()
    finally:
        await server.stop()
