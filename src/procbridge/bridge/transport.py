"""Transports exposing the ToolServer to external callers.

- stdio: newline-delimited JSON-RPC on stdin/stdout
- HTTP+SSE (aiohttp): GET /sse opens a session and announces its message
  endpoint; POST /messages?sessionId=... carries requests; responses and
  notifications come back as SSE ``message`` events on that session.
"""

import asyncio
import json
import logging
import sys
import uuid
from typing import Any, TextIO

from aiohttp import web

from .errors import JSONRPC_INVALID_REQUEST, JSONRPC_PARSE_ERROR
from .server import SERVER_NAME, SERVER_VERSION, ToolServer

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_INTERVAL = 15.0


# =============================================================================
# stdio
# =============================================================================


class StdioTransport:
    """Serves JSON-RPC requests read from a stream, one per line."""

    def __init__(self, server: ToolServer, output: TextIO | None = None):
        """Initialize StdioTransport.

        Args:
            server: ToolServer handling each request
            output: Where responses are written (defaults to sys.stdout)
        """
        self.server = server
        self.output = output or sys.stdout
        self._tasks: set[asyncio.Task] = set()
        server.on_notification = self.write

    def write(self, payload: dict[str, Any]) -> None:
        """Write one JSON-RPC message to the output stream."""
        self.output.write(json.dumps(payload) + "\n")
        self.output.flush()

    def _write_error(self, code: int, message: str) -> None:
        self.write({"jsonrpc": "2.0", "id": None, "error": {"code": code, "message": message}})

    async def _handle_line(self, line: str) -> None:
        try:
            request = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON: {e}")
            self._write_error(JSONRPC_PARSE_ERROR, f"Parse error: {e}")
            return
        if not isinstance(request, dict):
            self._write_error(JSONRPC_INVALID_REQUEST, "Request must be a JSON object")
            return

        response = await self.server.handle_request(request)
        if response is not None:
            self.write(response)

    async def serve(
        self,
        shutdown_event: asyncio.Event,
        reader: asyncio.StreamReader | None = None,
    ) -> None:
        """Read requests until EOF or shutdown.

        Requests are handled concurrently, so a long tool call does not block
        later requests; responses may therefore arrive out of order.
        """
        if reader is None:
            reader = asyncio.StreamReader()
            protocol = asyncio.StreamReaderProtocol(reader)
            loop = asyncio.get_running_loop()
            await loop.connect_read_pipe(lambda: protocol, sys.stdin)

        while not shutdown_event.is_set():
            try:
                raw = await asyncio.wait_for(reader.readline(), timeout=1.0)
            except asyncio.TimeoutError:
                # No input, check shutdown and continue
                continue

            if not raw:
                logger.info("stdin closed")
                break

            line = raw.decode("utf-8").strip()
            if not line:
                continue

            task = asyncio.create_task(self._handle_line(line))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        await self.close()

    async def close(self) -> None:
        """Wait for requests still being handled."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()


# =============================================================================
# HTTP + SSE
# =============================================================================


def format_sse(event: str, data: str) -> bytes:
    """Encode one server-sent event."""
    return f"event: {event}\ndata: {data}\n\n".encode("utf-8")


class SseTransport:
    """MCP over HTTP with server-sent events, one queue per session."""

    def __init__(self, server: ToolServer, keepalive_interval: float = SSE_KEEPALIVE_INTERVAL):
        self.server = server
        self.keepalive_interval = keepalive_interval
        self._sessions: dict[str, asyncio.Queue] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def add_routes(self, app: web.Application) -> None:
        app.router.add_get("/sse", self.handle_sse)
        app.router.add_post("/messages", self.handle_messages)

    async def handle_sse(self, request: web.Request) -> web.StreamResponse:
        """Handle GET /sse - open a session and stream its events."""
        session_id = uuid.uuid4().hex
        queue: asyncio.Queue = asyncio.Queue()
        self._sessions[session_id] = queue
        logger.info(f"Client connected to SSE endpoint (session {session_id})")

        response = web.StreamResponse(
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            }
        )
        await response.prepare(request)

        try:
            await response.write(format_sse("endpoint", f"/messages?sessionId={session_id}"))
            while True:
                try:
                    payload = await asyncio.wait_for(queue.get(), timeout=self.keepalive_interval)
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                    continue
                if payload is None:
                    break
                await response.write(format_sse("message", json.dumps(payload)))
        except ConnectionResetError:
            logger.info(f"Client disconnected from SSE endpoint (session {session_id})")
        finally:
            self._sessions.pop(session_id, None)

        return response

    async def handle_messages(self, request: web.Request) -> web.Response:
        """Handle POST /messages - accept one JSON-RPC request for a session."""
        session_id = request.query.get("sessionId", "")
        queue = self._sessions.get(session_id)
        if queue is None:
            return web.json_response({"error": f"Unknown session: {session_id}"}, status=404)

        try:
            payload = await request.json()
        except json.JSONDecodeError as e:
            return web.json_response({"error": f"Invalid JSON: {e}"}, status=400)
        if not isinstance(payload, dict):
            return web.json_response({"error": "Request must be a JSON object"}, status=400)

        task = asyncio.create_task(self._dispatch(payload, queue))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return web.Response(status=202, text="Accepted")

    async def _dispatch(self, payload: dict[str, Any], queue: asyncio.Queue) -> None:
        response = await self.server.handle_request(payload, notify=queue.put_nowait)
        if response is not None:
            queue.put_nowait(response)

    async def close(self) -> None:
        """End every open session and cancel requests in flight."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        for queue in self._sessions.values():
            queue.put_nowait(None)


def create_app(
    health_handler: Any,
    sse: SseTransport | None = None,
) -> web.Application:
    """Build the command server's HTTP application.

    Args:
        health_handler: aiohttp handler for GET /health
        sse: SSE transport to mount, if the server speaks MCP over HTTP
    """
    app = web.Application()
    app.router.add_get("/health", health_handler)

    endpoints = [{"path": "/health", "description": "Health check endpoint"}]
    if sse is not None:
        sse.add_routes(app)
        endpoints.insert(0, {"path": "/sse", "description": "SSE endpoint for MCP communication"})
        endpoints.insert(
            1, {"path": "/messages", "description": "Endpoint for client-to-server messages"}
        )

    async def handle_index(request: web.Request) -> web.Response:
        return web.json_response(
            {
                "name": SERVER_NAME,
                "version": SERVER_VERSION,
                "description": "Command server exposing host capabilities as MCP tools",
                "endpoints": endpoints,
            }
        )

    app.router.add_get("/", handle_index)
    return app
