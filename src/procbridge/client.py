"""MCP client for a running command server, over HTTP+SSE.

Opens GET /sse, waits for the ``endpoint`` event naming the session's
message URL, POSTs JSON-RPC requests there and matches the responses that
come back as SSE ``message`` events by id.
"""

import asyncio
import contextlib
import itertools
import json
import logging
from collections.abc import Callable
from typing import Any

import httpx
from httpx_sse import aconnect_sse

from .bridge.server import PROTOCOL_VERSION

logger = logging.getLogger(__name__)

DEFAULT_URL = "http://127.0.0.1:5201"


class ToolClientError(Exception):
    """Error from the command server or the connection to it."""

    def __init__(self, message: str, status_code: int | None = None, code: int | None = None):
        self.message = message
        self.status_code = status_code
        self.code = code
        super().__init__(message)


class ToolClient:
    """MCP-over-SSE client for a command server.

    Use as an async context manager; the SSE session lives as long as the
    context.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_URL,
        timeout: float = 30.0,
        on_notification: Callable[[dict[str, Any]], None] | None = None,
    ):
        """Initialize client.

        Args:
            base_url: Server URL (e.g., http://127.0.0.1:5201)
            timeout: Per-request timeout in seconds
            on_notification: Called with each server notification
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.on_notification = on_notification
        self._client: httpx.AsyncClient | None = None
        self._stack: contextlib.AsyncExitStack | None = None
        self._reader: asyncio.Task | None = None
        self._endpoint: asyncio.Future | None = None
        self._pending: dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)

    async def __aenter__(self) -> "ToolClient":
        """Enter async context."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"},
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit async context."""
        await self.close()

    def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure client is initialized."""
        if not self._client:
            raise ToolClientError("Client not initialized. Use 'async with' context.")
        return self._client

    # =========================================================================
    # Plain HTTP
    # =========================================================================

    async def health(self) -> dict[str, Any]:
        """GET /health.

        Raises:
            ToolClientError: On connection or HTTP error
        """
        client = self._ensure_client()
        try:
            response = await client.get("/health")
            response.raise_for_status()
            return response.json()
        except httpx.ConnectError as e:
            raise ToolClientError(
                f"Cannot connect to command server at {self.base_url}\n"
                f"Is the host running? Try: procbridge host"
            ) from e
        except httpx.HTTPStatusError as e:
            raise ToolClientError(
                f"Server error: {e.response.status_code}", status_code=e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            raise ToolClientError(f"Health check failed: {e}") from e

    # =========================================================================
    # SSE session
    # =========================================================================

    async def connect(self) -> str:
        """Open the SSE stream and return the session's message endpoint."""
        if self._endpoint is not None:
            return await self._endpoint

        client = self._ensure_client()
        self._endpoint = asyncio.get_running_loop().create_future()
        self._stack = contextlib.AsyncExitStack()
        try:
            event_source = await self._stack.enter_async_context(
                aconnect_sse(
                    client, "GET", "/sse", timeout=httpx.Timeout(self.timeout, read=None)
                )
            )
            event_source.response.raise_for_status()
        except httpx.ConnectError as e:
            await self.close()
            raise ToolClientError(f"Cannot connect to command server at {self.base_url}") from e
        except httpx.HTTPStatusError as e:
            await self.close()
            raise ToolClientError(
                f"SSE endpoint returned {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e

        self._reader = asyncio.create_task(self._read_events(event_source))
        try:
            return await asyncio.wait_for(asyncio.shield(self._endpoint), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ToolClientError("Server did not announce a message endpoint") from None

    async def _read_events(self, event_source: Any) -> None:
        try:
            async for sse in event_source.aiter_sse():
                if sse.event == "endpoint":
                    if not self._endpoint.done():
                        self._endpoint.set_result(sse.data)
                elif sse.event == "message" and sse.data:
                    try:
                        self._dispatch(json.loads(sse.data))
                    except json.JSONDecodeError:
                        logger.warning(f"Invalid JSON in SSE event: {sse.data}")
        except (httpx.ReadError, httpx.RemoteProtocolError) as e:
            logger.info(f"SSE stream ended: {e}")
        finally:
            self._fail_pending(ToolClientError("SSE stream closed"))

    def _dispatch(self, payload: dict[str, Any]) -> None:
        if "id" in payload and ("result" in payload or "error" in payload):
            future = self._pending.pop(payload["id"], None)
            if future is not None and not future.done():
                future.set_result(payload)
            return
        if self.on_notification is not None:
            self.on_notification(payload)

    def _fail_pending(self, error: ToolClientError) -> None:
        if self._endpoint is not None and not self._endpoint.done():
            self._endpoint.set_exception(error)
            self._endpoint.exception()
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Send a JSON-RPC request and wait for its response.

        Returns:
            The ``result`` member of the response

        Raises:
            ToolClientError: On transport failure, timeout or JSON-RPC error
        """
        endpoint = await self.connect()
        client = self._ensure_client()

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        request: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            request["params"] = params

        try:
            response = await client.post(endpoint, json=request)
            if response.status_code >= 400:
                raise ToolClientError(
                    f"Request rejected: {response.text}", status_code=response.status_code
                )
            payload = await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ToolClientError(f"Timed out waiting for response to {method}") from None
        except httpx.HTTPError as e:
            raise ToolClientError(f"Request failed: {e}") from e
        finally:
            self._pending.pop(request_id, None)

        if "error" in payload:
            error = payload["error"]
            raise ToolClientError(error.get("message", "Unknown error"), code=error.get("code"))
        return payload.get("result")

    async def initialize(self) -> dict[str, Any]:
        """MCP initialize handshake."""
        result = await self.request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": "procbridge-cli", "version": "1.0.0"},
            },
        )
        await self._ensure_client().post(
            await self.connect(),
            json={"jsonrpc": "2.0", "method": "notifications/initialized"},
        )
        return result

    async def list_tools(self) -> list[dict[str, Any]]:
        """List tools (one per host capability)."""
        result = await self.request("tools/list")
        return result.get("tools", [])

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        """Call a tool; the result may carry ``isError``."""
        return await self.request("tools/call", {"name": name, "arguments": arguments or {}})

    async def close(self) -> None:
        """Close the SSE session and the HTTP client."""
        if self._reader is not None:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None
        if self._stack is not None:
            await self._stack.aclose()
            self._stack = None
        self._endpoint = None
        if self._client:
            await self._client.aclose()
            self._client = None
