"""ToolServer - MCP server facing external callers of the command server.

Handles MCP JSON-RPC requests arriving on the child's transport (stdio or
HTTP+SSE) and turns tools/call into correlated round-trips to the host via
CommandClient.
"""

import logging
from collections.abc import Callable
from typing import Any

from .client import CommandClient
from .errors import (
    JSONRPC_INTERNAL_ERROR,
    JSONRPC_INVALID_PARAMS,
    JSONRPC_METHOD_NOT_FOUND,
    BridgeError,
    CommandTimeout,
    RemoteCommandError,
    TransportUnavailable,
)
from .messages import AbsentArgs, Argument, ObjectArgs, SequenceArgs, as_argument
from .stream import StreamHandler

logger = logging.getLogger(__name__)

SERVER_NAME = "procbridge"
SERVER_VERSION = "1.0.0"
PROTOCOL_VERSION = "2024-11-05"

# Input schema advertised for every capability
ARGS_INPUT_SCHEMA = {
    "type": "object",
    "properties": {
        "args": {
            "type": "array",
            "items": {"type": ["string", "number", "boolean", "object", "array", "null"]},
            "description": "Arguments to pass to the command",
        },
    },
}

Notifier = Callable[[dict[str, Any]], None]


def tool_arguments(arguments: dict[str, Any]) -> Argument:
    """Map MCP tool arguments onto a command Argument.

    - ``args`` is a list: the list, spread positionally
    - any key other than ``args``: the whole arguments object
    - a lone non-list ``args``: that value
    - nothing: no arguments
    """
    inner = arguments.get("args")
    if isinstance(inner, list):
        return SequenceArgs(items=inner)
    if any(key != "args" for key in arguments):
        return ObjectArgs(fields=arguments)
    if inner is not None:
        return as_argument(inner)
    return AbsentArgs()


class ToolServer:
    """Exposes the host's capabilities as MCP tools."""

    def __init__(self, client: CommandClient, stream: StreamHandler | None = None):
        """Initialize ToolServer.

        Args:
            client: CommandClient connected to the host
            stream: Formatter for notifications and tool results
        """
        self.client = client
        self.stream = stream or StreamHandler()
        self.on_notification: Notifier | None = None

    async def handle_request(
        self, request: dict[str, Any], notify: Notifier | None = None
    ) -> dict[str, Any] | None:
        """Handle incoming JSON-RPC request.

        Args:
            request: JSON-RPC request object
            notify: Receives notifications for this request (defaults to
                ``on_notification``)

        Returns:
            JSON-RPC response object, or None for notifications (no id)
        """
        method = request.get("method", "")
        request_id = request.get("id")
        params = request.get("params") or {}

        # JSON-RPC notifications have no id and never receive a response
        is_notification = "id" not in request

        logger.debug(
            f"Handling request: method={method} id={request_id} notification={is_notification}"
        )

        try:
            if is_notification:
                logger.debug(f"Received notification: {method}")
                return None
            elif method == "initialize":
                return self._make_result(request_id, self._initialize_result())
            elif method == "ping":
                return self._make_result(request_id, {})
            elif method == "tools/list":
                return self._make_result(request_id, await self._list_tools())
            elif method == "tools/call":
                return await self._handle_tools_call(
                    request_id, params, notify or self.on_notification
                )
            else:
                return self._make_error_response(
                    request_id, JSONRPC_METHOD_NOT_FOUND, f"Method not found: {method}"
                )
        except BridgeError as e:
            logger.debug(f"BridgeError: code={e.code} message={e.message}")
            return self._make_error_response(request_id, e.code, e.message)
        except Exception as e:
            logger.exception(f"Error handling request: {e}")
            return self._make_error_response(
                request_id, JSONRPC_INTERNAL_ERROR, f"Internal bridge error: {e}"
            )

    def _initialize_result(self) -> dict[str, Any]:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}, "logging": {}},
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
        }

    async def _list_tools(self) -> dict[str, Any]:
        capabilities = await self.client.list_capabilities()
        return {
            "tools": [
                {
                    "name": info.name,
                    "description": info.description,
                    "inputSchema": ARGS_INPUT_SCHEMA,
                }
                for info in capabilities
            ]
        }

    async def _handle_tools_call(
        self, request_id: Any, params: dict[str, Any], notify: Notifier | None
    ) -> dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not isinstance(name, str) or not name:
            return self._make_error_response(request_id, JSONRPC_INVALID_PARAMS, "Missing tool name")
        if not isinstance(arguments, dict):
            return self._make_error_response(
                request_id, JSONRPC_INVALID_PARAMS, "Tool arguments must be an object"
            )

        def on_output(chunk: str) -> None:
            if notify is not None:
                notify(self.stream.to_notification(name, chunk, request_id))

        args = tool_arguments(arguments)
        logger.info(f"Calling tool '{name}'")

        try:
            value = await self.client.call(name, args, on_output=on_output)
        except (RemoteCommandError, CommandTimeout, TransportUnavailable) as e:
            logger.info(f"Tool '{name}' failed: {e.message}")
            return self._make_result(request_id, self.stream.to_tool_error(name, e.message))

        return self._make_result(request_id, self.stream.to_tool_result(value))

    def _make_result(self, request_id: Any, result: dict[str, Any]) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    def _make_error_response(self, request_id: Any, code: int, message: str) -> dict[str, Any]:
        """Create JSON-RPC error response."""
        return {
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": code, "message": message},
        }
