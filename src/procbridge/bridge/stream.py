"""StreamHandler - shapes command output and results for MCP callers.

Converts CommandOutput chunks into ``notifications/message`` notifications
and capability results or failures into ``tools/call`` results.
"""

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)


class StreamHandler:
    """Builds MCP notifications and tool results from bridge traffic."""

    def to_notification(self, tool: str, chunk: str, request_id: Any = None) -> dict:
        """Convert an output chunk to an MCP notification.

        Args:
            tool: Name of the tool producing output
            chunk: Output text
            request_id: JSON-RPC id of the originating tools/call

        Returns:
            MCP notifications/message notification
        """
        data: dict[str, Any] = {"message": chunk, "tool": tool}
        if request_id is not None:
            data["requestId"] = request_id

        return {
            "jsonrpc": "2.0",
            "method": "notifications/message",
            "params": {
                "level": "info",
                "logger": tool,
                "data": data,
            },
        }

    def format_value(self, value: Any) -> str:
        """Render a result value as text (strings verbatim, others as JSON)."""
        if isinstance(value, str):
            return value
        try:
            return json.dumps(value, indent=2)
        except (TypeError, ValueError):
            return str(value)

    def to_tool_result(self, value: Any) -> dict:
        """Convert a capability result to a tools/call result.

        Args:
            value: CommandResult value

        Returns:
            MCP tool result with one text content item
        """
        return {"content": [{"type": "text", "text": self.format_value(value)}]}

    def to_tool_error(self, tool: str, message: str) -> dict:
        """Convert a failure to a tools/call result flagged as error.

        Args:
            tool: Tool name
            message: Human-readable failure message

        Returns:
            MCP tool result with isError set
        """
        return {
            "content": [{"type": "text", "text": f"Error executing tool {tool}: {message}"}],
            "isError": True,
        }
