"""Bridge module - host/child process bridge.

The host owns a capability table and supervises a command server child;
the child exposes those capabilities as MCP tools and executes them by
correlated round-trips over an inherited socket channel.
"""

from .channel import MessageChannel
from .client import CommandClient
from .correlation import CorrelationTable, PendingRequest
from .errors import (
    BridgeError,
    CapabilityError,
    CommandTimeout,
    MalformedMessage,
    PortConflict,
    ReadinessTimeout,
    RemoteCommandError,
    ShutdownFailure,
    SpawnFailure,
    TransportUnavailable,
    UnknownCommand,
)
from .executor import Capability, CapabilityTable, CommandExecutionBridge
from .lifecycle import ProcessLifecycleManager, ServerProcessState, ServerState
from .messages import parse_message, serialize_message
from .server import ToolServer
from .stream import StreamHandler

__all__ = [
    # Protocol
    "MessageChannel",
    "parse_message",
    "serialize_message",
    "CorrelationTable",
    "PendingRequest",
    # Host side
    "Capability",
    "CapabilityTable",
    "CommandExecutionBridge",
    "ProcessLifecycleManager",
    "ServerProcessState",
    "ServerState",
    # Child side
    "CommandClient",
    "ToolServer",
    "StreamHandler",
    # Errors
    "BridgeError",
    "PortConflict",
    "SpawnFailure",
    "ReadinessTimeout",
    "ShutdownFailure",
    "TransportUnavailable",
    "UnknownCommand",
    "CapabilityError",
    "CommandTimeout",
    "RemoteCommandError",
    "MalformedMessage",
]
