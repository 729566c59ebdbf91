"""Error taxonomy for the process bridge.

Process-level faults (port conflict, spawn failure, readiness timeout,
shutdown failure) are raised to whoever called start/stop/restart.
Protocol-level faults (unknown command, capability error) travel back to the
child as CommandError messages and never crash either process.
"""

from dataclasses import dataclass, field
from typing import Any

# JSON-RPC error codes
JSONRPC_PARSE_ERROR = -32700
JSONRPC_INVALID_REQUEST = -32600
JSONRPC_METHOD_NOT_FOUND = -32601
JSONRPC_INVALID_PARAMS = -32602
JSONRPC_INTERNAL_ERROR = -32603
JSONRPC_SERVER_ERROR = -32000  # -32000 to -32099 reserved for implementation-defined server errors

# Custom error codes for the bridge
BRIDGE_TRANSPORT_ERROR = -32002
BRIDGE_TIMEOUT_ERROR = -32003
BRIDGE_PORT_CONFLICT = -32010
BRIDGE_SPAWN_FAILURE = -32011
BRIDGE_READINESS_TIMEOUT = -32012
BRIDGE_SHUTDOWN_FAILURE = -32013


@dataclass
class BridgeError(Exception):
    """Base error class for bridge errors."""

    code: int
    message: str
    retryable: bool = False
    data: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.message

    def to_jsonrpc(self) -> dict[str, Any]:
        """Convert to JSON-RPC error object."""
        error = {"code": self.code, "message": self.message}
        if self.data:
            error["data"] = self.data
        return error


@dataclass
class PortConflict(BridgeError):
    """Port still occupied after the single remediation attempt."""

    code: int = BRIDGE_PORT_CONFLICT
    message: str = "Port is already in use"
    retryable: bool = False


@dataclass
class SpawnFailure(BridgeError):
    """Child process could not be created, or died before becoming ready."""

    code: int = BRIDGE_SPAWN_FAILURE
    message: str = "Failed to spawn child process"
    retryable: bool = False


@dataclass
class ReadinessTimeout(BridgeError):
    """Child started but never signaled readiness."""

    code: int = BRIDGE_READINESS_TIMEOUT
    message: str = "Child process did not become ready"
    retryable: bool = True


@dataclass
class ShutdownFailure(BridgeError):
    """Child survived both the graceful and the forced termination."""

    code: int = BRIDGE_SHUTDOWN_FAILURE
    message: str = "Child process did not exit"
    retryable: bool = False


@dataclass
class TransportUnavailable(BridgeError):
    """Channel is not writable (missing, closed, or peer gone)."""

    code: int = BRIDGE_TRANSPORT_ERROR
    message: str = "Channel is not available"
    retryable: bool = True


@dataclass
class UnknownCommand(BridgeError):
    """No capability is registered under the requested name."""

    code: int = JSONRPC_METHOD_NOT_FOUND
    message: str = "Unknown command"
    retryable: bool = False


@dataclass
class CapabilityError(BridgeError):
    """A capability handler raised."""

    code: int = JSONRPC_SERVER_ERROR
    message: str = "Capability failed"
    retryable: bool = False


@dataclass
class CommandTimeout(BridgeError):
    """No terminal message arrived within the budget."""

    code: int = BRIDGE_TIMEOUT_ERROR
    message: str = "Command timed out"
    retryable: bool = True


@dataclass
class RemoteCommandError(BridgeError):
    """The host answered a request with a CommandError."""

    code: int = JSONRPC_SERVER_ERROR
    message: str = "Command failed"
    retryable: bool = False


@dataclass
class MalformedMessage(BridgeError):
    """Channel input that does not decode to a known message."""

    code: int = JSONRPC_PARSE_ERROR
    message: str = "Malformed message"
    retryable: bool = False


def unknown_command(name: str) -> UnknownCommand:
    """Build the error reported for an unregistered command name."""
    return UnknownCommand(message=f"Unknown command: {name}", data={"command": name})


def describe_exception(exc: BaseException) -> str:
    """Human-readable message for an exception, without any traceback."""
    message = str(exc).strip()
    return message or type(exc).__name__
