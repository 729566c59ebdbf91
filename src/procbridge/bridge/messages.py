"""Wire protocol between the host process and the command server child.

Messages are JSON objects, one per line, tagged by ``type``. Decoding is
split in two: ``decode_message`` is strict and raises ``MalformedMessage``;
``parse_message`` never raises and hands back an ``Unparseable`` value that
receivers log and drop.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from .errors import MalformedMessage


class MessageType(str, Enum):
    """Type tags carried in the ``type`` field."""

    # From child to host
    DISCOVER_CAPABILITIES = "get_commands"
    EXECUTE_COMMAND = "execute_command"
    READY = "ready"

    # From host to child
    CAPABILITY_LIST = "commands_list"
    COMMAND_OUTPUT = "command_output"
    COMMAND_RESULT = "command_result"
    COMMAND_ERROR = "command_error"


# =============================================================================
# Arguments
# =============================================================================


@dataclass
class SequenceArgs:
    """Ordered arguments, spread positionally into the capability."""

    items: list[Any] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.items = list(self.items)


@dataclass
class ObjectArgs:
    """A single JSON object passed as the one parameter."""

    fields: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.fields = dict(self.fields)


@dataclass
class ScalarArgs:
    """A single scalar passed as the one parameter."""

    value: Any

    def __post_init__(self) -> None:
        if self.value is None or isinstance(self.value, (list, tuple, dict)):
            raise TypeError(f"Not a scalar argument: {self.value!r}")


@dataclass
class AbsentArgs:
    """No arguments at all."""


Argument = Union[SequenceArgs, ObjectArgs, ScalarArgs, AbsentArgs]

ARGUMENT_TYPES = (SequenceArgs, ObjectArgs, ScalarArgs, AbsentArgs)


def as_argument(raw: Any) -> Argument:
    """Wrap a decoded JSON value in its Argument variant.

    Values that already are an Argument pass through unchanged.
    """
    if isinstance(raw, ARGUMENT_TYPES):
        return raw
    if raw is None:
        return AbsentArgs()
    if isinstance(raw, (list, tuple)):
        return SequenceArgs(items=list(raw))
    if isinstance(raw, dict):
        return ObjectArgs(fields=dict(raw))
    return ScalarArgs(value=raw)


def argument_to_json(args: Argument) -> tuple[bool, Any]:
    """Return ``(present, value)`` for the ``args`` wire field."""
    if isinstance(args, SequenceArgs):
        return True, list(args.items)
    if isinstance(args, ObjectArgs):
        return True, dict(args.fields)
    if isinstance(args, ScalarArgs):
        return True, args.value
    if isinstance(args, AbsentArgs):
        return False, None
    raise TypeError(f"Not an Argument variant: {type(args).__name__}")


# =============================================================================
# Messages
# =============================================================================


@dataclass
class CapabilityInfo:
    """Name and description of one capability."""

    name: str
    description: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "description": self.description}


@dataclass
class DiscoverCapabilities:
    type = MessageType.DISCOVER_CAPABILITIES


@dataclass
class CapabilityList:
    capabilities: list[CapabilityInfo] = field(default_factory=list)
    type = MessageType.CAPABILITY_LIST

    def __post_init__(self) -> None:
        self.capabilities = list(self.capabilities)
        names = [info.name for info in self.capabilities]
        if len(names) != len(set(names)):
            duplicates = sorted({name for name in names if names.count(name) > 1})
            raise ValueError(f"Duplicate capability names: {', '.join(duplicates)}")


@dataclass
class ExecuteCommand:
    request_id: str
    command: str
    args: Argument = field(default_factory=AbsentArgs)
    type = MessageType.EXECUTE_COMMAND


@dataclass
class CommandOutput:
    request_id: str
    chunk: str
    type = MessageType.COMMAND_OUTPUT


@dataclass
class CommandResult:
    request_id: str
    value: Any = None
    type = MessageType.COMMAND_RESULT


@dataclass
class CommandError:
    request_id: str
    message: str
    type = MessageType.COMMAND_ERROR


@dataclass
class Ready:
    port: int | None = None
    type = MessageType.READY


Message = Union[
    DiscoverCapabilities,
    CapabilityList,
    ExecuteCommand,
    CommandOutput,
    CommandResult,
    CommandError,
    Ready,
]

TERMINAL_MESSAGES = (CommandResult, CommandError)


@dataclass
class Unparseable:
    """Channel input that could not be decoded."""

    raw: str
    reason: str


def is_terminal(message: Any) -> bool:
    """Whether the message ends a request's lifecycle."""
    return isinstance(message, TERMINAL_MESSAGES)


# =============================================================================
# Encoding
# =============================================================================


def message_to_dict(message: Message) -> dict[str, Any]:
    """Convert a message to its wire dict."""
    data: dict[str, Any] = {"type": message.type.value}

    if isinstance(message, DiscoverCapabilities):
        pass
    elif isinstance(message, CapabilityList):
        data["commands"] = [info.to_dict() for info in message.capabilities]
    elif isinstance(message, ExecuteCommand):
        data["requestId"] = message.request_id
        data["command"] = message.command
        present, value = argument_to_json(message.args)
        if present:
            data["args"] = value
    elif isinstance(message, CommandOutput):
        data["requestId"] = message.request_id
        data["chunk"] = message.chunk
    elif isinstance(message, CommandResult):
        data["requestId"] = message.request_id
        data["value"] = message.value
    elif isinstance(message, CommandError):
        data["requestId"] = message.request_id
        data["message"] = message.message
    elif isinstance(message, Ready):
        if message.port is not None:
            data["port"] = message.port
    else:
        raise TypeError(f"Not a message: {type(message).__name__}")

    return data


def serialize_message(message: Message) -> str:
    """Serialize a message to a single line of JSON (no trailing newline).

    Raises:
        TypeError, ValueError: If a carried value is not JSON-serializable
    """
    return json.dumps(message_to_dict(message), separators=(",", ":"), allow_nan=False)


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise MalformedMessage(message=f"Field '{key}' must be a string")
    return value


def _decode_capabilities(raw: Any) -> list[CapabilityInfo]:
    if not isinstance(raw, list):
        raise MalformedMessage(message="Field 'commands' must be a list")

    capabilities = []
    seen: set[str] = set()
    for entry in raw:
        if not isinstance(entry, dict):
            raise MalformedMessage(message="Capability entries must be objects")
        name = _require_str(entry, "name")
        description = entry.get("description") or ""
        if not isinstance(description, str):
            raise MalformedMessage(message=f"Description of '{name}' must be a string")
        if name in seen:
            raise MalformedMessage(message=f"Duplicate capability name: {name}")
        seen.add(name)
        capabilities.append(CapabilityInfo(name=name, description=description))
    return capabilities


def message_from_dict(data: Any) -> Message:
    """Build a message from its wire dict.

    Raises:
        MalformedMessage: If the dict is not a valid message
    """
    if not isinstance(data, dict):
        raise MalformedMessage(message="Message must be a JSON object")

    raw_type = data.get("type")
    try:
        message_type = MessageType(raw_type)
    except ValueError:
        raise MalformedMessage(message=f"Unknown message type: {raw_type!r}") from None

    if message_type is MessageType.DISCOVER_CAPABILITIES:
        return DiscoverCapabilities()
    if message_type is MessageType.CAPABILITY_LIST:
        return CapabilityList(capabilities=_decode_capabilities(data.get("commands")))
    if message_type is MessageType.EXECUTE_COMMAND:
        return ExecuteCommand(
            request_id=_require_str(data, "requestId"),
            command=_require_str(data, "command"),
            args=as_argument(data.get("args")),
        )
    if message_type is MessageType.COMMAND_OUTPUT:
        return CommandOutput(
            request_id=_require_str(data, "requestId"),
            chunk=_require_str(data, "chunk"),
        )
    if message_type is MessageType.COMMAND_RESULT:
        return CommandResult(request_id=_require_str(data, "requestId"), value=data.get("value"))
    if message_type is MessageType.COMMAND_ERROR:
        return CommandError(
            request_id=_require_str(data, "requestId"),
            message=_require_str(data, "message"),
        )

    port = data.get("port")
    if port is not None and (isinstance(port, bool) or not isinstance(port, int)):
        raise MalformedMessage(message="Field 'port' must be an integer")
    return Ready(port=port)


def decode_message(raw: str | bytes) -> Message:
    """Strictly decode one serialized message.

    Raises:
        MalformedMessage: On invalid JSON or an invalid message shape
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedMessage(message=f"Invalid UTF-8: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedMessage(message=f"Invalid JSON: {e}") from e

    return message_from_dict(data)


def parse_message(raw: str | bytes) -> Message | Unparseable:
    """Decode one serialized message; never raises."""
    try:
        return decode_message(raw)
    except MalformedMessage as e:
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
        return Unparseable(raw=text, reason=e.message)
