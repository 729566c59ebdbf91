"""CommandExecutionBridge - host-side half of the process bridge.

Answers capability discovery from the CapabilityTable and executes
ExecuteCommand requests, streaming CommandOutput chunks followed by exactly
one CommandResult or CommandError per request id.
"""

import asyncio
import inspect
import json
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from .channel import MessageChannel
from .errors import (
    BridgeError,
    CapabilityError,
    TransportUnavailable,
    describe_exception,
    unknown_command,
)
from .messages import (
    AbsentArgs,
    Argument,
    CapabilityInfo,
    CapabilityList,
    CommandError,
    CommandOutput,
    CommandResult,
    DiscoverCapabilities,
    ExecuteCommand,
    Message,
    ObjectArgs,
    ScalarArgs,
    SequenceArgs,
    serialize_message,
)

logger = logging.getLogger(__name__)


@dataclass
class Capability:
    """A named operation the host exposes to the child."""

    name: str
    handler: Callable[..., Any]
    description: str = ""
    streaming: bool = False

    def info(self) -> CapabilityInfo:
        return CapabilityInfo(name=self.name, description=self.description)


class CapabilityTable:
    """Ordered registry of capabilities, keyed by name."""

    def __init__(self) -> None:
        self._capabilities: dict[str, Capability] = {}

    def register(
        self,
        name: str,
        handler: Callable[..., Any],
        description: str = "",
        streaming: bool = False,
    ) -> Capability:
        """Register a handler under a name, replacing any previous one.

        Args:
            name: Command name
            handler: Sync or async callable taking normalized arguments
            description: Human-readable description
            streaming: Pass an ``emit`` keyword callback for incremental output
        """
        capability = Capability(
            name=name, handler=handler, description=description, streaming=streaming
        )
        self._capabilities[name] = capability
        return capability

    def capability(
        self,
        name: str | None = None,
        description: str | None = None,
        streaming: bool = False,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of ``register``.

        The description defaults to the first line of the handler's docstring.
        """

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            doc = inspect.getdoc(func) or ""
            self.register(
                name or func.__name__,
                func,
                description=description if description is not None else doc.split("\n")[0],
                streaming=streaming,
            )
            return func

        return decorator

    def get(self, name: str) -> Capability | None:
        return self._capabilities.get(name)

    def describe(self) -> list[CapabilityInfo]:
        """Capability list in registration order."""
        return [capability.info() for capability in self._capabilities.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)

    def __iter__(self) -> Iterator[Capability]:
        return iter(self._capabilities.values())


def normalize_arguments(args: Argument) -> tuple[Any, ...]:
    """Positional parameters for a capability call.

    - sequence: spread as separate parameters
    - object: the object as the single parameter
    - absent: no parameters
    - scalar: the scalar as the single parameter
    """
    if isinstance(args, SequenceArgs):
        return tuple(args.items)
    if isinstance(args, ObjectArgs):
        return (args.fields,)
    if isinstance(args, AbsentArgs):
        return ()
    if isinstance(args, ScalarArgs):
        return (args.value,)
    raise TypeError(f"Not an Argument variant: {type(args).__name__}")


def chunk_to_text(chunk: Any) -> str:
    """Render an output chunk as text."""
    if isinstance(chunk, str):
        return chunk
    try:
        return json.dumps(chunk)
    except (TypeError, ValueError):
        return str(chunk)


class OutputEmitter:
    """Writes CommandOutput chunks for one request, until its terminal message."""

    def __init__(self, channel: MessageChannel, request_id: str, command: str):
        self._channel = channel
        self.request_id = request_id
        self.command = command
        self.count = 0
        self.closed = False

    def __call__(self, chunk: Any) -> None:
        if self.closed:
            logger.warning(f"Dropping output emitted after '{self.command}' finished")
            return
        self._channel.send_nowait(
            CommandOutput(request_id=self.request_id, chunk=chunk_to_text(chunk))
        )
        self.count += 1


class CommandExecutionBridge:
    """Serves DiscoverCapabilities and ExecuteCommand requests from the child."""

    def __init__(self, capabilities: CapabilityTable):
        """Initialize CommandExecutionBridge.

        Args:
            capabilities: Table of callable capabilities (read-only here)
        """
        self.capabilities = capabilities
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight_count(self) -> int:
        """Number of executions still running."""
        return len(self._tasks)

    async def handle_message(self, message: Message, channel: MessageChannel) -> None:
        """Handle one message received from the child.

        Executions run in their own task so a slow capability never blocks
        the channel reader.
        """
        if isinstance(message, DiscoverCapabilities):
            await self._answer_discovery(channel)
        elif isinstance(message, ExecuteCommand):
            task = asyncio.create_task(
                self.execute(message, channel), name=f"execute:{message.request_id}"
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            logger.warning(f"Ignoring unexpected message from child: {message.type.value}")

    async def _answer_discovery(self, channel: MessageChannel) -> None:
        capabilities = self.capabilities.describe()
        logger.info(f"Sending {len(capabilities)} capabilities to child")
        try:
            await channel.send(CapabilityList(capabilities=capabilities))
        except TransportUnavailable as e:
            logger.warning(f"Could not send capability list: {e.message}")

    async def execute(self, message: ExecuteCommand, channel: MessageChannel) -> None:
        """Run one capability and send its outputs and terminal message."""
        request_id = message.request_id
        emitter = OutputEmitter(channel, request_id, message.command)

        try:
            value = await self._invoke(message, emitter)
        except BridgeError as e:
            terminal: Message = CommandError(request_id=request_id, message=e.message)
        except asyncio.CancelledError:
            emitter.closed = True
            raise
        except Exception as e:
            failure = self._capability_failed(message.command, e)
            terminal = CommandError(request_id=request_id, message=failure.message)
        else:
            terminal = self._result_message(message, value)

        emitter.closed = True
        logger.debug(
            f"Finished '{message.command}' (id={request_id} outputs={emitter.count} "
            f"status={terminal.type.value})"
        )
        try:
            await channel.send(terminal)
        except TransportUnavailable as e:
            logger.warning(f"Could not deliver result of '{message.command}': {e.message}")

    async def _invoke(self, message: ExecuteCommand, emitter: OutputEmitter) -> Any:
        capability = self.capabilities.get(message.command)
        if capability is None:
            logger.warning(f"Unknown command requested: {message.command}")
            raise unknown_command(message.command)

        params = normalize_arguments(message.args)
        kwargs = {"emit": emitter} if capability.streaming else {}
        logger.info(f"Executing '{capability.name}' (id={message.request_id})")

        result = capability.handler(*params, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _result_message(self, message: ExecuteCommand, value: Any) -> Message:
        result = CommandResult(request_id=message.request_id, value=value)
        try:
            serialize_message(result)
        except (TypeError, ValueError) as e:
            logger.warning(f"Result of '{message.command}' is not JSON-serializable: {e}")
            return CommandError(
                request_id=message.request_id,
                message=f"Result of '{message.command}' is not JSON-serializable",
            )
        return result

    def _capability_failed(self, command: str, error: Exception) -> CapabilityError:
        failure = CapabilityError(message=describe_exception(error), data={"command": command})
        # Traceback stays in the host log; only the message crosses the channel
        logger.error(f"Capability '{command}' failed: {failure.message}", exc_info=error)
        return failure

    async def close(self) -> None:
        """Cancel executions that are still running."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
