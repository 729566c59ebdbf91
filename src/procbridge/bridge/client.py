"""CommandClient - child-side half of the process bridge.

Turns tool invocations into correlated round-trips over the host channel:
every call gets a fresh request id, a pending entry and a timeout; incoming
output/result/error messages are matched back by id.
"""

import asyncio
import logging
from typing import Any

from .channel import MessageChannel
from .correlation import CorrelationTable, OutputSink
from .errors import BridgeError, CommandTimeout, RemoteCommandError, TransportUnavailable
from .messages import (
    CapabilityInfo,
    CapabilityList,
    CommandError,
    CommandOutput,
    CommandResult,
    DiscoverCapabilities,
    ExecuteCommand,
    Message,
    as_argument,
)

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_COMMAND_TIMEOUT = 30.0
DEFAULT_DISCOVERY_TIMEOUT = 10.0


class CommandClient:
    """Sends ExecuteCommand requests and resolves them from host replies."""

    def __init__(
        self,
        channel: MessageChannel | None,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        discovery_timeout: float = DEFAULT_DISCOVERY_TIMEOUT,
    ):
        """Initialize CommandClient.

        Args:
            channel: Channel to the host, or None when running detached
            timeout: Default per-call budget in seconds
            discovery_timeout: Budget for a capability discovery round-trip
        """
        self.channel = channel
        self.timeout = timeout
        self.discovery_timeout = discovery_timeout

        self._pending = CorrelationTable()
        self._capabilities: list[CapabilityInfo] = []
        self._discovery: asyncio.Future | None = None

    @property
    def pending(self) -> CorrelationTable:
        """In-flight requests."""
        return self._pending

    @property
    def capabilities(self) -> list[CapabilityInfo]:
        """Last capability list received from the host."""
        return list(self._capabilities)

    @property
    def is_connected(self) -> bool:
        return self.channel is not None and self.channel.is_writable

    def _require_channel(self) -> MessageChannel:
        if self.channel is None or not self.channel.is_writable:
            raise TransportUnavailable(
                message="Cannot communicate with host: channel is not available"
            )
        return self.channel

    # =========================================================================
    # Command execution
    # =========================================================================

    async def call(
        self,
        command: str,
        args: Any = None,
        *,
        on_output: OutputSink | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Execute a host capability and wait for its terminal message.

        Args:
            command: Capability name
            args: Raw JSON value or Argument variant
            on_output: Called with each CommandOutput chunk
            timeout: Per-call budget (defaults to the client timeout)

        Returns:
            The CommandResult value

        Raises:
            TransportUnavailable: If the channel cannot be written
            RemoteCommandError: If the host answered with CommandError
            CommandTimeout: If no terminal message arrived in time
        """
        channel = self._require_channel()
        loop = asyncio.get_running_loop()
        budget = self.timeout if timeout is None else timeout

        request_id = self._pending.next_id()
        future = loop.create_future()
        pending = self._pending.register(request_id, command, future, on_output=on_output)
        pending.timeout_handle = loop.call_later(budget, self._on_timeout, request_id, budget)

        try:
            logger.debug(f"Sending execute_command: id={request_id} command={command}")
            await channel.send(
                ExecuteCommand(request_id=request_id, command=command, args=as_argument(args))
            )
            return await future
        finally:
            # No-op when the entry was already settled by a reply or timeout
            self._pending.settle(request_id)

    def _on_timeout(self, request_id: str, budget: float) -> None:
        pending = self._pending.settle(request_id)
        if pending is None:
            return

        logger.warning(f"Command '{pending.command}' timed out after {budget}s (id={request_id})")
        if not pending.future.done():
            pending.future.set_exception(
                CommandTimeout(
                    message=f"Command execution timed out: {pending.command}",
                    data={"request_id": request_id, "timeout": budget},
                )
            )

    # =========================================================================
    # Capability discovery
    # =========================================================================

    async def request_capabilities(self) -> None:
        """Ask the host for its capability list without waiting for it."""
        await self._require_channel().send(DiscoverCapabilities())

    async def list_capabilities(self, refresh: bool = False) -> list[CapabilityInfo]:
        """Return the host's capabilities, asking for them if none are cached.

        Raises:
            TransportUnavailable: If the channel cannot be written
            CommandTimeout: If the host does not answer in time
        """
        if self._capabilities and not refresh:
            return list(self._capabilities)

        if self._discovery is None or self._discovery.done():
            self._discovery = discovery = asyncio.get_running_loop().create_future()
            try:
                await self.request_capabilities()
            except BridgeError as e:
                # Concurrent waiters share the failure; the next call retries
                discovery.set_exception(e)
                discovery.exception()
                self._discovery = None
                raise

        try:
            capabilities = await asyncio.wait_for(
                asyncio.shield(self._discovery), timeout=self.discovery_timeout
            )
        except asyncio.TimeoutError:
            self._discovery = None
            raise CommandTimeout(
                message=f"Capability discovery timed out after {self.discovery_timeout}s"
            ) from None
        return list(capabilities)

    # =========================================================================
    # Incoming messages
    # =========================================================================

    def handle_message(self, message: Message) -> None:
        """Dispatch one message received from the host."""
        if isinstance(message, CapabilityList):
            self._on_capabilities(message)
        elif isinstance(message, CommandOutput):
            self._on_output(message)
        elif isinstance(message, CommandResult):
            self._on_terminal(message.request_id, result=message.value)
        elif isinstance(message, CommandError):
            self._on_terminal(message.request_id, error=message.message)
        else:
            logger.warning(f"Ignoring unexpected message from host: {message.type.value}")

    def _on_capabilities(self, message: CapabilityList) -> None:
        self._capabilities = list(message.capabilities)
        logger.info(f"Received {len(self._capabilities)} capabilities from host")
        if self._discovery is not None and not self._discovery.done():
            self._discovery.set_result(self._capabilities)

    def _on_output(self, message: CommandOutput) -> None:
        pending = self._pending.get(message.request_id)
        if pending is None:
            logger.debug(f"Dropping output for unknown request {message.request_id}")
            return

        pending.outputs += 1
        if pending.on_output is None:
            return
        try:
            pending.on_output(message.chunk)
        except Exception as e:
            logger.warning(f"Output sink failed for '{pending.command}': {e}")

    def _on_terminal(self, request_id: str, result: Any = None, error: str | None = None) -> None:
        pending = self._pending.settle(request_id)
        if pending is None:
            logger.debug(f"Dropping terminal message for unknown request {request_id}")
            return
        if pending.future.done():
            return

        if error is not None:
            pending.future.set_exception(
                RemoteCommandError(message=error, data={"command": pending.command})
            )
        else:
            pending.future.set_result(result)

    async def run(self) -> None:
        """Read host messages until the channel closes.

        On end of stream every pending call fails with TransportUnavailable.
        """
        if self.channel is None:
            return

        async for message in self.channel:
            self.handle_message(message)

        logger.info("Host channel closed")
        self.fail_pending(TransportUnavailable(message="Host channel closed"))
        await self.channel.close()

    def fail_pending(self, error: Exception) -> None:
        """Reject every in-flight call and discovery with the given error."""
        for pending in self._pending.drain():
            if not pending.future.done():
                pending.future.set_exception(error)
        if self._discovery is not None and not self._discovery.done():
            self._discovery.set_exception(error)
            # Mark as retrieved; awaiting callers still receive it
            self._discovery.exception()

    async def close(self) -> None:
        """Close the host channel and fail whatever is still pending."""
        self.fail_pending(TransportUnavailable(message="Command client closed"))
        if self.channel is not None:
            await self.channel.close()
