"""Host process runtime.

Owns the capability table, supervises the command server child through the
ProcessLifecycleManager and answers its requests with the
CommandExecutionBridge.
"""

import asyncio
import contextlib
import signal
import sys
from collections.abc import Sequence

import structlog

from ..bridge.executor import CapabilityTable, CommandExecutionBridge
from ..bridge.lifecycle import ProcessLifecycleManager, ServerProcessState, ServerState
from ..config import BridgeConfig

logger = structlog.get_logger(__name__)


def child_command(config: BridgeConfig) -> list[str]:
    """argv that starts the command server with this interpreter."""
    return [
        sys.executable,
        "-m",
        "procbridge",
        "serve",
        "--transport",
        config.transport,
        "--host",
        config.host,
        "--command-timeout",
        str(config.command_timeout),
        "--log-level",
        config.log_level,
    ]


class HostRuntime:
    """Runs one supervised command server on behalf of a capability table."""

    def __init__(
        self,
        config: BridgeConfig,
        capabilities: CapabilityTable,
        command: Sequence[str] | None = None,
    ):
        """Initialize HostRuntime.

        Args:
            config: Bridge configuration
            capabilities: Capabilities offered to the child
            command: Child argv (defaults to ``procbridge serve``)
        """
        self.config = config
        self.bridge = CommandExecutionBridge(capabilities)
        self.manager = ProcessLifecycleManager(
            command or child_command(config),
            config.port,
            host=config.host,
            on_message=self.bridge.handle_message,
            inherit_stdio=config.transport == "stdio",
            start_timeout=config.start_timeout,
            ready_window=config.ready_window,
            stop_grace=config.stop_grace,
        )

    async def run(self, shutdown_event: asyncio.Event) -> ServerProcessState:
        """Start the child, serve until shutdown or child exit, then stop.

        Returns:
            Final state of the child process

        Raises:
            BridgeError: If the child could not be started or stopped
        """
        await self.manager.start()
        logger.info(
            "Bridge running",
            url=self.manager.url,
            pid=self.manager.pid,
            capabilities=len(self.bridge.capabilities),
        )

        shutdown = asyncio.ensure_future(shutdown_event.wait())
        exited = asyncio.ensure_future(self.manager.wait_exited())
        try:
            done, _ = await asyncio.wait(
                {shutdown, exited}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in (shutdown, exited):
                waiter.cancel()
            await self.bridge.close()

        if exited in done and shutdown not in done:
            state = self.manager.state
            logger.warning("Command server exited", state=state.state.value, reason=state.reason)
            return state

        return await self.manager.stop()


async def run_host(config: BridgeConfig, capabilities: CapabilityTable) -> ServerProcessState:
    """Run the host until SIGINT/SIGTERM or until the child exits."""
    runtime = HostRuntime(config, capabilities)
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, signal_handler)

    try:
        return await runtime.run(shutdown_event)
    finally:
        if runtime.manager.state.state in (ServerState.STARTING, ServerState.RUNNING):
            await runtime.manager.stop()
