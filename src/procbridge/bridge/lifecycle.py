"""ProcessLifecycleManager - owns the command server child process.

Handles:
- Port conflict detection and a single remediation attempt
- Spawning the child with an inherited socketpair channel
- Readiness: explicit Ready message, falling back to GET /health
- Graceful stop with forced kill after a grace period
- Noticing unexpected child exit

State machine:
    NOT_STARTED -> STARTING -> RUNNING -> STOPPING -> STOPPED
    STARTING -> FAILED, RUNNING -> FAILED
"""

import asyncio
import contextlib
import logging
import os
import socket
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum

from .channel import MessageChannel
from .errors import (
    BridgeError,
    PortConflict,
    ReadinessTimeout,
    ShutdownFailure,
    SpawnFailure,
    TransportUnavailable,
    describe_exception,
)
from .health import probe_health
from .messages import Message, Ready
from .ports import is_port_in_use, kill_process_on_port

logger = logging.getLogger(__name__)

# Environment passed to the child
PORT_ENV = "PROCBRIDGE_PORT"
IPC_FD_ENV = "PROCBRIDGE_IPC_FD"

# Default configuration
DEFAULT_PORT = 5201
DEFAULT_HOST = "127.0.0.1"
DEFAULT_START_TIMEOUT = 10.0
DEFAULT_READY_WINDOW = 3.0
DEFAULT_STOP_GRACE = 5.0
DEFAULT_PROBE_INTERVAL = 0.25
KILL_TIMEOUT = 5.0

MessageHandler = Callable[[Message, MessageChannel], Awaitable[None]]


class ServerState(str, Enum):
    """Lifecycle states of the child process."""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class ServerProcessState:
    """Current state, with the port while running and the reason once failed."""

    state: ServerState
    port: int | None = None
    reason: str | None = None


class ProcessLifecycleManager:
    """Starts, watches and stops one command server process."""

    def __init__(
        self,
        command: Sequence[str],
        port: int = DEFAULT_PORT,
        *,
        host: str = DEFAULT_HOST,
        on_message: MessageHandler | None = None,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        inherit_stdio: bool = False,
        start_timeout: float = DEFAULT_START_TIMEOUT,
        ready_window: float = DEFAULT_READY_WINDOW,
        stop_grace: float = DEFAULT_STOP_GRACE,
        probe_interval: float = DEFAULT_PROBE_INTERVAL,
        port_probe: Callable[[int, str], bool] = is_port_in_use,
        port_remediator: Callable[[int], Awaitable[object]] = kill_process_on_port,
        health_probe: Callable[[str], Awaitable[bool]] = probe_health,
    ):
        """Initialize ProcessLifecycleManager.

        Args:
            command: argv of the child process
            port: Default port handed to the child
            host: Loopback interface used for probing and health checks
            on_message: Coroutine called with each non-Ready message from the child
            env: Extra environment for the child
            cwd: Working directory of the child
            inherit_stdio: Let the child use this process's stdin/stdout/stderr
            start_timeout: Overall budget for a start attempt (seconds)
            ready_window: Time to wait for a Ready message before probing /health
            stop_grace: Time between SIGTERM and SIGKILL (seconds)
            probe_interval: Delay between health probes (seconds)
            port_probe: Returns True when the port is occupied
            port_remediator: Tries once to free an occupied port
            health_probe: Returns True when the child's liveness endpoint answers
        """
        if not command:
            raise ValueError("command must not be empty")

        self.command = list(command)
        self.default_port = port
        self.host = host
        self.env = dict(env or {})
        self.cwd = cwd
        self.inherit_stdio = inherit_stdio
        self.start_timeout = start_timeout
        self.ready_window = ready_window
        self.stop_grace = stop_grace
        self.probe_interval = probe_interval

        self._on_message = on_message
        self._port_probe = port_probe
        self._port_remediator = port_remediator
        self._health_probe = health_probe

        self._state = ServerProcessState(ServerState.NOT_STARTED)
        self._process: asyncio.subprocess.Process | None = None
        self._channel: MessageChannel | None = None
        self._ready: asyncio.Event | None = None
        self._exited: asyncio.Event | None = None
        self._start_task: asyncio.Task | None = None
        self._stop_task: asyncio.Task | None = None
        self._watch_task: asyncio.Task | None = None
        self._io_tasks: list[asyncio.Task] = []

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> ServerProcessState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state.state is ServerState.RUNNING

    @property
    def port(self) -> int | None:
        """Port of the running child (None unless running)."""
        return self._state.port if self.is_running else None

    @property
    def url(self) -> str | None:
        """Base URL of the running child (None unless running)."""
        port = self.port
        return self._url_for(port) if port is not None else None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def channel(self) -> MessageChannel:
        """Channel to the running child.

        Raises:
            TransportUnavailable: If the child is not running
        """
        if not self.is_running or self._channel is None:
            reason = self._state.reason or self._state.state.value
            raise TransportUnavailable(message=f"Child process is not running ({reason})")
        return self._channel

    async def send(self, message: Message) -> None:
        """Send a message to the running child."""
        await self.channel.send(message)

    def _url_for(self, port: int) -> str:
        return f"http://{self.host}:{port}"

    def _set_state(
        self, state: ServerState, port: int | None = None, reason: str | None = None
    ) -> None:
        previous = self._state.state
        self._state = ServerProcessState(state=state, port=port, reason=reason)
        if previous is not state:
            logger.debug(f"Child process state: {previous.value} -> {state.value}")

    async def wait_exited(self) -> None:
        """Wait until the current child process has exited."""
        if self._exited is not None:
            await self._exited.wait()

    # =========================================================================
    # Start
    # =========================================================================

    async def start(self, port: int | None = None) -> ServerProcessState:
        """Start the child process, or join a start already in flight.

        Args:
            port: Port for the child (defaults to the manager's port)

        Returns:
            The RUNNING state

        Raises:
            PortConflict: If the port is still occupied after remediation
            SpawnFailure: If the process could not be created or died early
            ReadinessTimeout: If the process never became ready
        """
        if self._stop_task is not None:
            await asyncio.shield(self._stop_task)

        if self.is_running:
            logger.debug("Child process already running")
            return self._state

        if self._start_task is None:
            task = asyncio.create_task(self._start(port or self.default_port))
            task.add_done_callback(self._clear_start_task)
            self._start_task = task

        return await asyncio.shield(self._start_task)

    def _clear_start_task(self, task: asyncio.Task) -> None:
        if self._start_task is task:
            self._start_task = None

    async def _start(self, port: int) -> ServerProcessState:
        self._set_state(ServerState.STARTING)
        logger.info(f"Starting child process on port {port}: {' '.join(self.command)}")

        try:
            await self._ensure_port_available(port)
            await self._spawn(port)
            await self._wait_until_ready(port)
        except BaseException as e:
            reason = e.message if isinstance(e, BridgeError) else describe_exception(e)
            logger.error(f"Failed to start child process: {reason}")
            await self._teardown()
            self._set_state(ServerState.FAILED, reason=reason)
            raise

        self._set_state(ServerState.RUNNING, port=port)
        self._watch_task = asyncio.create_task(self._watch(self._process))
        logger.info(f"Child process running on {self._url_for(port)} (PID {self.pid})")
        return self._state

    async def _ensure_port_available(self, port: int) -> None:
        if not self._port_probe(port, self.host):
            return

        logger.warning(
            f"Port {port} is already in use. Attempting to terminate the existing process..."
        )
        await self._port_remediator(port)

        if self._port_probe(port, self.host):
            raise PortConflict(
                message=f"Port {port} is still in use after attempting to kill the process",
                data={"port": port},
            )
        logger.info(f"Port {port} freed")

    async def _spawn(self, port: int) -> None:
        parent_sock, child_sock = socket.socketpair()
        env = {
            **os.environ,
            **self.env,
            PORT_ENV: str(port),
            IPC_FD_ENV: str(child_sock.fileno()),
        }
        stdio = None if self.inherit_stdio else asyncio.subprocess.PIPE

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                env=env,
                cwd=self.cwd,
                stdin=None if self.inherit_stdio else asyncio.subprocess.DEVNULL,
                stdout=stdio,
                stderr=stdio,
                pass_fds=(child_sock.fileno(),),
            )
        except (OSError, ValueError) as e:
            parent_sock.close()
            raise SpawnFailure(
                message=f"Failed to start child process: {e}",
                data={"command": self.command},
            ) from e
        finally:
            child_sock.close()

        self._exited = asyncio.Event()
        self._ready = asyncio.Event()
        self._channel = await MessageChannel.from_socket(parent_sock, name="child channel")
        self._io_tasks = [asyncio.create_task(self._read_channel(self._channel))]
        if not self.inherit_stdio:
            self._io_tasks.append(
                asyncio.create_task(self._pump(self._process.stdout, logging.INFO))
            )
            self._io_tasks.append(
                asyncio.create_task(self._pump(self._process.stderr, logging.ERROR))
            )

    async def _read_channel(self, channel: MessageChannel) -> None:
        async for message in channel:
            if isinstance(message, Ready):
                logger.info(f"Child signaled ready (port {message.port})")
                self._ready.set()
                continue
            if self._on_message is None:
                logger.debug(f"No handler for child message: {message.type.value}")
                continue
            try:
                await self._on_message(message, channel)
            except Exception as e:
                logger.exception(f"Error handling child message {message.type.value}: {e}")
        logger.info("Child channel closed")

    async def _pump(self, stream: asyncio.StreamReader | None, level: int) -> None:
        if stream is None:
            return
        async for line in stream:
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.log(level, f"Command server: {text}")

    async def _wait_until_ready(self, port: int) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.start_timeout

        if await self._wait_ready_or_exit(min(self.ready_window, self.start_timeout)):
            return

        url = self._url_for(port)
        logger.info(f"No ready message after {self.ready_window}s, probing {url}/health")
        while True:
            if self._ready.is_set():
                return
            if await self._health_probe(url):
                logger.info("Child answered health probe")
                return

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ReadinessTimeout(
                    message=f"Child process did not become ready within {self.start_timeout}s",
                    data={"port": port},
                )
            if await self._wait_ready_or_exit(min(self.probe_interval, remaining)):
                return

    async def _wait_ready_or_exit(self, timeout: float) -> bool:
        """Wait for Ready; raise SpawnFailure if the child exits first."""
        ready = asyncio.ensure_future(self._ready.wait())
        exited = asyncio.ensure_future(self._process.wait())
        try:
            done, _ = await asyncio.wait(
                {ready, exited}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in (ready, exited):
                if not waiter.done():
                    waiter.cancel()

        if exited in done:
            raise SpawnFailure(
                message=(
                    f"Child process exited with code {self._process.returncode} "
                    "before becoming ready"
                ),
                data={"returncode": self._process.returncode},
            )
        return ready in done

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        if self._process is not process or not self.is_running:
            return

        await self._release()
        if returncode == 0:
            logger.warning("Child process exited")
            self._set_state(ServerState.STOPPED)
        else:
            reason = f"Child process exited unexpectedly with code {returncode}"
            logger.error(reason)
            self._set_state(ServerState.FAILED, reason=reason)

    # =========================================================================
    # Stop
    # =========================================================================

    async def stop(self) -> ServerProcessState:
        """Stop the child process; a no-op when nothing is running.

        Raises:
            ShutdownFailure: If the process survives SIGKILL
        """
        if self._start_task is not None:
            # A failed start has already torn itself down
            with contextlib.suppress(BridgeError):
                await asyncio.shield(self._start_task)

        if self._stop_task is None:
            if self._process is None:
                logger.debug("No child process to stop")
                return self._state
            task = asyncio.create_task(self._stop(self._process))
            task.add_done_callback(self._clear_stop_task)
            self._stop_task = task

        return await asyncio.shield(self._stop_task)

    def _clear_stop_task(self, task: asyncio.Task) -> None:
        if self._stop_task is task:
            self._stop_task = None

    async def _stop(self, process: asyncio.subprocess.Process) -> ServerProcessState:
        self._set_state(ServerState.STOPPING)
        logger.info(f"Stopping child process (PID {process.pid})...")

        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_grace)
                logger.info("Child process stopped gracefully")
            except asyncio.TimeoutError:
                logger.warning(f"Force killing child process after {self.stop_grace}s")
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                try:
                    await asyncio.wait_for(process.wait(), timeout=KILL_TIMEOUT)
                except asyncio.TimeoutError:
                    reason = f"Child process {process.pid} did not exit after SIGKILL"
                    logger.error(reason)
                    self._set_state(ServerState.FAILED, reason=reason)
                    raise ShutdownFailure(message=reason, data={"pid": process.pid}) from None

        await self._release()
        self._set_state(ServerState.STOPPED)
        return self._state

    async def restart(self, port: int | None = None) -> ServerProcessState:
        """Stop, then start. A failing stop aborts without starting."""
        await self.stop()
        return await self.start(port)

    # =========================================================================
    # Cleanup
    # =========================================================================

    async def _teardown(self) -> None:
        """Kill a partially started child and release its resources."""
        process = self._process
        if process is not None and process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            try:
                await asyncio.wait_for(process.wait(), timeout=KILL_TIMEOUT)
            except asyncio.TimeoutError:
                logger.error(f"Child process {process.pid} did not exit after SIGKILL")
        await self._release()

    async def _release(self) -> None:
        """Drop the process handle, channel and helper tasks."""
        current = asyncio.current_task()
        tasks = [t for t in [*self._io_tasks, self._watch_task] if t and t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._io_tasks = []
        self._watch_task = None

        if self._channel is not None:
            await self._channel.close()
            self._channel = None

        self._process = None
        if self._exited is not None:
            self._exited.set()
