"""Serve command - the command server child process.

Started by `procbridge host`; reads its port and host channel from
PROCBRIDGE_PORT / PROCBRIDGE_IPC_FD unless given as options.
"""

import asyncio
import sys

import click

from ..bridge.errors import BridgeError
from ..config import TRANSPORTS
from ..runner.child import ChildSettings, run_child
from ..shared.logging import LEVELS, configure_logging, get_logger

logger = get_logger(__name__)


@click.command("serve")
@click.option("--port", type=click.IntRange(0, 65535), help="Port to listen on")
@click.option("--host", "bind_host", help="Interface to bind to")
@click.option(
    "--transport",
    type=click.Choice(TRANSPORTS, case_sensitive=False),
    default="sse",
    show_default=True,
    help="Transport exposed to MCP clients",
)
@click.option("--ipc-fd", type=int, help="File descriptor of the host channel")
@click.option("--command-timeout", type=float, help="Per-call timeout in seconds")
@click.option(
    "--log-level",
    type=click.Choice(LEVELS, case_sensitive=False),
    default="info",
    show_default=True,
    help="Log level",
)
def serve_command(
    port: int | None,
    bind_host: str | None,
    transport: str,
    ipc_fd: int | None,
    command_timeout: float | None,
    log_level: str,
) -> None:
    """Run the command server (normally started by `procbridge host`)."""
    configure_logging(log_level, role="child")

    try:
        settings = ChildSettings.from_env(
            port=port,
            host=bind_host,
            transport=transport.lower(),
            ipc_fd=ipc_fd,
            command_timeout=command_timeout,
        )
    except ValueError as e:
        raise click.ClickException(f"Invalid environment: {e}") from e

    logger.info("Starting command server", port=settings.port, transport=settings.transport)

    try:
        asyncio.run(run_child(settings))
    except KeyboardInterrupt:
        sys.exit(0)
    except BridgeError as e:
        logger.error("Command server failed", error=e.message)
        sys.exit(1)
    except OSError as e:
        # Typically the port could not be bound
        logger.error("Command server failed", error=str(e))
        sys.exit(1)
