"""Host command - run capabilities behind a supervised command server.

Loads a capability table, starts `procbridge serve` as a child process
connected over an inherited socket, and keeps it running until interrupted.
"""

import asyncio
import sys

import click

from ..bridge.errors import BridgeError
from ..bridge.lifecycle import ServerState
from ..capabilities import load_capability_table
from ..config import TRANSPORTS, BridgeConfig, load_config
from ..runner.host import run_host
from ..shared.logging import LEVELS, configure_logging, get_logger
from ..shared.paths import ensure_dirs, get_log_file

logger = get_logger(__name__)


def apply_overrides(config: BridgeConfig, **overrides) -> BridgeConfig:
    """CLI flags take precedence over environment and config file."""
    for key, value in overrides.items():
        if value is not None:
            setattr(config, key, value)
            config._sources[key] = "command line"
    return config


@click.command("host")
@click.option(
    "--capabilities",
    "capabilities_ref",
    help="Capability table as module:attr (default: built-in table)",
)
@click.option("--port", type=click.IntRange(1, 65535), help="Port for the command server")
@click.option("--host", "bind_host", help="Interface the command server binds to")
@click.option(
    "--transport",
    type=click.Choice(TRANSPORTS, case_sensitive=False),
    help="How MCP clients reach the command server",
)
@click.option(
    "--log-level",
    type=click.Choice(LEVELS, case_sensitive=False),
    help="Log level",
)
@click.option(
    "--log-file",
    is_flag=False,
    flag_value="",
    type=click.Path(dir_okay=False),
    help="Log to a file as JSON (default path: ~/.procbridge/host.log)",
)
@click.pass_context
def host_command(
    ctx: click.Context,
    capabilities_ref: str | None,
    port: int | None,
    bind_host: str | None,
    transport: str | None,
    log_level: str | None,
    log_file: str | None,
) -> None:
    """Serve host capabilities through a supervised command server.

    \b
    Example usage:
      procbridge host
      procbridge host --capabilities myapp.tools:table --port 5300
      procbridge host --transport stdio   # for stdio MCP clients

    \b
    Environment variables:
      PROCBRIDGE_PORT          - Command server port
      PROCBRIDGE_TRANSPORT     - sse or stdio
      PROCBRIDGE_CAPABILITIES  - Capability table (module:attr)
      PROCBRIDGE_LOG_LEVEL     - Log level
    """
    config = ctx.obj.get("config") if ctx.obj else None
    config = apply_overrides(
        config or load_config(),
        capabilities=capabilities_ref,
        port=port,
        host=bind_host,
        transport=transport.lower() if transport else None,
        log_level=log_level.lower() if log_level else None,
    )

    if log_file == "":
        ensure_dirs()
        log_file = str(get_log_file("host"))

    # Never on stdout: it belongs to the stdio transport
    configure_logging(
        config.log_level, log_file=log_file, json_output=log_file is not None, role="host"
    )

    try:
        capabilities = load_capability_table(config.capabilities)
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    logger.info(
        "Starting host",
        port=config.port,
        transport=config.transport,
        capabilities=len(capabilities),
    )

    try:
        state = asyncio.run(run_host(config, capabilities))
    except KeyboardInterrupt:
        logger.info("Host interrupted by user")
        sys.exit(0)
    except BridgeError as e:
        logger.error("Host failed", error=e.message)
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    if state.state is ServerState.FAILED:
        click.echo(f"Error: {state.reason}", err=True)
        sys.exit(1)
