"""Tools commands - talk to a running command server over HTTP+SSE."""

import asyncio
import json
import sys
from typing import Any

import click

from ..client import ToolClient, ToolClientError
from ..formatters import console, print_notification, print_tool_result, print_tools_table


def server_url(ctx: click.Context, url: str | None) -> str:
    """Explicit --url, else the configured host and port."""
    if url:
        return url
    config = ctx.obj["config"]
    return f"http://{config.host}:{config.port}"


def parse_tool_arguments(raw: str | None) -> dict[str, Any]:
    """Turn the --args JSON into MCP tool arguments.

    An object is passed as-is; anything else is wrapped as ``{"args": ...}``.
    """
    if raw is None:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Invalid JSON: {e}", param_hint="--args") from e
    if isinstance(value, dict):
        return value
    return {"args": value}


url_option = click.option(
    "--url",
    envvar="PROCBRIDGE_URL",
    help="Command server URL (default: http://<host>:<port> from config)",
)
timeout_option = click.option(
    "--timeout", type=float, default=30.0, show_default=True, help="Timeout in seconds"
)


@click.group("tools")
def tools() -> None:
    """Call host capabilities through a running command server."""
    pass


@tools.command("list")
@url_option
@timeout_option
@click.pass_context
def tools_list(ctx: click.Context, url: str | None, timeout: float) -> None:
    """List available tools."""

    async def _list() -> list[dict[str, Any]]:
        async with ToolClient(server_url(ctx, url), timeout=timeout) as client:
            await client.initialize()
            return await client.list_tools()

    try:
        tools_result = asyncio.run(_list())
    except ToolClientError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    if ctx.obj.get("json_output"):
        click.echo(json.dumps(tools_result, indent=2))
    else:
        print_tools_table(tools_result)


@tools.command("call")
@click.argument("name")
@click.option("--args", "raw_args", help='Arguments as JSON (e.g. \'["hi"]\' or \'{"a": 1}\')')
@url_option
@timeout_option
@click.pass_context
def tools_call(
    ctx: click.Context, name: str, raw_args: str | None, url: str | None, timeout: float
) -> None:
    """Call a tool and print its result.

    Streamed output is printed to stderr as it arrives.
    """
    arguments = parse_tool_arguments(raw_args)
    json_output = ctx.obj.get("json_output")

    async def _call() -> dict[str, Any]:
        on_notification = None if json_output else print_notification
        async with ToolClient(
            server_url(ctx, url), timeout=timeout, on_notification=on_notification
        ) as client:
            await client.initialize()
            return await client.call_tool(name, arguments)

    try:
        result = asyncio.run(_call())
    except ToolClientError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    if json_output:
        click.echo(json.dumps(result, indent=2))
    else:
        print_tool_result(result)

    if result.get("isError"):
        sys.exit(1)


@click.command("status")
@url_option
@timeout_option
@click.pass_context
def status_command(ctx: click.Context, url: str | None, timeout: float) -> None:
    """Show health of a running command server."""

    async def _health() -> dict[str, Any]:
        async with ToolClient(server_url(ctx, url), timeout=timeout) as client:
            return await client.health()

    try:
        health = asyncio.run(_health())
    except ToolClientError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    if ctx.obj.get("json_output"):
        click.echo(json.dumps(health, indent=2))
        return

    style = "green" if health.get("status") == "ok" else "yellow"
    console.print(f"Status: [{style}]{health.get('status', 'unknown')}[/{style}]")
    for key in ("port", "transport", "host_connected", "capabilities", "uptime_seconds"):
        console.print(f"  {key}: {health.get(key)}", highlight=False)
