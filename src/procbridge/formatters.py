"""CLI output formatting helpers.

All formatters work with dict responses from the command server.
"""

from typing import Any

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

console = Console()
err_console = Console(stderr=True)


def print_config_sources(data: dict[str, Any], sources: dict[str, str]) -> None:
    """Print config values with where each one came from."""
    width = max((len(key) for key in data), default=0)
    for key, value in data.items():
        click.echo(f"{key.ljust(width)}  {value}  ({sources.get(key, 'default')})")


def print_tools_table(tools: list[dict[str, Any]]) -> None:
    """Print tools list as a table.

    Args:
        tools: Tool dicts from tools/list
    """
    if not tools:
        console.print("[dim]No tools available[/dim]")
        return

    table = Table(title=f"Tools ({len(tools)})")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Description")
    for tool in tools:
        desc = tool.get("description", "")
        if len(desc) > 60:
            desc = desc[:60] + "..."
        table.add_row(tool.get("name", "?"), desc)
    console.print(table)


def tool_result_text(result: dict[str, Any]) -> str:
    """Join the text content items of a tools/call result."""
    return "\n".join(
        item.get("text", "") for item in result.get("content", []) if item.get("type") == "text"
    )


def print_tool_result(result: dict[str, Any]) -> None:
    """Print a tools/call result, errors in red on stderr."""
    text = tool_result_text(result)
    if result.get("isError"):
        err_console.print(f"[red]{escape(text)}[/red]", highlight=False)
    else:
        click.echo(text)


def print_notification(notification: dict[str, Any]) -> None:
    """Print streamed tool output from a notifications/message notification."""
    data = notification.get("params", {}).get("data", {})
    if isinstance(data, dict) and "message" in data:
        tool = escape(str(data.get("tool", "")))
        err_console.print(f"[dim]{tool}>[/dim] {escape(str(data['message']))}", highlight=False)
