"""CLI main entry point."""

import json
import sys

import click

from . import __version__
from .commands.host import host_command
from .commands.serve import serve_command
from .commands.tools import status_command, tools
from .config import PARSERS, get_config_path, load_config, save_config, unset_config


@click.group()
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.version_option(__version__, prog_name="procbridge")
@click.pass_context
def cli(ctx: click.Context, json_output: bool) -> None:
    """Run host capabilities behind a supervised MCP command server."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config()
    ctx.obj["json_output"] = json_output


cli.add_command(host_command)
cli.add_command(serve_command)
cli.add_command(tools)
cli.add_command(status_command)


@cli.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show current configuration and where each value came from."""
    from .formatters import print_config_sources

    loaded = ctx.obj["config"]
    data = loaded.to_dict()

    if ctx.obj["json_output"]:
        sources = {key: loaded.get_source(key) for key in data}
        click.echo(json.dumps({"config": data, "sources": sources}, indent=2))
        return

    click.echo("procbridge configuration")
    click.echo(f"File: {get_config_path()}\n")
    print_config_sources(data, {key: loaded.get_source(key) for key in data})


@config.command("set")
@click.argument("key", type=click.Choice(sorted(PARSERS)))
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """Save a value to the config file."""
    try:
        save_config(key, value)
    except ValueError as e:
        click.echo(f"Error: invalid value for {key}: {e}", err=True)
        sys.exit(1)
    click.echo(f"Set {key} = {value}")


@config.command("unset")
@click.argument("key", type=click.Choice(sorted(PARSERS)))
def config_unset(key: str) -> None:
    """Remove a value from the config file."""
    if unset_config(key):
        click.echo(f"Unset {key}")
    else:
        click.echo(f"{key} is not set in {get_config_path()}")


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
