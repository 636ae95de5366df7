"""Config commands for the librarysync CLI.

Commands:
- config show: Print the current configuration
- config set: Change one setting
"""

from __future__ import annotations

import sys

import click

from librarysync.client.cli.config import (
    CONFIG_KEYS,
    SECRET_KEYS,
    get_config_file,
    load_config,
    parse_config_value,
    save_config,
)


@click.group()
def config() -> None:
    """Show or change the configuration."""


@config.command("show")
def show() -> None:
    """Print the current configuration."""
    current = load_config()
    click.echo(f"Config file: {get_config_file()}")
    if not current:
        click.echo("No settings configured.")
        return
    for key in sorted(current):
        value = current[key]
        if key in SECRET_KEYS and value:
            value = "********"
        click.echo(f"  {key} = {value}")


@config.command("set")
@click.argument("key", type=click.Choice(sorted(CONFIG_KEYS)))
@click.argument("value")
def set_value(key: str, value: str) -> None:
    """Set KEY to VALUE.

    Lists (ignore_patterns) are comma-separated.
    """
    try:
        parsed = parse_config_value(key, value)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    current = load_config()
    current[key] = parsed
    save_config(current)
    shown = "********" if key in SECRET_KEYS else parsed
    click.echo(f"Set {key} = {shown}")
