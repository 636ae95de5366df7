"""Command-line interface for librarysync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- config show / config set: Manage ~/.librarysync/config.json
- sync: Synchronize the library root with the server
- status: Show server reachability and catalog size
"""

from __future__ import annotations

import click

from librarysync.client.cli.config import (
    get_config_dir,
    get_config_file,
    get_library_root,
    load_config,
    save_config,
)
from librarysync.client.cli.settings import config
from librarysync.client.cli.status import status
from librarysync.client.cli.sync import sync


@click.group()
@click.version_option(package_name="librarysync")
def cli() -> None:
    """LibrarySync - two-way sync of a document library with a server."""


cli.add_command(config)
cli.add_command(sync)
cli.add_command(status)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "get_library_root",
    "load_config",
    "save_config",
]
