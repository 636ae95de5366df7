"""Status command for the librarysync CLI.

Commands:
- status: Show server reachability and catalog size
"""

from __future__ import annotations

import sys

import click

from librarysync.client.cli.config import build_server_config, get_library_root, load_config


@click.command()
def status() -> None:
    """Show server reachability, catalog size and the library root."""
    from librarysync.client.api import APIError, HTTPClient

    config = load_config()
    try:
        server_config = build_server_config(config)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    root = get_library_root(config)
    click.echo(f"Server:       {server_config.server_url}")
    click.echo(f"Library root: {root if root else '(not configured)'}")

    with HTTPClient(server_config) as client:
        if not client.health_check():
            click.echo(click.style("Server unreachable", fg="red"))
            sys.exit(1)
        try:
            catalog = client.fetch_catalog()
        except APIError as e:
            click.echo(click.style(f"Cannot list files: {e}", fg="red"))
            sys.exit(1)

    files = sum(1 for record in catalog if not record.is_directory)
    click.echo(click.style("Server online", fg="green"))
    click.echo(f"Remote files: {files} ({len(catalog) - files} directories)")
