"""Sync command for the librarysync CLI.

Commands:
- sync: Synchronize the library root with the server
"""

from __future__ import annotations

import logging
import sys
import time
from pathlib import Path

import click

from librarysync.client.cli.config import build_server_config, build_sync_settings, load_config
from librarysync.client.sync.conflict import CallbackDecider, ConflictDecider, PolicyDecider
from librarysync.client.sync.types import (
    ConflictInfo,
    ConflictResolution,
    SyncErrorReport,
    SyncResult,
)
from librarysync.core.types import SyncState

CONFLICT_CHOICES = ["prompt", "keep-local", "keep-remote", "keep-both"]

_PROMPT_ANSWERS = {
    "l": ConflictResolution.KEEP_LOCAL,
    "r": ConflictResolution.KEEP_REMOTE,
    "b": ConflictResolution.KEEP_BOTH,
}


def setup_logging(level: int) -> None:
    """Send librarysync log records to stderr at the given level."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s", "%H:%M:%S"))

    package_logger = logging.getLogger("librarysync")
    for existing in package_logger.handlers[:]:
        package_logger.removeHandler(existing)
    package_logger.addHandler(handler)
    package_logger.setLevel(level)
    package_logger.propagate = False


def prompt_conflict(info: ConflictInfo) -> ConflictResolution:
    """Ask the user how to resolve a conflict."""
    click.echo(click.style(f"\nConflict: {info.relative_path}", fg="yellow"))
    click.echo(f"  local:  {info.local_modified}  {info.local_size} bytes")
    click.echo(f"  remote: {info.remote_modified}  {info.remote_size} bytes")
    answer = click.prompt(
        "Keep [l]ocal, [r]emote or [b]oth?",
        type=click.Choice(sorted(_PROMPT_ANSWERS)),
        default="b",
    )
    return _PROMPT_ANSWERS[answer]


def make_decider(on_conflict: str) -> ConflictDecider:
    """Build the conflict decider for an --on-conflict value."""
    if on_conflict == "prompt":
        return CallbackDecider(prompt_conflict)
    return PolicyDecider(ConflictResolution(on_conflict))


def display_summary(result: SyncResult) -> None:
    """Display sync results summary."""
    for path in result.uploaded:
        click.echo(f"  ↑ {path}")
    for path in result.downloaded:
        click.echo(f"  ↓ {path}")
    for path in result.created_dirs:
        click.echo(f"  + {path}/")

    if result.conflicts:
        click.echo(click.style("\nConflicts:", fg="yellow"))
        for path in result.conflicts:
            click.echo(f"  ! {path}")

    if result.errors:
        click.echo(click.style("\nErrors:", fg="red"))
        for error in result.errors:
            click.echo(f"  ✗ {error}")

    if result.transfers == 0 and not result.conflicts and not result.errors:
        click.echo("Everything is up to date.")
    else:
        click.echo(
            f"\nSync complete: {len(result.uploaded)} uploaded, "
            f"{len(result.downloaded)} downloaded, "
            f"{len(result.conflicts)} conflicts, "
            f"{len(result.errors)} errors"
        )


@click.command()
@click.option("--watch", "-w", is_flag=True, help="Keep syncing changes in both directions.")
@click.option(
    "--on-conflict",
    type=click.Choice(CONFLICT_CHOICES),
    default="prompt",
    show_default=True,
    help="How to resolve files changed on both sides.",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def sync(watch: bool, on_conflict: str, verbose: bool) -> None:
    """Synchronize the library root with the server.

    Runs one full reconciliation. Use --watch to keep the realtime channel
    and the file watcher running until interrupted.
    """
    from librarysync.client.api import APIError, HTTPClient
    from librarysync.client.sync.coordinator import SyncCoordinator

    if verbose:
        setup_logging(logging.DEBUG)
    else:
        setup_logging(logging.INFO if watch else logging.WARNING)

    config = load_config()
    try:
        server_config = build_server_config(config)
        settings = build_sync_settings(config)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not settings.is_configured:
        click.echo(
            "Error: No library root configured. "
            "Run 'librarysync config set library_root PATH' first.",
            err=True,
        )
        sys.exit(1)

    def on_error(report: SyncErrorReport) -> None:
        if watch:
            click.echo(click.style(f"  ✗ {report}", fg="red"), err=True)

    def on_state_change(state: SyncState) -> None:
        if watch:
            suffix = f" ({state.last_error})" if state.last_error else ""
            click.echo(f"[{state.phase.value}]{suffix}")

    with HTTPClient(server_config) as client:
        coordinator = SyncCoordinator(
            settings=settings,
            client=client,
            decider=make_decider(on_conflict),
            on_state_change=on_state_change,
            on_error=on_error,
        )
        root = coordinator.library_root or Path()
        click.echo(f"Syncing {root} with {server_config.server_url}...\n")

        if not watch:
            try:
                result = coordinator.sync_once()
            except APIError as e:
                click.echo(f"Error: {e}", err=True)
                sys.exit(1)
            display_summary(result)
            if result.has_errors:
                sys.exit(1)
            return

        if not coordinator.start():
            click.echo("Error: sync could not be started.", err=True)
            sys.exit(1)

        click.echo("Watching for changes... (Ctrl+C to stop)\n")
        try:
            while coordinator.is_running:
                time.sleep(1.0)
        except KeyboardInterrupt:
            click.echo("\nStopping...")
        finally:
            coordinator.stop()
