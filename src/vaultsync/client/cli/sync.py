"""Sync commands for the vaultsync CLI.

Commands:
- sync: Run one synchronization pass
- status: Show index, cursor and conflict state
- reset-tracking: Re-enable change tracking after repeated failures
- resolve: Release a manually resolved conflict
- rebuild-index: Re-baseline the index on the current vault contents
- cleanup-backups: Delete old conflict backups
"""

from __future__ import annotations

import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import click

from vaultsync.client.cli.config import (
    get_remote_config,
    get_state_db,
    get_sync_config,
    load_config,
)

if TYPE_CHECKING:
    from vaultsync.client.auth import AccessTokenProvider
    from vaultsync.client.state import StateStore
    from vaultsync.client.sync.engine import SyncOrchestrator
    from vaultsync.client.sync.types import SyncResult

ACCESS_TOKEN_ENV = "VAULTSYNC_ACCESS_TOKEN"

ARROWS = {"upload": "↑", "download": "↓", "delete": "✗", "conflict": "!"}


def _token_provider(store: StateStore, config: dict) -> AccessTokenProvider:
    """Static token from the environment, or the stored OAuth tokens."""
    from vaultsync.client.auth import StaticTokenProvider, TokenManager

    token = os.environ.get(ACCESS_TOKEN_ENV)
    if token:
        return StaticTokenProvider(token)
    remote = get_remote_config(config)
    return TokenManager(
        store,
        client_id=remote.client_id,
        client_secret=remote.client_secret,
        token_uri=remote.token_uri,
    )


@contextmanager
def open_orchestrator() -> Iterator[SyncOrchestrator]:
    """Assemble the orchestrator from the saved configuration.

    Exits with an error message when the vault is not configured.
    """
    from vaultsync.client.api import DriveClient
    from vaultsync.client.state import SqliteStateStore
    from vaultsync.client.sync.engine import SyncOrchestrator
    from vaultsync.client.vault import LocalVault

    config = load_config()
    if not config.get("vault_path"):
        click.echo(
            "Error: No vault configured. Run 'vaultsync config vault_path PATH' first.",
            err=True,
        )
        sys.exit(1)

    try:
        sync_config = get_sync_config(config)
    except ValueError as e:
        click.echo(f"Error: Invalid configuration: {e}", err=True)
        sys.exit(1)

    if not sync_config.vault_path.is_dir():
        click.echo(f"Error: Vault folder does not exist: {sync_config.vault_path}", err=True)
        sys.exit(1)

    db_path = get_state_db()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = SqliteStateStore(db_path)
    client = DriveClient(
        get_remote_config(config),
        _token_provider(store, config),
        max_retries=sync_config.max_retries,
        initial_backoff=sync_config.initial_backoff,
        max_backoff=sync_config.max_backoff,
    )
    try:
        yield SyncOrchestrator(client, LocalVault(sync_config.vault_path), store, sync_config)
    finally:
        client.close()
        store.close()


def _format_time(epoch_ms: int | None) -> str:
    if not epoch_ms:
        return "never"
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


@click.command()
@click.option("--dry-run", is_flag=True, help="Show what would change without changing anything.")
@click.option("--full", "force_full", is_flag=True, help="List the whole remote folder.")
@click.option("--no-progress", is_flag=True, help="Do not print each transferred file.")
def sync(dry_run: bool, force_full: bool, no_progress: bool) -> None:
    """Synchronize the vault with the remote folder.

    Uploads local changes, downloads remote changes and applies deletions on
    both sides. Exits with status 1 if the pass fails or any file fails.
    """
    from vaultsync.client.sync.types import SyncInProgressError, SyncOptions

    def on_progress(operation: str, current: int, total: int, item: str | None) -> None:
        if no_progress or item is None or operation not in ARROWS:
            return
        click.echo(f"  {ARROWS[operation]} {item} ({current}/{total})")

    with open_orchestrator() as orchestrator:
        click.echo(f"Syncing {orchestrator.vault.root}" + (" (dry run)" if dry_run else "") + "...")
        try:
            result = orchestrator.perform_sync(
                SyncOptions(dry_run=dry_run, force_full_sync=force_full),
                on_progress=on_progress,
            )
        except SyncInProgressError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    if result.error:
        click.echo(click.style(f"Sync failed: {result.error}", fg="red"), err=True)
        sys.exit(1)

    if dry_run:
        _print_dry_run(result)
        return

    if result.conflicts:
        click.echo(click.style("\nUnresolved conflicts:", fg="yellow"))
        for path in result.conflicts:
            click.echo(f"  ! {path}")
        click.echo("Run 'vaultsync resolve PATH' once you have merged a file.")

    if result.error_messages:
        click.echo(click.style("\nErrors:", fg="red"))
        for message in result.error_messages:
            click.echo(f"  ✗ {message}")

    stats = result.stats
    total = stats.uploaded + stats.downloaded + stats.deleted + stats.conflicts_resolved
    if total == 0 and not result.conflicts and not stats.errors:
        click.echo("Everything is up to date.")
    else:
        click.echo(
            f"\nSync complete: {stats.uploaded} uploaded, "
            f"{stats.downloaded} downloaded, "
            f"{stats.deleted} deleted, "
            f"{stats.conflicts_resolved} conflicts resolved"
        )

    if not result.success:
        sys.exit(1)


def _print_dry_run(result: SyncResult) -> None:
    diff = result.diff
    if diff is None or diff.is_empty:
        click.echo("Everything is up to date.")
        return

    sections = [
        ("Upload (new)", [s.path for s in diff.new_local]),
        ("Upload (changed)", diff.changed_local),
        ("Download (new)", [s.path for s in diff.new_remote]),
        ("Download (changed)", diff.changed_remote),
        ("Delete remotely", diff.deleted_local),
        ("Delete locally", diff.deleted_remote),
    ]
    click.echo("Dry run, nothing was changed.")
    for title, paths in sections:
        if paths:
            click.echo(f"\n{title}:")
            for path in paths:
                click.echo(f"  {path}")
    if result.conflict_previews:
        click.echo("\nConflicts:")
        for preview in result.conflict_previews:
            backups = ", ".join(preview.backup_paths)
            click.echo(f"  ! {preview.path}: {preview.winner} wins, backup {backups}")


@click.command()
def status() -> None:
    """Show the sync status of the vault."""
    with open_orchestrator() as orchestrator:
        info = orchestrator.status()

    click.echo(f"State:             {info.state.value}")
    click.echo(f"Last sync:         {_format_time(info.last_sync_time)}")
    tracking = "disabled" if info.change_tracking_disabled else info.tracker_state.value
    click.echo(f"Change tracking:   {tracking}")
    if info.consecutive_tracker_failures:
        click.echo(f"Tracker failures:  {info.consecutive_tracker_failures}")
    click.echo(f"Synced files:      {info.index.synced_files}")
    if info.index.directories:
        click.echo(f"Synced folders:    {info.index.directories}")

    if info.unresolved_conflicts:
        click.echo(click.style("\nUnresolved conflicts:", fg="yellow"))
        for path in info.unresolved_conflicts:
            click.echo(f"  ! {path}")


@click.command(name="reset-tracking")
def reset_tracking() -> None:
    """Re-enable remote change tracking.

    The next sync bootstraps a fresh cursor and lists the remote folder.
    """
    from vaultsync.client.sync.types import SyncInProgressError

    with open_orchestrator() as orchestrator:
        try:
            orchestrator.reset_change_tracking()
        except SyncInProgressError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    click.echo("Change tracking reset.")


@click.command()
@click.argument("path")
def resolve(path: str) -> None:
    """Mark a manual conflict on PATH as resolved.

    PATH is relative to the vault. The local file is uploaded on the next
    sync; the conflict backups are left for you to delete.
    """
    from vaultsync.client.auth import AuthError
    from vaultsync.client.sync.types import SyncInProgressError

    with open_orchestrator() as orchestrator:
        try:
            cleared = orchestrator.clear_conflict(path)
        except (SyncInProgressError, AuthError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    if not cleared:
        click.echo(f"Error: No unresolved conflict on {path}.", err=True)
        sys.exit(1)
    click.echo(f"Conflict on {path} resolved; the local version will be uploaded.")


@click.command(name="rebuild-index")
@click.confirmation_option(prompt="Treat the current vault contents as synced?")
def rebuild_index() -> None:
    """Re-baseline the index on the current vault contents."""
    with open_orchestrator() as orchestrator:
        kept = orchestrator.rebuild_index()
    click.echo(f"Index rebuilt with {kept} entries.")


@click.command(name="cleanup-backups")
@click.option("--days", default=30, show_default=True, help="Delete backups older than this.")
def cleanup_backups(days: int) -> None:
    """Delete conflict backups older than --days."""
    with open_orchestrator() as orchestrator:
        cleaned = orchestrator.resolver.cleanup_old_backups(days * 24 * 60 * 60 * 1000)
    click.echo(f"Deleted {cleaned} old conflict backups.")
