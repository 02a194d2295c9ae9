"""Command-line interface for vaultsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- config: Set a configuration value
- import-token: Store OAuth tokens
- logout: Forget stored OAuth tokens
- sync: Synchronize the vault with the remote folder
- status: Show sync status
- reset-tracking: Re-enable remote change tracking
- resolve: Mark a manual conflict as resolved
- rebuild-index: Re-baseline the index on the vault contents
- cleanup-backups: Delete old conflict backups
"""

from __future__ import annotations

import logging

import click

from vaultsync.client.cli.auth import import_token, logout
from vaultsync.client.cli.config import (
    config_cmd,
    get_config_dir,
    get_config_file,
    get_state_db,
    load_config,
    save_config,
)
from vaultsync.client.cli.sync import (
    cleanup_backups,
    rebuild_index,
    reset_tracking,
    resolve,
    status,
    sync,
)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(package_name="vaultsync")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def cli(verbose: bool) -> None:
    """vaultsync - two-way sync between a local vault and a drive folder."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
    )
    # Request lines from httpx are noise even in verbose mode
    logging.getLogger("httpx").setLevel(logging.WARNING)


# Setup commands
cli.add_command(config_cmd)
cli.add_command(import_token)
cli.add_command(logout)

# Sync commands
cli.add_command(sync)
cli.add_command(status)
cli.add_command(reset_tracking)
cli.add_command(resolve)
cli.add_command(rebuild_index)
cli.add_command(cleanup_backups)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "cli",
    "main",
    "get_config_dir",
    "get_config_file",
    "get_state_db",
    "load_config",
    "save_config",
]
