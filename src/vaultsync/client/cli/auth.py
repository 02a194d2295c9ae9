"""Authentication commands for the vaultsync CLI.

Commands:
- import-token: Store OAuth tokens from a token endpoint response
- logout: Forget the stored OAuth tokens
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from vaultsync.client.cli.config import get_remote_config, get_state_db, load_config


@click.command(name="import-token")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def import_token(file: Path) -> None:
    """Import OAuth tokens from FILE.

    FILE is the JSON response of the OAuth token endpoint (access_token,
    refresh_token, expires_in). Set client_id and client_secret with
    'vaultsync config' so expired tokens can be refreshed.
    """
    from vaultsync.client.auth import TokenManager
    from vaultsync.client.state import SqliteStateStore

    try:
        data = json.loads(file.read_text())
    except (OSError, ValueError) as e:
        click.echo(f"Error: Cannot read token file: {e}", err=True)
        sys.exit(1)
    if not isinstance(data, dict):
        click.echo("Error: Token file must contain a JSON object.", err=True)
        sys.exit(1)

    remote = get_remote_config(load_config())
    db_path = get_state_db()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with SqliteStateStore(db_path) as store:
        manager = TokenManager(
            store,
            client_id=remote.client_id,
            client_secret=remote.client_secret,
            token_uri=remote.token_uri,
        )
        try:
            manager.import_tokens(data)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    click.echo("Tokens imported.")
    if not data.get("refresh_token"):
        click.echo("Warning: No refresh token; you will need to import again when it expires.")


@click.command()
def logout() -> None:
    """Forget the stored OAuth tokens."""
    from vaultsync.client.auth import TokenManager
    from vaultsync.client.state import SqliteStateStore

    db_path = get_state_db()
    if not db_path.exists():
        click.echo("Not logged in.")
        return
    with SqliteStateStore(db_path) as store:
        TokenManager(store).clear_tokens()
    click.echo("Tokens removed.")
