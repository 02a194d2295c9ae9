"""Configuration utilities for the vaultsync CLI.

This module provides shared configuration functions used across CLI commands
and the ``config`` command that edits them.

Commands:
- config: Set one configuration value
"""

from __future__ import annotations

import json
import os
import sys
from dataclasses import fields
from pathlib import Path
from typing import Any

import click

from vaultsync.core.config import RemoteConfig, SyncConfig

CONFIG_DIR_ENV = "VAULTSYNC_HOME"

LIST_KEYS = {"ignore_patterns", "allowed_extensions"}
BOOL_KEYS = {"enable_extension_filtering", "allow_folders"}
INT_KEYS = {"max_concurrent_transfers", "max_retries", "chunk_size", "simple_upload_limit"}
FLOAT_KEYS = {"initial_backoff", "max_backoff", "timeout"}

SYNC_KEYS = {f.name for f in fields(SyncConfig)}
REMOTE_KEYS = {f.name for f in fields(RemoteConfig)}


def get_config_dir() -> Path:
    """Get the configuration directory for vaultsync.

    Returns:
        Path to ~/.vaultsync, or $VAULTSYNC_HOME when set.
    """
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".vaultsync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def get_state_db() -> Path:
    """Get the path to the state database."""
    return get_config_dir() / "state.db"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def parse_value(key: str, raw: str) -> Any:
    """Convert a command-line string to the type a config key expects.

    Raises:
        ValueError: If the value cannot be converted.
    """
    if key in LIST_KEYS:
        return [item.strip() for item in raw.split(",") if item.strip()]
    if key in BOOL_KEYS:
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"expected true or false, got {raw!r}")
    if key in INT_KEYS:
        return int(raw)
    if key in FLOAT_KEYS:
        return float(raw)
    if key == "remote_folder_id" and not raw:
        return None
    return raw


def get_sync_config(config: dict[str, Any]) -> SyncConfig:
    """Build the sync settings from a loaded config.

    Raises:
        ValueError: If vault_path is missing or a value is invalid.
    """
    return SyncConfig.from_dict(config)


def get_remote_config(config: dict[str, Any]) -> RemoteConfig:
    return RemoteConfig.from_dict(config.get("remote", {}))


@click.command(name="config")
@click.argument("key")
@click.argument("value")
def config_cmd(key: str, value: str) -> None:
    """Set a configuration value.

    Sync settings (vault_path, remote_folder_name, ignore_patterns, ...) and
    remote settings (client_id, client_secret, api_url, ...) are accepted.
    List values are comma-separated.
    """
    if key not in SYNC_KEYS and key not in REMOTE_KEYS:
        click.echo(f"Error: Unknown configuration key '{key}'.", err=True)
        sys.exit(1)

    try:
        parsed = parse_value(key, value)
    except ValueError as e:
        click.echo(f"Error: Invalid value for {key}: {e}", err=True)
        sys.exit(1)

    config = load_config()
    if key in SYNC_KEYS:
        if key == "vault_path":
            parsed = str(Path(parsed).expanduser().resolve())
        config[key] = parsed
        if "vault_path" in config:
            try:
                get_sync_config(config)
            except ValueError as e:
                click.echo(f"Error: {e}", err=True)
                sys.exit(1)
    else:
        remote = dict(config.get("remote", {}))
        remote[key] = parsed
        config["remote"] = remote

    save_config(config)
    click.echo(f"Set {key} = {parsed}")
