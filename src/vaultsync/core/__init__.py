"""Core module - Shared configuration and types."""

from vaultsync.core.config import RemoteConfig, SyncConfig
from vaultsync.core.types import ConflictPolicy, SyncState

__all__ = [
    # Config
    "RemoteConfig",
    "SyncConfig",
    # Types
    "ConflictPolicy",
    "SyncState",
]
