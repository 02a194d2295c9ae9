"""Synchronization core.

Architecture:
    SyncOrchestrator → (ChangeTracker | full listing) → compare()
    → ConflictResolver → TransferEngine → LocalIndex updates

Components:
- **LocalIndex** (index): persisted reconciliation ledger, path -> last synced state
- **compare** (comparator): classifies local/remote/index differences
- **ChangeTracker** (changes): cursor-based remote change polling with bootstrap
- **TransferEngine** (transfers): simple and resumable uploads, conditional downloads
- **ConflictResolver** (conflict): last-writer-wins or manual resolution with backups
- **SyncOrchestrator** (engine): sequences one pass, bounded-concurrency transfers

Import the components from their modules; this package only re-exports the
leaf helpers so that importing it never pulls in the HTTP client.
"""

from vaultsync.client.sync.ignore import (
    DEFAULT_IGNORE_PATTERNS,
    IgnorePatterns,
    matches_ignore,
    should_sync_file,
)
from vaultsync.client.sync.retry import is_retryable, with_retry
from vaultsync.client.sync.types import (
    ChangeTrackingUnavailable,
    ConflictResolutionError,
    DiffResult,
    FileSnapshot,
    IndexCorruptionError,
    IndexEntry,
    SyncError,
    SyncInProgressError,
    SyncOptions,
    SyncResult,
    SyncStats,
)

__all__ = [
    # Ignore
    "DEFAULT_IGNORE_PATTERNS",
    "IgnorePatterns",
    "matches_ignore",
    "should_sync_file",
    # Retry
    "is_retryable",
    "with_retry",
    # Types
    "ChangeTrackingUnavailable",
    "ConflictResolutionError",
    "DiffResult",
    "FileSnapshot",
    "IndexCorruptionError",
    "IndexEntry",
    "SyncError",
    "SyncInProgressError",
    "SyncOptions",
    "SyncResult",
    "SyncStats",
]
