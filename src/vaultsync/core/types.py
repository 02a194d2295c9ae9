"""Shared types for vaultsync.

This module defines enums used across the client, the sync engine and the CLI.
"""

from __future__ import annotations

from enum import Enum


class SyncState(str, Enum):
    """State of the sync orchestrator.

    A pass moves IDLE -> RUNNING -> IDLE, or RUNNING -> FAILED when the
    pass aborts on a pass-level error (auth, remote listing).
    """

    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"


class ConflictPolicy(str, Enum):
    """How a path changed on both sides is resolved."""

    LAST_WRITER_WINS = "last-writer-wins"  # newer mtime wins, loser backed up
    MANUAL = "manual"  # back up both sides, leave for the user
