"""Shared helpers for vaultsync tests."""

from __future__ import annotations

import os
from pathlib import Path

from vaultsync.client.sync.types import now_ms


class FakeClock:
    """Controllable epoch-ms clock, starting at the real time."""

    def __init__(self, start: int | None = None) -> None:
        self.now = now_ms() if start is None else start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


MINUTE = 60 * 1000
HOUR = 60 * MINUTE
DAY = 24 * HOUR


def write_file(root: Path, rel: str, content: bytes | str, mtime_ms: int | None = None) -> Path:
    """Write a vault file, optionally pinning its modification time."""
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, str):
        content = content.encode()
    path.write_bytes(content)
    if mtime_ms is not None:
        os.utime(path, ns=(mtime_ms * 1_000_000, mtime_ms * 1_000_000))
    return path


def touch_later(path: Path, delta_ms: int = 5000) -> None:
    """Push a file's mtime into the future so it reads as modified."""
    mtime_ns = path.stat().st_mtime_ns + delta_ms * 1_000_000
    os.utime(path, ns=(mtime_ns, mtime_ns))
