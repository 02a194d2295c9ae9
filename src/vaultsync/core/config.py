"""Shared configuration classes for vaultsync.

This module defines the remote endpoint settings and the sync settings used by
the client, the sync engine and the CLI.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from vaultsync.core.types import ConflictPolicy

DEFAULT_API_URL = "https://www.googleapis.com/drive/v3"
DEFAULT_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"

DEFAULT_ALLOWED_EXTENSIONS = ["md", "pdf"]
DEFAULT_CHUNK_SIZE = 256 * 1024
DEFAULT_SIMPLE_UPLOAD_LIMIT = 5 * 1024 * 1024


@dataclass
class RemoteConfig:
    """Configuration for talking to the remote drive API.

    Attributes:
        api_url: Base URL of the metadata API.
        upload_url: Base URL of the media upload API.
        token_uri: OAuth2 token endpoint used for refreshes.
        client_id: OAuth2 client id.
        client_secret: OAuth2 client secret.
        timeout: Request timeout in seconds.
    """

    api_url: str = DEFAULT_API_URL
    upload_url: str = DEFAULT_UPLOAD_URL
    token_uri: str = DEFAULT_TOKEN_URI
    client_id: str = ""
    client_secret: str = ""
    timeout: float = 30.0

    def __post_init__(self) -> None:
        """Normalize URLs."""
        self.api_url = self.api_url.rstrip("/")
        self.upload_url = self.upload_url.rstrip("/")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteConfig:
        """Create from a config dictionary, ignoring unknown keys."""
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if "timeout" in known:
            known["timeout"] = float(known["timeout"])
        return cls(**known)


@dataclass
class SyncConfig:
    """Settings for one vault / remote folder pair.

    Attributes:
        vault_path: Local root directory.
        remote_folder_id: Id of the remote sync folder, if already known.
        remote_folder_name: Name used to create or find the remote folder
            when no id is configured.
        ignore_patterns: Extra gitignore-style patterns (defaults always apply).
        enable_extension_filtering: Only sync files whose extension is allowed.
        allowed_extensions: Extensions (without dot) synced when filtering is on.
        allow_folders: Mirror directories themselves, including empty ones.
        conflict_policy: Resolution policy for paths changed on both sides.
        max_concurrent_transfers: Upper bound on parallel uploads/downloads.
        max_retries: Retries for 429/5xx/network failures per request.
        initial_backoff: First retry delay in seconds.
        max_backoff: Retry delay cap in seconds.
        chunk_size: Resumable upload chunk size in bytes.
        simple_upload_limit: Largest file sent in a single upload request.
    """

    vault_path: Path
    remote_folder_id: str | None = None
    remote_folder_name: str = "VaultSync"
    ignore_patterns: list[str] = field(default_factory=list)
    enable_extension_filtering: bool = False
    allowed_extensions: list[str] = field(
        default_factory=lambda: list(DEFAULT_ALLOWED_EXTENSIONS)
    )
    allow_folders: bool = False
    conflict_policy: ConflictPolicy = ConflictPolicy.LAST_WRITER_WINS
    max_concurrent_transfers: int = 4
    max_retries: int = 5
    initial_backoff: float = 1.0
    max_backoff: float = 60.0
    chunk_size: int = DEFAULT_CHUNK_SIZE
    simple_upload_limit: int = DEFAULT_SIMPLE_UPLOAD_LIMIT

    def __post_init__(self) -> None:
        """Normalize path, policy and extensions."""
        self.vault_path = Path(self.vault_path).expanduser()
        self.conflict_policy = ConflictPolicy(self.conflict_policy)
        self.allowed_extensions = [
            ext.strip().lower().lstrip(".")
            for ext in self.allowed_extensions
            if ext.strip()
        ]
        if self.max_concurrent_transfers < 1:
            raise ValueError("max_concurrent_transfers must be at least 1")
        if self.chunk_size <= 0 or self.chunk_size % DEFAULT_CHUNK_SIZE:
            raise ValueError(f"chunk_size must be a positive multiple of {DEFAULT_CHUNK_SIZE}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Create from a config dictionary, ignoring unknown keys."""
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if "vault_path" not in known:
            raise ValueError("vault_path is required")
        return cls(**known)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        data = asdict(self)
        data["vault_path"] = str(self.vault_path)
        data["conflict_policy"] = self.conflict_policy.value
        return data
