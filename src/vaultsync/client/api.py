"""HTTP client for the remote drive API.

This module provides:
- DriveClient: REST wrapper for listing, metadata, change feed, uploads,
  downloads, folder lookup and deletion
- RemoteFile: file metadata returned by the API
- FileChanged / FileRemoved: normalized change-feed events
- APIError and subclasses: typed HTTP failures

Every request goes through with_retry, so 429/5xx and network failures are
retried with exponential backoff before surfacing to callers.
"""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Union

import httpx

from vaultsync.client.auth import AuthError, BearerAuth
from vaultsync.client.sync.retry import (
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_RETRIES,
    with_retry,
)

if TYPE_CHECKING:
    from vaultsync.client.auth import AccessTokenProvider
    from vaultsync.core.config import RemoteConfig

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
FILE_FIELDS = "id,name,mimeType,size,modifiedTime,parents,md5Checksum,version,trashed"
LIST_PAGE_SIZE = 1000
CHANGES_PAGE_SIZE = 100


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AuthenticationError(APIError, AuthError):
    """The API rejected the bearer token."""


class NotFoundError(APIError):
    """Resource not found."""


class InvalidPageTokenError(APIError):
    """The change-feed cursor was rejected by the API."""


class TransferError(APIError):
    """A media upload or download failed."""


def parse_rfc3339(value: str | None) -> int:
    """Convert an RFC 3339 timestamp to epoch milliseconds (0 if missing)."""
    if not value:
        return 0
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def format_rfc3339(epoch_ms: int) -> str:
    """Format epoch milliseconds as an RFC 3339 UTC timestamp."""
    dt = datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _quote(value: str) -> str:
    """Escape a string literal for a files.list query."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def is_valid_name(name: str) -> bool:
    """Check that a remote name maps to exactly one vault path segment."""
    return bool(name) and name not in (".", "..") and "/" not in name and "\\" not in name


@dataclass
class RemoteFile:
    """File metadata from the API."""

    id: str
    name: str
    mime_type: str
    size: int
    modified_time: int  # epoch ms
    parents: list[str] = field(default_factory=list)
    md5_checksum: str | None = None
    version: str | None = None
    trashed: bool = False

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    @property
    def revision_tag(self) -> str | None:
        """Cheap change fingerprint: content checksum, else version number."""
        return self.md5_checksum or self.version

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteFile:
        """Create from API response dictionary."""
        version = data.get("version")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            mime_type=data.get("mimeType", "application/octet-stream"),
            size=int(data.get("size") or 0),
            modified_time=parse_rfc3339(data.get("modifiedTime")),
            parents=list(data.get("parents") or []),
            md5_checksum=data.get("md5Checksum"),
            version=str(version) if version is not None else None,
            trashed=bool(data.get("trashed", False)),
        )


@dataclass(frozen=True)
class FileChanged:
    """A file was created or modified remotely."""

    file_id: str
    file: RemoteFile


@dataclass(frozen=True)
class FileRemoved:
    """A file was removed or trashed remotely."""

    file_id: str


RemoteChange = Union[FileChanged, FileRemoved]


@dataclass
class ChangesPage:
    """One page of the change feed."""

    changes: list[RemoteChange]
    next_page_token: str | None
    new_start_page_token: str | None


@dataclass
class ChunkResult:
    """Outcome of one resumable-upload chunk."""

    complete: bool
    next_offset: int
    file: RemoteFile | None = None


_RANGE_RE = re.compile(r"bytes=(\d+)-(\d+)")


class DriveClient:
    """HTTP client for the remote drive API."""

    def __init__(
        self,
        config: RemoteConfig,
        token_provider: AccessTokenProvider,
        transport: httpx.BaseTransport | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
        max_backoff: float = DEFAULT_MAX_BACKOFF,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the drive client.

        Args:
            config: Remote endpoint configuration.
            token_provider: Supplies bearer tokens for every request.
            transport: Optional httpx transport (tests, proxies).
            max_retries: Retries for transient failures.
            initial_backoff: First retry delay in seconds.
            max_backoff: Retry delay cap in seconds.
            sleep: Sleep function used between retries.
        """
        self._config = config
        self._upload_url = config.upload_url
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=config.api_url,
            timeout=config.timeout,
            auth=BearerAuth(token_provider),
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> DriveClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _handle_response(
        self, response: httpx.Response, transfer: bool = False
    ) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code < 400:
            return response

        body = response.text
        message = f"HTTP {response.status_code}"
        try:
            error = response.json().get("error")
            if isinstance(error, dict) and error.get("message"):
                message = error["message"]
            elif isinstance(error, str):
                message = error
        except (ValueError, AttributeError):
            pass

        if response.status_code == 401:
            raise AuthenticationError(message, 401, body)
        if response.status_code == 404:
            raise NotFoundError(message, 404, body)
        if transfer:
            raise TransferError(message, response.status_code, body)
        raise APIError(message, response.status_code, body)

    def _request(
        self, method: str, url: str, transfer: bool = False, **kwargs: Any
    ) -> httpx.Response:
        def send() -> httpx.Response:
            return self._handle_response(
                self._client.request(method, url, **kwargs), transfer=transfer
            )

        return with_retry(
            send,
            max_retries=self._max_retries,
            initial_backoff=self._initial_backoff,
            max_backoff=self._max_backoff,
            sleep=self._sleep,
        )

    # === Listing ===

    def list_children(
        self, folder_id: str, modified_since: int | None = None
    ) -> list[RemoteFile]:
        """List non-trashed children of a folder.

        Args:
            folder_id: Parent folder id.
            modified_since: Only return files modified after this epoch-ms
                time. Folders are always returned so callers can traverse.

        Returns:
            All children across pages.
        """
        query = f"'{_quote(folder_id)}' in parents and trashed=false"
        if modified_since is not None:
            query += (
                f" and (modifiedTime > '{format_rfc3339(modified_since)}'"
                f" or mimeType = '{FOLDER_MIME_TYPE}')"
            )

        files: list[RemoteFile] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {
                "q": query,
                "fields": f"nextPageToken,files({FILE_FIELDS})",
                "pageSize": LIST_PAGE_SIZE,
            }
            if page_token:
                params["pageToken"] = page_token
            data = self._request("GET", "/files", params=params).json()
            files.extend(RemoteFile.from_dict(f) for f in data.get("files", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return files

    def list_tree(
        self, folder_id: str, modified_since: int | None = None
    ) -> list[tuple[str, RemoteFile]]:
        """Recursively list a folder.

        Returns:
            (relative path, file) pairs, folders included, parents before
            their children.
        """
        result: list[tuple[str, RemoteFile]] = []
        pending: list[tuple[str, str]] = [(folder_id, "")]
        while pending:
            current_id, prefix = pending.pop(0)
            for child in self.list_children(current_id, modified_since):
                if not is_valid_name(child.name):
                    logger.warning(f"Skipping remote item {child.id} with unusable name {child.name!r}")
                    continue
                path = f"{prefix}/{child.name}" if prefix else child.name
                result.append((path, child))
                if child.is_folder:
                    pending.append((child.id, path))
        logger.debug(f"Listed {len(result)} remote items under {folder_id}")
        return result

    def get_file_metadata(self, file_id: str) -> RemoteFile:
        """Get file metadata by id.

        Raises:
            NotFoundError: If the file does not exist.
        """
        response = self._request(
            "GET", f"/files/{file_id}", params={"fields": FILE_FIELDS}
        )
        return RemoteFile.from_dict(response.json())

    # === Folders ===

    def find_folder(self, name: str, parent_id: str | None = None) -> RemoteFile | None:
        """Find a non-trashed folder by name (under parent_id, or anywhere)."""
        query = (
            f"name = '{_quote(name)}' and mimeType = '{FOLDER_MIME_TYPE}'"
            " and trashed=false"
        )
        if parent_id:
            query += f" and '{_quote(parent_id)}' in parents"
        data = self._request(
            "GET",
            "/files",
            params={"q": query, "fields": f"files({FILE_FIELDS})", "pageSize": 10},
        ).json()
        files = data.get("files", [])
        return RemoteFile.from_dict(files[0]) if files else None

    def create_folder(self, name: str, parent_id: str | None = None) -> RemoteFile:
        metadata: dict[str, Any] = {"name": name, "mimeType": FOLDER_MIME_TYPE}
        if parent_id:
            metadata["parents"] = [parent_id]
        response = self._request(
            "POST", "/files", params={"fields": FILE_FIELDS}, json=metadata
        )
        folder = RemoteFile.from_dict(response.json())
        logger.info(f"Created remote folder {name} ({folder.id})")
        return folder

    def create_or_find_folder(self, name: str, parent_id: str | None = None) -> RemoteFile:
        """Return the folder named name under parent_id, creating it if absent."""
        existing = self.find_folder(name, parent_id)
        if existing is not None:
            return existing
        return self.create_folder(name, parent_id)

    def delete_file(self, file_id: str) -> None:
        """Permanently delete a file or folder.

        Raises:
            NotFoundError: If the file is already gone.
        """
        self._request("DELETE", f"/files/{file_id}")

    # === Change feed ===

    def get_start_page_token(self) -> str:
        """Get a change-feed cursor positioned at "now"."""
        data = self._request("GET", "/changes/startPageToken").json()
        return str(data["startPageToken"])

    def list_changes(
        self, page_token: str, page_size: int = CHANGES_PAGE_SIZE
    ) -> ChangesPage:
        """Fetch one page of the change feed.

        Raises:
            InvalidPageTokenError: If the API rejects page_token.
        """
        params = {
            "pageToken": page_token,
            "pageSize": page_size,
            "includeRemoved": "true",
            "spaces": "drive",
            "fields": (
                "nextPageToken,newStartPageToken,"
                f"changes(fileId,removed,time,file({FILE_FIELDS}))"
            ),
        }
        try:
            data = self._request("GET", "/changes", params=params).json()
        except APIError as e:
            if e.status_code in (400, 410):
                raise InvalidPageTokenError(str(e), e.status_code, e.body) from e
            raise

        changes: list[RemoteChange] = []
        for raw in data.get("changes", []):
            file_id = raw.get("fileId") or (raw.get("file") or {}).get("id")
            if not file_id:
                continue
            file_data = raw.get("file")
            if raw.get("removed") or not file_data or file_data.get("trashed"):
                changes.append(FileRemoved(file_id=file_id))
            else:
                changes.append(FileChanged(file_id=file_id, file=RemoteFile.from_dict(file_data)))

        return ChangesPage(
            changes=changes,
            next_page_token=data.get("nextPageToken"),
            new_start_page_token=data.get("newStartPageToken"),
        )

    # === Media transfers ===

    def upload_multipart(
        self, name: str, content: bytes, mime_type: str, parent_id: str
    ) -> RemoteFile:
        """Create a file with metadata and content in one request."""
        boundary = f"vaultsync-{uuid.uuid4().hex}"
        metadata = json.dumps({"name": name, "parents": [parent_id]})
        body = b"".join([
            f"--{boundary}\r\n".encode(),
            b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
            metadata.encode(),
            f"\r\n--{boundary}\r\n".encode(),
            f"Content-Type: {mime_type}\r\n\r\n".encode(),
            content,
            f"\r\n--{boundary}--".encode(),
        ])
        response = self._request(
            "POST",
            f"{self._upload_url}/files",
            transfer=True,
            params={"uploadType": "multipart", "fields": FILE_FIELDS},
            content=body,
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
        )
        return RemoteFile.from_dict(response.json())

    def update_media(self, file_id: str, content: bytes, mime_type: str) -> RemoteFile:
        """Replace the content of an existing file in one request."""
        response = self._request(
            "PATCH",
            f"{self._upload_url}/files/{file_id}",
            transfer=True,
            params={"uploadType": "media", "fields": FILE_FIELDS},
            content=content,
            headers={"Content-Type": mime_type},
        )
        return RemoteFile.from_dict(response.json())

    def start_resumable_upload(
        self,
        name: str,
        mime_type: str,
        size: int,
        parent_id: str | None = None,
        file_id: str | None = None,
    ) -> str:
        """Open a resumable upload session.

        Creates a new file under parent_id, or updates file_id in place.

        Returns:
            The session URI chunks are sent to.
        """
        headers = {
            "X-Upload-Content-Type": mime_type,
            "X-Upload-Content-Length": str(size),
        }
        params = {"uploadType": "resumable", "fields": FILE_FIELDS}
        if file_id:
            response = self._request(
                "PATCH",
                f"{self._upload_url}/files/{file_id}",
                transfer=True,
                params=params,
                json={},
                headers=headers,
            )
        else:
            metadata: dict[str, Any] = {"name": name}
            if parent_id:
                metadata["parents"] = [parent_id]
            response = self._request(
                "POST",
                f"{self._upload_url}/files",
                transfer=True,
                params=params,
                json=metadata,
                headers=headers,
            )

        session_uri = response.headers.get("Location")
        if not session_uri:
            raise TransferError(
                "Resumable upload session has no Location header",
                response.status_code,
                response.text,
            )
        return session_uri

    def upload_chunk(
        self, session_uri: str, chunk: bytes, offset: int, total: int
    ) -> ChunkResult:
        """Send one chunk of a resumable upload.

        A 308 response means the server wants more bytes; its Range header,
        when present, says how much it has persisted.
        """
        end = offset + len(chunk) - 1
        response = self._request(
            "PUT",
            session_uri,
            transfer=True,
            content=chunk,
            headers={
                "Content-Length": str(len(chunk)),
                "Content-Range": f"bytes {offset}-{end}/{total}",
            },
        )

        if response.status_code == 308:
            match = _RANGE_RE.search(response.headers.get("Range", ""))
            next_offset = int(match.group(2)) + 1 if match else offset + len(chunk)
            return ChunkResult(complete=False, next_offset=next_offset)

        return ChunkResult(
            complete=True,
            next_offset=total,
            file=RemoteFile.from_dict(response.json()),
        )

    def download(self, file_id: str, if_none_match: str | None = None) -> bytes | None:
        """Download file content.

        Args:
            file_id: File to download.
            if_none_match: Revision tag already held locally.

        Returns:
            The content, or None when the server answers 304 Not Modified.
        """
        headers = {"If-None-Match": if_none_match} if if_none_match else {}
        response = self._request(
            "GET",
            f"/files/{file_id}",
            transfer=True,
            params={"alt": "media"},
            headers=headers,
        )
        if response.status_code == 304:
            return None
        return response.content
