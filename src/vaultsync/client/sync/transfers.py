"""Upload and download strategies.

This module provides:
- TransferEngine: picks single-request or resumable upload by size and
  performs conditional downloads
- UploadResult: id and revision of the uploaded object
- NOT_MODIFIED: returned by download when the remote revision is unchanged
- mime_type_for: MIME type from a file extension

Files up to SIMPLE_UPLOAD_LIMIT go in one request carrying metadata and
content. Larger files open a resumable session and send CHUNK_SIZE pieces
with Content-Range headers until the server answers with final metadata.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from vaultsync.client.api import NotFoundError, TransferError

if TYPE_CHECKING:
    from vaultsync.client.api import DriveClient, RemoteFile

logger = logging.getLogger(__name__)

SIMPLE_UPLOAD_LIMIT = 5 * 1024 * 1024  # 5 MiB
CHUNK_SIZE = 256 * 1024  # 256 KiB, the resumable protocol's granularity
MAX_STALLED_CHUNKS = 5

MIME_TYPES = {
    "md": "text/markdown",
    "txt": "text/plain",
    "json": "application/json",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "pdf": "application/pdf",
}
DEFAULT_MIME_TYPE = "application/octet-stream"

# on_progress(bytes_sent, total_bytes)
TransferProgress = Callable[[int, int], None]


def mime_type_for(path: str) -> str:
    extension = PurePosixPath(path).suffix.lstrip(".").lower()
    return MIME_TYPES.get(extension, DEFAULT_MIME_TYPE)


class NotModified:
    """Download result when the remote revision matches the local one."""

    def __repr__(self) -> str:
        return "NOT_MODIFIED"


NOT_MODIFIED = NotModified()


@dataclass
class UploadResult:
    """Result of a file upload."""

    remote_id: str
    revision_tag: str | None
    remote_file: RemoteFile


class TransferEngine:
    """Moves file content between the vault and the remote API."""

    def __init__(
        self,
        client: DriveClient,
        simple_upload_limit: int = SIMPLE_UPLOAD_LIMIT,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self._client = client
        self._simple_upload_limit = simple_upload_limit
        self._chunk_size = chunk_size

    def upload(
        self,
        name: str,
        content: bytes,
        mime_type: str,
        parent_id: str,
        existing_remote_id: str | None = None,
        on_progress: TransferProgress | None = None,
    ) -> UploadResult:
        """Upload content, updating existing_remote_id in place when given.

        If the object to update no longer exists, a new one is created under
        parent_id instead.

        Raises:
            TransferError: If the upload fails.
        """
        if existing_remote_id is not None:
            try:
                remote = self._send(name, content, mime_type, parent_id, existing_remote_id, on_progress)
            except NotFoundError:
                logger.warning(f"Remote object {existing_remote_id} for {name} is gone, creating a new one")
                remote = self._send(name, content, mime_type, parent_id, None, on_progress)
        else:
            remote = self._send(name, content, mime_type, parent_id, None, on_progress)

        logger.debug(f"Uploaded {name} ({len(content)} bytes) as {remote.id}")
        return UploadResult(remote_id=remote.id, revision_tag=remote.revision_tag, remote_file=remote)

    def _send(
        self,
        name: str,
        content: bytes,
        mime_type: str,
        parent_id: str,
        file_id: str | None,
        on_progress: TransferProgress | None,
    ) -> RemoteFile:
        if len(content) <= self._simple_upload_limit:
            if file_id is not None:
                remote = self._client.update_media(file_id, content, mime_type)
            else:
                remote = self._client.upload_multipart(name, content, mime_type, parent_id)
            if on_progress:
                on_progress(len(content), len(content))
            return remote
        return self._send_resumable(name, content, mime_type, parent_id, file_id, on_progress)

    def _send_resumable(
        self,
        name: str,
        content: bytes,
        mime_type: str,
        parent_id: str,
        file_id: str | None,
        on_progress: TransferProgress | None,
    ) -> RemoteFile:
        total = len(content)
        session_uri = self._client.start_resumable_upload(
            name, mime_type, total, parent_id=parent_id, file_id=file_id
        )
        logger.debug(f"Resumable upload of {name} ({total} bytes) started")

        offset = 0
        stalled = 0
        while True:
            chunk = content[offset:offset + self._chunk_size]
            result = self._client.upload_chunk(session_uri, chunk, offset, total)

            if result.complete:
                if result.file is None:
                    raise TransferError(f"Upload of {name} finished without file metadata")
                if on_progress:
                    on_progress(total, total)
                return result.file

            if result.next_offset >= total:
                raise TransferError(f"Upload of {name} sent every byte but was not finalized")
            if result.next_offset < 0 or result.next_offset > offset + len(chunk):
                raise TransferError(f"Upload of {name} got invalid resume offset {result.next_offset}")

            stalled = stalled + 1 if result.next_offset <= offset else 0
            if stalled >= MAX_STALLED_CHUNKS:
                raise TransferError(f"Upload of {name} made no progress at offset {offset}")

            offset = result.next_offset
            if on_progress:
                on_progress(offset, total)

    def download(
        self, remote_id: str, if_revision_differs: str | None = None
    ) -> bytes | NotModified:
        """Fetch content, or NOT_MODIFIED if the remote still has that revision.

        Raises:
            TransferError: If the download fails.
        """
        content = self._client.download(remote_id, if_none_match=if_revision_differs)
        if content is None:
            logger.debug(f"Remote object {remote_id} not modified")
            return NOT_MODIFIED
        return content
