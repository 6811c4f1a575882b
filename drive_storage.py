"""
Drive v3 storage operations used by the backup workflow:
create a folder, then upload one local file into it.
"""

import io
import logging
import os
from dataclasses import dataclass
from typing import Optional

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload

from backup_errors import RemoteError, SourceReadError

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = 'application/vnd.google-apps.folder'
DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024  # 8MB chunks

# Failures that happen on the way to or inside Drive
_REMOTE_ERRORS = (HttpError, httplib2.HttpLib2Error, TransportError, RefreshError, OSError)


@dataclass(frozen=True)
class Container:
    """A Drive folder."""
    id: str
    name: str
    parent_id: Optional[str] = None
    mime_type: str = FOLDER_MIME_TYPE


@dataclass(frozen=True)
class UploadedObject:
    """A file stored in Drive."""
    id: str
    name: str
    parent_id: str
    content_type: str
    size: int


def _remote_error(operation: str, name: str, error: Exception) -> RemoteError:
    if isinstance(error, HttpError):
        status = getattr(error.resp, 'status', None)
        try:
            status = int(status) if status is not None else None
        except (TypeError, ValueError):
            status = None
        reason = getattr(error, 'reason', None) or error
        return RemoteError(f"{operation} of '{name}' failed: {reason}", status=status)
    return RemoteError(f"{operation} of '{name}' failed: {error}")


def read_source(content) -> bytes:
    """Read the whole local byte source, from a path or a binary file object."""
    try:
        if isinstance(content, (str, os.PathLike)):
            with open(content, 'rb') as f:
                data = f.read()
        else:
            data = content.read()
    except OSError as e:
        raise SourceReadError(f"Could not read local source: {e}") from e
    except (AttributeError, ValueError) as e:
        # not a file object, or a closed one
        raise SourceReadError(f"Local source is not readable: {e}") from e

    if not isinstance(data, (bytes, bytearray)):
        raise SourceReadError(f"Local source yielded {type(data).__name__}, expected bytes")
    return bytes(data)


class RemoteStorageClient:
    """Creates folders and uploads files through an AuthorizedClient."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE, resumable: bool = True):
        if not isinstance(chunk_size, int) or isinstance(chunk_size, bool) or chunk_size <= 0:
            raise ValueError(f"Upload chunk size must be a positive number of bytes, not {chunk_size!r}")
        self.chunk_size = chunk_size
        self.resumable = resumable

    def create_container(self, client, name: str, parent_id: Optional[str] = None) -> Container:
        """Create a folder and wait for Drive to acknowledge it."""
        if not name:
            raise ValueError("Folder name cannot be empty")

        folder_metadata = {
            'name': name,
            'mimeType': FOLDER_MIME_TYPE,
        }
        if parent_id:
            folder_metadata['parents'] = [parent_id]

        try:
            created_folder = client.service.files().create(
                body=folder_metadata, fields='id, name'
            ).execute()
        except _REMOTE_ERRORS as e:
            raise _remote_error("Folder creation", name, e) from e

        if not created_folder or not created_folder.get('id'):
            raise RemoteError(f"Folder creation of '{name}' returned no id")

        logger.info("Created folder %s (ID: %s)", name, created_folder['id'])
        return Container(id=created_folder['id'], name=created_folder.get('name', name), parent_id=parent_id)

    def upload_object(self, client, parent: Container, name: str, content, content_type: str) -> UploadedObject:
        """Upload the whole local source into ``parent``.

        The source is read completely before anything is sent, so a local read
        failure never reaches the network. Either a stored object with a server
        id is returned or an error is raised.
        """
        if parent is None or not parent.id:
            raise ValueError("Upload requires a folder that Drive has acknowledged")
        if not name:
            raise ValueError("File name cannot be empty")

        data = read_source(content)

        file_metadata = {
            'name': name,
            'parents': [parent.id],
            'mimeType': content_type,
        }
        # Resumable sessions cannot carry an empty body
        resumable = self.resumable and len(data) > 0
        media = MediaIoBaseUpload(
            io.BytesIO(data),
            mimetype=content_type,
            chunksize=self.chunk_size,
            resumable=resumable,
        )

        try:
            request = client.service.files().create(
                body=file_metadata, media_body=media, fields='id, name'
            )
            if resumable:
                response = None
                while response is None:
                    status, response = request.next_chunk()
                    if status:
                        logger.debug("⬆️  %s: %d%%", name, int(status.progress() * 100))
            else:
                response = request.execute()
        except _REMOTE_ERRORS as e:
            raise _remote_error("Upload", name, e) from e

        if not response or not response.get('id'):
            raise RemoteError(f"Upload of '{name}' returned no id")

        logger.info("Uploaded %s (%d bytes) to folder %s", name, len(data), parent.id)
        return UploadedObject(
            id=response['id'],
            name=response.get('name', name),
            parent_id=parent.id,
            content_type=content_type,
            size=len(data),
        )
