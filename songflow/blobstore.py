"""SongFlow - Blob store abstraction.

Key-addressed storage for raw upload bytes (audio, cover images). The
pipeline only depends on the BlobStore protocol; LocalBlobStore is the
filesystem implementation used by default and in tests.

Key layout:
    songs/{uuid}{ext}    audio files
    covers/{uuid}{ext}   cover images
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path, PurePosixPath
from typing import Protocol

from songflow.errors import BlobNotFoundError, StorageError
from songflow.utils.atomic_io import atomic_write_bytes

logger = logging.getLogger(__name__)

BLOB_KIND_AUDIO = "songs"
BLOB_KIND_COVER = "covers"

# Allow-listed content types and the extension their blobs are stored under
_EXTENSION_BY_CONTENT_TYPE = {
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/m4a": ".m4a",
    "audio/x-m4a": ".m4a",
    "audio/flac": ".flac",
    "audio/x-flac": ".flac",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}

_KNOWN_EXTENSIONS = frozenset(_EXTENSION_BY_CONTENT_TYPE.values()) | {".jpeg"}

_DEFAULT_EXTENSION = {BLOB_KIND_AUDIO: ".mp3", BLOB_KIND_COVER: ".jpg"}


class BlobStore(Protocol):
    """Key-addressed byte storage."""

    def put(self, key: str, data: bytes, content_type: str | None = None) -> str:
        """Store bytes under ``key`` and return the key."""
        ...

    def get(self, key: str) -> bytes:
        """Return the bytes stored under ``key``; BlobNotFoundError if absent."""
        ...

    def delete(self, key: str) -> None:
        """Delete ``key``; BlobNotFoundError if absent."""
        ...

    def exists(self, key: str) -> bool:
        """Whether ``key`` currently resolves to stored bytes."""
        ...

    def public_url(self, key: str) -> str:
        """Public URL serving ``key``."""
        ...


def guess_extension(content_type: str | None, filename: str | None = None) -> str | None:
    """Pick a file extension (with leading dot) for an upload.

    The content type decides. The filename's extension is used only when the
    content type is unknown, and only if it is a known media extension, so a
    client-chosen suffix such as ".tmp" never ends up in a blob key.

    Args:
        content_type: MIME type reported by the client.
        filename: Original filename, if any.

    Returns:
        Lowercase extension like ".mp3", or None if nothing can be derived.
    """
    if content_type:
        ext = _EXTENSION_BY_CONTENT_TYPE.get(content_type.lower())
        if ext:
            return ext
    if filename:
        suffix = PurePosixPath(filename).suffix.lower()
        if suffix in _KNOWN_EXTENSIONS:
            return suffix
    return None


def new_blob_key(kind: str, content_type: str | None = None, filename: str | None = None) -> str:
    """Generate a fresh, unique blob key.

    Args:
        kind: Key namespace (BLOB_KIND_AUDIO or BLOB_KIND_COVER).
        content_type: MIME type, used to pick the extension.
        filename: Original filename, used to pick the extension.

    Returns:
        Key such as "songs/3f2b...e1.mp3".
    """
    ext = guess_extension(content_type, filename) or _DEFAULT_EXTENSION.get(kind, "")
    return f"{kind}/{uuid.uuid4().hex}{ext}"


class LocalBlobStore:
    """Filesystem blob store rooted at a directory.

    Writes are atomic (temp file + rename). Keys are relative POSIX paths and
    may not escape the root.
    """

    def __init__(self, root: str | Path, base_url: str):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def _path_for(self, key: str) -> Path:
        parts = PurePosixPath(key).parts
        if not parts or key.startswith("/") or ".." in parts:
            raise StorageError(f"Invalid blob key: {key!r}")
        return self.root.joinpath(*parts)

    def put(self, key: str, data: bytes, content_type: str | None = None) -> str:
        path = self._path_for(key)
        try:
            atomic_write_bytes(path, data)
        except OSError as e:
            raise StorageError(f"Failed to store blob {key}: {e}") from e
        logger.debug("Stored blob %s (%d bytes, %s)", key, len(data), content_type)
        return key

    def get(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise BlobNotFoundError(key) from e
        except OSError as e:
            raise StorageError(f"Failed to read blob {key}: {e}") from e

    def delete(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink()
        except FileNotFoundError as e:
            raise BlobNotFoundError(key) from e
        except OSError as e:
            raise StorageError(f"Failed to delete blob {key}: {e}") from e
        logger.debug("Deleted blob %s", key)

    def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/uploads/{key}"


__all__ = [
    "BLOB_KIND_AUDIO",
    "BLOB_KIND_COVER",
    "BlobStore",
    "LocalBlobStore",
    "guess_extension",
    "new_blob_key",
]
