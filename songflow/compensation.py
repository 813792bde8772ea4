"""SongFlow - Compensation (blob cleanup) for failed uploads.

Reverses blob writes made for an upload attempt that will not complete.
Cleanup is best-effort: it never raises, and a blob that is already gone
counts as cleaned up.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

from songflow.blobstore import BlobStore
from songflow.errors import BlobNotFoundError

logger = logging.getLogger(__name__)


def _delete_quietly(blob_store: BlobStore, key: str) -> bool:
    """Delete one blob, logging instead of raising.

    Returns:
        True if the blob is gone afterwards (deleted or already missing).
    """
    try:
        blob_store.delete(key)
    except BlobNotFoundError:
        logger.info("Compensation: blob %s already absent", key)
        return True
    except Exception:
        logger.warning("Compensation: failed to delete blob %s", key, exc_info=True)
        return False
    logger.info("Compensation: deleted blob %s", key)
    return True


def cleanup_blobs(
    blob_store: BlobStore,
    audio_blob_key: str | None = None,
    cover_blob_key: str | None = None,
) -> dict[str, bool]:
    """Delete the audio and cover blobs of a failed upload.

    Both deletes run concurrently when both keys are present.

    Args:
        blob_store: Store holding the blobs.
        audio_blob_key: Audio blob key, if one was written.
        cover_blob_key: Cover blob key, if one was written.

    Returns:
        Mapping of key -> whether the blob is gone. Empty when no key was given.
    """
    keys = [key for key in (audio_blob_key, cover_blob_key) if key]
    if not keys:
        return {}

    if len(keys) == 1:
        return {keys[0]: _delete_quietly(blob_store, keys[0])}

    with ThreadPoolExecutor(max_workers=len(keys), thread_name_prefix="compensation") as pool:
        outcomes = pool.map(lambda key: _delete_quietly(blob_store, key), keys)
        return dict(zip(keys, outcomes))


__all__ = ["cleanup_blobs"]
