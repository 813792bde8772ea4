"""SongFlow - Process-wide collaborators.

The Huey tasks run in the consumer process and cannot receive live objects,
so they resolve the database session factory, blob store and metadata
extractor here. Each is built lazily from config on first use; configure()
replaces them (tests, embedding) and reset() forgets them.
"""

from __future__ import annotations

import logging
import threading

from sqlalchemy.orm import sessionmaker

from songflow import config
from songflow.blobstore import BlobStore, LocalBlobStore
from songflow.db import init_db
from songflow.metadata import MetadataExtractor, build_metadata_extractor

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_session_factory: sessionmaker | None = None
_blob_store: BlobStore | None = None
_metadata_extractor: MetadataExtractor | None = None


def get_session_factory() -> sessionmaker:
    """Session factory for the configured database (created on first use)."""
    global _session_factory
    with _lock:
        if _session_factory is None:
            _, _session_factory = init_db()
        return _session_factory


def get_blob_store() -> BlobStore:
    """Blob store rooted at config.BLOB_DIR (created on first use)."""
    global _blob_store
    with _lock:
        if _blob_store is None:
            _blob_store = LocalBlobStore(config.BLOB_DIR, config.PUBLIC_BASE_URL)
        return _blob_store


def get_metadata_extractor() -> MetadataExtractor:
    """Extractor strategy named by config.METADATA_EXTRACTOR."""
    global _metadata_extractor
    with _lock:
        if _metadata_extractor is None:
            _metadata_extractor = build_metadata_extractor(config.METADATA_EXTRACTOR)
            logger.info("Using metadata extractor: %s", _metadata_extractor.name)
        return _metadata_extractor


def configure(
    session_factory: sessionmaker | None = None,
    blob_store: BlobStore | None = None,
    metadata_extractor: MetadataExtractor | None = None,
) -> None:
    """Install explicit collaborators; None leaves the current one in place."""
    global _session_factory, _blob_store, _metadata_extractor
    with _lock:
        if session_factory is not None:
            _session_factory = session_factory
        if blob_store is not None:
            _blob_store = blob_store
        if metadata_extractor is not None:
            _metadata_extractor = metadata_extractor


def reset() -> None:
    """Forget all collaborators so the next access rebuilds them from config."""
    global _session_factory, _blob_store, _metadata_extractor
    with _lock:
        _session_factory = None
        _blob_store = None
        _metadata_extractor = None
