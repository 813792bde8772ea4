"""SongFlow - Upload Worker.

Turns an accepted upload into a catalog song.

Input: UploadRecord (requested parameters + blob keys)
Output: Song row, UploadRecord marked COMPLETED in the same transaction

Steps:
1. Short-circuit if the upload is already COMPLETED (duplicate delivery)
2. Read the audio blob, confirm the cover blob
3. Extract metadata (best-effort, bounded by a timeout)
4. In one transaction: validate references, build and persist the Song,
   mark the upload COMPLETED
5. Commit

On failure the transaction is rolled back. A terminal failure (not
retryable, or the final attempt) marks the upload FAILED and compensates
its blobs; a retryable failure records last_error and leaves the upload
PROCESSING for the next attempt.

Failpoints (resilience harness):
- PROCESS_BEFORE_CATALOG_PERSIST: After building the Song, before persisting it
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from songflow import config, runtime
from songflow.blobstore import BlobStore
from songflow.compensation import cleanup_blobs
from songflow.errors import (
    BlobNotFoundError,
    InvalidTransitionError,
    ReferenceNotFoundError,
    TransientProcessingError,
    UploadError,
    UploadNotFoundError,
    is_retryable,
)
from songflow.huey_app import JobQueue, ProcessingJob
from songflow.metadata import MetadataExtractor, extract_metadata_safely
from songflow.models import (
    Album,
    Artist,
    Genre,
    Song,
    SongStatus,
    UploadRecord,
    UploadStatus,
    new_entity_id,
)
from songflow.upload_store import (
    find_upload,
    mark_compensated,
    mark_completed,
    mark_failed,
    record_transient_error,
)
from songflow.utils.failpoints import maybe_fail

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

# Requested lifecycle hints that publish the song immediately
_PUBLISHED_HINTS = frozenset({"pending", "published"})


# --- Helpers ---


def resolve_song_status(requested_status: str | None) -> SongStatus:
    """Map the caller's lifecycle hint onto a catalog status."""
    if requested_status and requested_status.lower() in _PUBLISHED_HINTS:
        return SongStatus.PUBLISHED
    return SongStatus.DRAFT


def resolve_duration(
    extracted_duration: float,
    requested_duration: float | None,
    upload_id: str,
) -> int:
    """Pick the catalog duration in whole seconds.

    A positive extracted duration wins over a positive caller hint; with
    neither the song is stored with duration 0.
    """
    if extracted_duration and extracted_duration > 0:
        return max(1, round(extracted_duration))
    if requested_duration and requested_duration > 0:
        return max(1, round(requested_duration))
    logger.warning("No duration available for upload_id=%s; storing 0", upload_id)
    return 0


def _validate_references(session: Session, record: UploadRecord) -> None:
    """Raise ReferenceNotFoundError for a missing artist, album or genre."""
    if session.get(Artist, record.requested_artist_id) is None:
        raise ReferenceNotFoundError("artist", record.requested_artist_id)
    if record.requested_album_id and session.get(Album, record.requested_album_id) is None:
        raise ReferenceNotFoundError("album", record.requested_album_id)
    if record.requested_genre_id and session.get(Genre, record.requested_genre_id) is None:
        raise ReferenceNotFoundError("genre", record.requested_genre_id)


def _find_song_for_upload(session: Session, upload_id: str) -> Song | None:
    stmt = select(Song).where(Song.upload_id == upload_id)
    return session.execute(stmt).scalar_one_or_none()


def failure_reason(exc: BaseException) -> str:
    """Human-readable failure text persisted as last_error."""
    if isinstance(exc, UploadError):
        return exc.message
    return f"{type(exc).__name__}: {exc}"


def is_terminal_failure(exc: BaseException, attempt: int) -> bool:
    """Whether a failure ends processing for this upload."""
    return not is_retryable(exc) or attempt >= config.MAX_ATTEMPTS_TOTAL


# --- Processor ---


def process_upload(
    session_factory: sessionmaker,
    blob_store: BlobStore,
    extractor: MetadataExtractor,
    job: ProcessingJob,
) -> Song:
    """Process one delivery of an upload job.

    Args:
        session_factory: Database session factory.
        blob_store: Store holding the upload's blobs.
        extractor: Metadata extraction strategy.
        job: The job being delivered.

    Returns:
        The created Song, or the existing one for an already completed upload.

    Raises:
        UploadNotFoundError: No upload record exists for the job.
        InvalidTransitionError: The upload is FAILED or CANCELLED (stale delivery).
        Exception: Any processing failure, after failure handling ran.
    """
    session = session_factory()
    try:
        record = find_upload(session, job.upload_id)
        if record is None:
            raise UploadNotFoundError(job.upload_id)

        status = UploadStatus(record.status)
        if status == UploadStatus.COMPLETED and record.result_entity_id:
            song = session.get(Song, record.result_entity_id)
            if song is not None:
                logger.info(
                    "Upload %s already completed (song_id=%s), skipping",
                    job.upload_id,
                    song.id,
                )
                return song
        if status not in (UploadStatus.PENDING, UploadStatus.PROCESSING):
            raise InvalidTransitionError(job.upload_id, status, UploadStatus.COMPLETED)

        try:
            return _process_record(session, blob_store, extractor, record, job)
        except Exception as exc:
            session.rollback()
            logger.error(
                "Processing failed for upload_id=%s (attempt %d): %s",
                job.upload_id,
                job.attempt,
                exc,
            )
            _handle_processing_failure(session, blob_store, job, exc)
            raise
    finally:
        session.close()


def _process_record(
    session: Session,
    blob_store: BlobStore,
    extractor: MetadataExtractor,
    record: UploadRecord,
    job: ProcessingJob,
) -> Song:
    upload_id = record.upload_id

    # 1. Read blobs
    if not record.audio_blob_key:
        raise TransientProcessingError(f"Upload {upload_id} has no stored audio yet")
    audio_bytes = blob_store.get(record.audio_blob_key)
    if record.cover_blob_key and not blob_store.exists(record.cover_blob_key):
        raise BlobNotFoundError(record.cover_blob_key)

    # 2. Extract metadata (never raises)
    metadata, extracted = extract_metadata_safely(
        extractor,
        audio_bytes,
        record.audio_content_type,
        timeout_seconds=config.EXTRACTION_TIMEOUT_SECONDS,
    )
    if not extracted:
        logger.warning("Metadata unavailable for upload_id=%s", upload_id)
    duration = resolve_duration(metadata.duration, record.requested_duration, upload_id)

    # 3. Transaction: references, song, terminal upload state
    _validate_references(session, record)

    song = Song(
        id=new_entity_id(),
        artist_id=record.requested_artist_id,
        album_id=record.requested_album_id,
        genre_id=record.requested_genre_id,
        title=record.requested_title,
        duration=duration,
        file_url=blob_store.public_url(record.audio_blob_key),
        cover_art_url=(
            blob_store.public_url(record.cover_blob_key) if record.cover_blob_key else None
        ),
        status=resolve_song_status(record.requested_status),
        total_streams=0,
        total_likes=0,
        total_shares=0,
        upload_id=upload_id,
    )

    maybe_fail("PROCESS_BEFORE_CATALOG_PERSIST")

    session.add(song)
    try:
        session.flush()
        mark_completed(session, record, song.id, metadata.to_dict())
        session.commit()
    except IntegrityError:
        # Another delivery of this job committed first
        session.rollback()
        existing = _find_song_for_upload(session, upload_id)
        if existing is None:
            raise
        logger.info(
            "Upload %s completed by a concurrent delivery (song_id=%s)", upload_id, existing.id
        )
        return existing

    logger.info(
        "Upload %s completed: song_id=%s duration=%ds", upload_id, song.id, duration
    )
    return song


def _handle_processing_failure(
    session: Session,
    blob_store: BlobStore,
    job: ProcessingJob,
    exc: BaseException,
) -> None:
    """Record a processing failure on the upload row.

    Errors raised here are logged and swallowed so the original failure
    propagates.
    """
    try:
        record = find_upload(session, job.upload_id, for_update=True)
        if record is None or record.status not in (
            UploadStatus.PENDING,
            UploadStatus.PROCESSING,
        ):
            return

        reason = failure_reason(exc)
        if not is_terminal_failure(exc, job.attempt):
            record_transient_error(session, record, reason)
            session.commit()
            return

        mark_failed(session, record, reason)
        session.commit()

        cleanup_blobs(blob_store, record.audio_blob_key, record.cover_blob_key)
        mark_compensated(session, record)
        session.commit()
    except Exception:
        session.rollback()
        logger.exception("Failed to record processing failure for upload_id=%s", job.upload_id)


# --- Job Runner ---


def run_upload_job(
    job: ProcessingJob,
    queue: JobQueue,
    session_factory: sessionmaker | None = None,
    blob_store: BlobStore | None = None,
    extractor: MetadataExtractor | None = None,
) -> dict:
    """Run one job attempt and apply the retry policy.

    - Success: release the job
    - Retryable failure with attempts left: schedule the next attempt with
      exponential backoff (config.retry_delay_seconds)
    - Otherwise: release the job (dead) and log

    Collaborators default to the process-wide ones in songflow.runtime.

    Returns:
        Dict with the attempt outcome.
    """
    session_factory = session_factory or runtime.get_session_factory()
    blob_store = blob_store or runtime.get_blob_store()
    extractor = extractor or runtime.get_metadata_extractor()

    try:
        song = process_upload(session_factory, blob_store, extractor, job)
    except Exception as exc:
        if not is_terminal_failure(exc, job.attempt):
            delay = config.retry_delay_seconds(job.attempt)
            queue.retry(job.next_attempt(), delay)
            return {
                "status": "retry_scheduled",
                "upload_id": job.upload_id,
                "attempt": job.attempt,
                "delay_seconds": delay,
                "error": failure_reason(exc),
            }

        queue.release(job.job_id)
        logger.error(
            "Job %s dead after attempt %d: %s", job.job_id, job.attempt, failure_reason(exc)
        )
        return {
            "status": "dead",
            "upload_id": job.upload_id,
            "attempt": job.attempt,
            "error": failure_reason(exc),
        }

    queue.release(job.job_id)
    return {
        "status": "completed",
        "upload_id": job.upload_id,
        "attempt": job.attempt,
        "song_id": song.id,
    }
