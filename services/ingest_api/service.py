"""SongFlow - Upload intake service logic.

Core intake business logic implementing:
- Idempotency via the client- or server-assigned upload_id
- Blob persistence with compensation on partial failure
- Enqueue of exactly one processing job per upload

Intake never creates the catalog record and never runs metadata extraction;
both belong to the background processor (services.worker_upload).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from songflow.blobstore import BLOB_KIND_AUDIO, BLOB_KIND_COVER, BlobStore, new_blob_key
from songflow.compensation import cleanup_blobs
from songflow.errors import EnqueueError, StorageError, UploadConflictError
from songflow.huey_app import JobQueue, ProcessingJob
from songflow.models import UploadRecord, UploadStatus
from songflow.schemas import UploadRequest
from songflow.upload_store import (
    attach_blob_keys,
    create_upload,
    find_upload,
    generate_upload_id,
    get_upload_for_owner,
    job_id_for,
    mark_compensated,
    mark_failed,
    mark_processing,
    reset_for_retry,
)
from songflow.validation import validate_upload_request

logger = logging.getLogger(__name__)


# --- Result Types ---


@dataclass
class UploadResult:
    """Outcome of a submission: the upload's state after intake."""

    upload_id: str
    status: UploadStatus
    job_id: str | None
    result_entity_id: str | None = None
    is_duplicate: bool = False
    message: str = ""


_STATUS_MESSAGES = {
    UploadStatus.PENDING: "Upload accepted and waiting to be processed",
    UploadStatus.PROCESSING: "Upload accepted and queued for processing",
    UploadStatus.COMPLETED: "Upload already processed",
    UploadStatus.FAILED: "Upload failed",
    UploadStatus.CANCELLED: "Upload was cancelled",
}


def _result_from_record(record: UploadRecord, is_duplicate: bool) -> UploadResult:
    status = UploadStatus(record.status)
    return UploadResult(
        upload_id=record.upload_id,
        status=status,
        job_id=record.job_id,
        result_entity_id=record.result_entity_id,
        is_duplicate=is_duplicate,
        message=_STATUS_MESSAGES[status],
    )


# --- Intake Service ---


def submit_upload(
    session: Session,
    blob_store: BlobStore,
    queue: JobQueue,
    request: UploadRequest,
) -> UploadResult:
    """Accept a song upload for asynchronous processing.

    1. Validate the request (no side effects on failure)
    2. Resolve the upload id and the existing record, if any
    3. Create a PENDING record, or reset a FAILED one for retry
    4. Store the audio blob, then the cover blob
    5. Persist the blob keys on the record
    6. Enqueue the processing job (job id derived from the upload id)
    7. Mark the record PROCESSING

    A record that already exists in PENDING, PROCESSING, COMPLETED or
    CANCELLED is returned as-is with is_duplicate=True and no new job.

    Args:
        session: Active database session.
        blob_store: Store for the uploaded bytes.
        queue: Job queue for background processing.
        request: The submission.

    Returns:
        UploadResult describing the upload after intake.

    Raises:
        UploadValidationError, UnsupportedMediaTypeError, PayloadTooLargeError:
            The request was rejected before any side effect.
        UploadConflictError: The upload id belongs to another owner.
        StorageError: A blob write failed; the record is FAILED and compensated.
        EnqueueError: The job could not be queued; the record is FAILED and compensated.

    Note:
        This function commits the session after each step. Callers should not
        wrap it in a transaction expecting rollback.
    """
    request = validate_upload_request(request)
    upload_id = request.upload_id or generate_upload_id()

    # 1. Idempotency check
    record = find_upload(session, upload_id)
    if record is not None:
        if record.owner_id != request.owner_id:
            raise UploadConflictError(upload_id)

        if record.status != UploadStatus.FAILED:
            logger.info(
                "Duplicate submission for upload_id=%s (status=%s)", upload_id, record.status
            )
            return _result_from_record(record, is_duplicate=True)

        if not reset_for_retry(session, upload_id, request):
            # A concurrent resubmission reset the row first
            session.rollback()
            record = find_upload(session, upload_id, for_update=True)
            logger.info("Concurrent resubmission for upload_id=%s resolved to existing", upload_id)
            return _result_from_record(record, is_duplicate=True)
        session.commit()
        record = find_upload(session, upload_id, for_update=True)
        logger.info("Upload %s resubmitted (retry_count=%d)", upload_id, record.retry_count)
    else:
        try:
            record = create_upload(session, upload_id, request)
            session.commit()
        except IntegrityError:
            # Lost a concurrent create race; the winner owns the upload
            session.rollback()
            record = find_upload(session, upload_id, for_update=True)
            if record is None:
                raise
            if record.owner_id != request.owner_id:
                raise UploadConflictError(upload_id) from None
            logger.info("Concurrent submission for upload_id=%s resolved to existing", upload_id)
            return _result_from_record(record, is_duplicate=True)

    # 2. Store blobs (audio first, then cover)
    audio_key: str | None = None
    cover_key: str | None = None
    try:
        audio_key = blob_store.put(
            new_blob_key(BLOB_KIND_AUDIO, request.audio.content_type, request.audio.filename),
            request.audio.data,
            request.audio.content_type,
        )
        if request.cover is not None:
            cover_key = blob_store.put(
                new_blob_key(
                    BLOB_KIND_COVER, request.cover.content_type, request.cover.filename
                ),
                request.cover.data,
                request.cover.content_type,
            )
    except Exception as e:
        reason = e.message if isinstance(e, StorageError) else f"Blob storage failed: {e}"
        logger.error("Blob storage failed for upload_id=%s: %s", upload_id, reason)
        _fail_and_compensate(session, blob_store, record, reason, audio_key, cover_key)
        raise StorageError(reason, upload_id) from e

    # 3. Persist blob keys
    attach_blob_keys(session, record, audio_key, cover_key)
    session.commit()

    # 4. Enqueue processing job
    job = ProcessingJob(upload_id=upload_id, job_id=job_id_for(upload_id))
    try:
        if not queue.enqueue(job):
            # The dedup key outlived its previous attempt; this row owns the job now
            logger.warning("Stale dedup key for job %s, releasing and re-enqueueing", job.job_id)
            queue.release(job.job_id)
            if not queue.enqueue(job):
                raise EnqueueError(f"Job {job.job_id} is already queued", upload_id)
    except Exception as e:
        reason = e.message if isinstance(e, EnqueueError) else f"Failed to enqueue job: {e}"
        logger.error("Enqueue failed for upload_id=%s: %s", upload_id, reason)
        _fail_and_compensate(session, blob_store, record, reason, audio_key, cover_key)
        raise EnqueueError(reason, upload_id) from e

    # 5. Mark PROCESSING (a worker may already have finished the job)
    status = mark_processing(session, upload_id, job.job_id)
    session.commit()

    logger.info("Upload accepted upload_id=%s job_id=%s status=%s", upload_id, job.job_id, status)
    record = find_upload(session, upload_id, for_update=True)
    return _result_from_record(record, is_duplicate=False)


def get_upload_status(session: Session, upload_id: str, owner_id: str) -> UploadRecord:
    """Return the upload record for its owner.

    Raises:
        UploadNotFoundError: If absent or owned by another principal.
    """
    return get_upload_for_owner(session, upload_id, owner_id)


# --- Internal Helpers ---


def _fail_and_compensate(
    session: Session,
    blob_store: BlobStore,
    record: UploadRecord,
    reason: str,
    audio_key: str | None,
    cover_key: str | None,
) -> None:
    """Compensate written blobs, then mark the record FAILED and compensated."""
    cleanup_blobs(blob_store, audio_key, cover_key)

    session.rollback()
    record = find_upload(session, record.upload_id, for_update=True)
    mark_failed(session, record, reason)
    record.audio_blob_key = audio_key
    record.cover_blob_key = cover_key
    mark_compensated(session, record)
    session.commit()
