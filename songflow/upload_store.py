"""SongFlow - Upload record store and lifecycle state machine.

The song_uploads table is the single source of truth for upload state. Every
mutation here touches exactly one row; none of these helpers commit, so the
caller decides the transaction boundary (the background processor writes the
COMPLETED state in the same transaction as the catalog record).

Lifecycle:

    PENDING ──> PROCESSING ──> COMPLETED
       │            │
       └──> FAILED <┘
              │
              └──> PENDING   (explicit resubmission under the same upload id)

COMPLETED and CANCELLED are terminal. PENDING -> COMPLETED is allowed because
a fast worker can finish before intake flips the row to PROCESSING.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update

from songflow.errors import InvalidTransitionError, UploadNotFoundError
from songflow.models import UploadRecord, UploadStatus, utc_now

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from songflow.schemas import UploadRequest

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[UploadStatus, frozenset[UploadStatus]] = {
    UploadStatus.PENDING: frozenset(
        {
            UploadStatus.PROCESSING,
            UploadStatus.COMPLETED,
            UploadStatus.FAILED,
            UploadStatus.CANCELLED,
        }
    ),
    UploadStatus.PROCESSING: frozenset(
        {UploadStatus.COMPLETED, UploadStatus.FAILED, UploadStatus.CANCELLED}
    ),
    UploadStatus.FAILED: frozenset({UploadStatus.PENDING, UploadStatus.CANCELLED}),
    UploadStatus.COMPLETED: frozenset(),
    UploadStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({UploadStatus.COMPLETED, UploadStatus.CANCELLED})


# --- Identifiers ---


def generate_upload_id() -> str:
    """Generate a time-ordered, globally unique upload id.

    Format: upload-{epoch_millis}-{8 hex chars}
    """
    return f"upload-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def job_id_for(upload_id: str) -> str:
    """Deterministic processing job id for an upload (queue dedup key)."""
    return f"process-{upload_id}"


# --- State machine ---


def can_transition(current: UploadStatus, target: UploadStatus) -> bool:
    """Whether ``current -> target`` is a legal lifecycle move.

    Same-status updates are legal for non-terminal states.
    """
    if current == target:
        return current not in TERMINAL_STATUSES
    return target in ALLOWED_TRANSITIONS[current]


def transition(record: UploadRecord, target: UploadStatus) -> None:
    """Move a record to ``target`` or raise InvalidTransitionError."""
    current = UploadStatus(record.status)
    if not can_transition(current, target):
        raise InvalidTransitionError(record.upload_id, current, target)
    record.status = target
    record.updated_at = utc_now()


# --- Queries ---


def find_upload(session: Session, upload_id: str, for_update: bool = False) -> UploadRecord | None:
    """Find an upload record by its idempotency key.

    Args:
        session: Active database session.
        upload_id: The upload id.
        for_update: Re-read the row even if already loaded in the session.

    Returns:
        The UploadRecord, or None.
    """
    stmt = select(UploadRecord).where(UploadRecord.upload_id == upload_id)
    if for_update:
        stmt = stmt.execution_options(populate_existing=True)
    return session.execute(stmt).scalar_one_or_none()


def get_upload_for_owner(session: Session, upload_id: str, owner_id: str) -> UploadRecord:
    """Load an upload scoped to its owner.

    Raises:
        UploadNotFoundError: If no row matches both upload_id and owner_id.
    """
    stmt = select(UploadRecord).where(
        UploadRecord.upload_id == upload_id,
        UploadRecord.owner_id == owner_id,
    )
    record = session.execute(stmt).scalar_one_or_none()
    if record is None:
        raise UploadNotFoundError(upload_id)
    return record


def find_stalled_uploads(
    session: Session,
    status: UploadStatus,
    older_than: datetime,
    limit: int = 100,
) -> list[UploadRecord]:
    """Rows in ``status`` whose last update is older than ``older_than``."""
    stmt = (
        select(UploadRecord)
        .where(UploadRecord.status == status, UploadRecord.updated_at < older_than)
        .order_by(UploadRecord.updated_at)
        .limit(limit)
    )
    return list(session.execute(stmt).scalars())


def stale_cutoff(stale_after_seconds: int) -> datetime:
    return utc_now() - timedelta(seconds=stale_after_seconds)


# --- Mutations (flush only, caller commits) ---


def _request_values(request: UploadRequest) -> dict[str, Any]:
    return {
        "requested_title": request.title,
        "requested_artist_id": request.artist_id,
        "requested_album_id": request.album_id,
        "requested_genre_id": request.genre_id,
        "requested_status": request.requested_status,
        "requested_duration": request.duration,
        "audio_content_type": request.audio.content_type if request.audio else None,
        "cover_content_type": request.cover.content_type if request.cover else None,
    }


def create_upload(session: Session, upload_id: str, request: UploadRequest) -> UploadRecord:
    """Insert a new PENDING record.

    A concurrent insert of the same upload_id surfaces as IntegrityError on
    flush (unique constraint); the caller resolves the race.
    """
    record = UploadRecord(
        upload_id=upload_id,
        owner_id=request.owner_id,
        status=UploadStatus.PENDING,
        retry_count=0,
        recovery_count=0,
        compensation_applied=False,
        **_request_values(request),
    )
    session.add(record)
    session.flush()
    logger.info("Created upload record upload_id=%s owner_id=%s", upload_id, request.owner_id)
    return record


def reset_for_retry(session: Session, upload_id: str, request: UploadRequest) -> bool:
    """FAILED -> PENDING for a resubmission under the same upload id.

    Conditional single-row update: of several concurrent resubmissions only
    the one that still sees FAILED wins. The winner increments retry_count by
    one, clears last_error and the previous attempt's blob keys/result, and
    replaces the requested parameters with the resubmitted ones.

    Returns:
        True if this call moved the row to PENDING, False if the row was no
        longer FAILED.
    """
    result = session.execute(
        update(UploadRecord)
        .where(
            UploadRecord.upload_id == upload_id,
            UploadRecord.status == UploadStatus.FAILED,
        )
        .values(
            status=UploadStatus.PENDING,
            retry_count=UploadRecord.retry_count + 1,
            recovery_count=0,
            last_error=None,
            audio_blob_key=None,
            cover_blob_key=None,
            extracted_metadata=None,
            job_id=None,
            compensation_applied=False,
            updated_at=utc_now(),
            **_request_values(request),
        )
    )
    if result.rowcount != 1:
        logger.info("Upload %s is no longer FAILED, reset skipped", upload_id)
        return False
    logger.info("Upload %s reset for retry", upload_id)
    return True


def attach_blob_keys(
    session: Session,
    record: UploadRecord,
    audio_blob_key: str,
    cover_blob_key: str | None,
) -> None:
    """Persist the blob keys written by intake."""
    record.audio_blob_key = audio_blob_key
    record.cover_blob_key = cover_blob_key
    record.updated_at = utc_now()
    session.flush()


def mark_processing(session: Session, upload_id: str, job_id: str) -> UploadStatus:
    """Record the job id and flip PENDING -> PROCESSING.

    Conditional single-row update: a row that a worker has already moved on
    (COMPLETED/FAILED) keeps its status.

    Returns:
        The row's status after the update.
    """
    session.execute(
        update(UploadRecord)
        .where(UploadRecord.upload_id == upload_id)
        .values(job_id=job_id, updated_at=utc_now())
    )
    session.execute(
        update(UploadRecord)
        .where(
            UploadRecord.upload_id == upload_id,
            UploadRecord.status == UploadStatus.PENDING,
        )
        .values(status=UploadStatus.PROCESSING)
    )
    record = find_upload(session, upload_id, for_update=True)
    if record is None:
        raise UploadNotFoundError(upload_id)
    return UploadStatus(record.status)


def mark_failed(session: Session, record: UploadRecord, reason: str) -> None:
    """Move a record to FAILED with a human-readable reason."""
    transition(record, UploadStatus.FAILED)
    record.last_error = reason
    session.flush()
    logger.info("Upload %s marked failed: %s", record.upload_id, reason)


def mark_compensated(session: Session, record: UploadRecord) -> None:
    """Flag that blob cleanup has run for the current attempt."""
    record.compensation_applied = True
    record.updated_at = utc_now()
    session.flush()


def record_transient_error(session: Session, record: UploadRecord, reason: str) -> None:
    """Note a retryable processing failure without leaving PROCESSING."""
    record.last_error = reason
    record.updated_at = utc_now()
    session.flush()


def mark_requeued(session: Session, record: UploadRecord) -> None:
    """Count a recovery re-queue of the current attempt and refresh updated_at."""
    record.recovery_count = (record.recovery_count or 0) + 1
    record.updated_at = utc_now()
    session.flush()


def mark_completed(
    session: Session,
    record: UploadRecord,
    result_entity_id: str,
    extracted_metadata: dict[str, Any] | None,
) -> None:
    """Move a record to COMPLETED with its catalog record id.

    The only place COMPLETED is set, so result_entity_id is present iff the
    upload is completed.
    """
    transition(record, UploadStatus.COMPLETED)
    record.result_entity_id = result_entity_id
    record.extracted_metadata = extracted_metadata
    record.last_error = None
    session.flush()
