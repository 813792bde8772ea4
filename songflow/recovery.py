"""SongFlow - Stalled upload recovery sweep.

Huey delivers a job at most once per enqueue, so a worker crash mid-job
leaves the row PROCESSING with nothing queued. An intake interrupted between
creating the row and enqueueing leaves it PENDING with blobs possibly
written. The sweep repairs both:

- PROCESSING rows idle for longer than the stale window are re-queued, up
  to the processing attempt budget; past it they are marked FAILED and
  compensated.
- PENDING rows idle for longer than the stale window are marked FAILED and
  their blobs compensated. Both release the job dedup key so a resubmission
  can enqueue again.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from songflow import config
from songflow.blobstore import BlobStore
from songflow.compensation import cleanup_blobs
from songflow.huey_app import JobQueue, ProcessingJob
from songflow.models import UploadRecord, UploadStatus
from songflow.upload_store import (
    find_stalled_uploads,
    job_id_for,
    mark_compensated,
    mark_failed,
    mark_requeued,
    stale_cutoff,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

INTAKE_INTERRUPTED_REASON = "Intake interrupted before processing started"
PROCESSING_STALLED_REASON = "Processing stalled repeatedly and was abandoned"


def recover_stalled_uploads(
    session_factory: sessionmaker,
    blob_store: BlobStore,
    queue: JobQueue,
    stale_after_seconds: int | None = None,
) -> dict:
    """Run one recovery sweep.

    Args:
        session_factory: Database session factory.
        blob_store: Store holding upload blobs.
        queue: Job queue used to re-queue lost jobs.
        stale_after_seconds: Idle window; defaults to config.STALE_UPLOAD_SECONDS.

    Returns:
        Dict with the number of re-queued and failed uploads.
    """
    if stale_after_seconds is None:
        stale_after_seconds = config.STALE_UPLOAD_SECONDS
    cutoff = stale_cutoff(stale_after_seconds)

    requeued = 0
    failed = 0

    session = session_factory()
    try:
        for record in find_stalled_uploads(session, UploadStatus.PROCESSING, cutoff):
            job_id = record.job_id or job_id_for(record.upload_id)
            # Each re-queue spends one delivery of the processing budget
            attempts_used = 1 + (record.recovery_count or 0)
            if attempts_used >= config.MAX_ATTEMPTS_TOTAL:
                _fail_stalled(session, blob_store, record, PROCESSING_STALLED_REASON)
                queue.release(job_id)
                logger.warning(
                    "Recovery: upload_id=%s stalled %d times, marked failed",
                    record.upload_id,
                    attempts_used,
                )
                failed += 1
                continue

            mark_requeued(session, record)
            session.commit()
            job = ProcessingJob(
                upload_id=record.upload_id, job_id=job_id, attempt=attempts_used + 1
            )
            try:
                queue.retry(job, 0)
            except Exception:
                logger.exception("Recovery: failed to re-queue upload_id=%s", record.upload_id)
                continue
            logger.warning(
                "Recovery: re-queued stalled upload_id=%s (attempt %d)",
                record.upload_id,
                job.attempt,
            )
            requeued += 1

        for record in find_stalled_uploads(session, UploadStatus.PENDING, cutoff):
            _fail_stalled(session, blob_store, record, INTAKE_INTERRUPTED_REASON)
            # Intake may have claimed the dedup key before it was interrupted
            queue.release(record.job_id or job_id_for(record.upload_id))
            logger.warning("Recovery: failed interrupted upload_id=%s", record.upload_id)
            failed += 1
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if requeued or failed:
        logger.info("Recovery sweep: requeued=%d failed=%d", requeued, failed)
    return {"requeued": requeued, "failed": failed}


def _fail_stalled(
    session: Session, blob_store: BlobStore, record: UploadRecord, reason: str
) -> None:
    mark_failed(session, record, reason)
    session.commit()
    cleanup_blobs(blob_store, record.audio_blob_key, record.cover_blob_key)
    mark_compensated(session, record)
    session.commit()


__all__ = [
    "INTAKE_INTERRUPTED_REASON",
    "PROCESSING_STALLED_REASON",
    "recover_stalled_uploads",
]
