"""SongFlow - Huey task queue configuration.

Huey with a SQLite backend is the durable job queue for upload processing.
Intake and the processor only see the JobQueue protocol; HueyJobQueue is the
Huey implementation.

How to run:
1. Start the upload API:
   uvicorn services.ingest_api.main:app --reload

2. Start the Huey consumer (processes queued uploads, runs the recovery sweep):
   huey_consumer.py songflow.huey_app.huey

Deduplication: enqueue() claims the key "job:<job_id>" with put_if_empty, so
concurrent enqueues for one upload collapse to a single job. The key is held
across retries and released once the job reaches a terminal outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Protocol

from huey import SqliteHuey, crontab

from songflow import runtime
from songflow.config import HUEY_DB_PATH, QUEUE_DIR
from songflow.errors import EnqueueError

logger = logging.getLogger(__name__)


def _ensure_queue_dir() -> None:
    """Ensure the queue directory exists."""
    Path(QUEUE_DIR).mkdir(parents=True, exist_ok=True)


# Ensure queue directory exists before creating Huey instance
_ensure_queue_dir()

huey = SqliteHuey(
    name="songflow",
    filename=str(HUEY_DB_PATH),
    immediate=False,  # Tasks queued for consumer processing
)


# --- Job Queue Interface ---


@dataclass(frozen=True)
class ProcessingJob:
    """Payload of one processing attempt for an upload."""

    upload_id: str
    job_id: str
    attempt: int = 1

    def next_attempt(self) -> ProcessingJob:
        return replace(self, attempt=self.attempt + 1)


class JobQueue(Protocol):
    """Durable at-least-once queue of processing jobs."""

    def enqueue(self, job: ProcessingJob) -> bool:
        """Queue a job unless one with the same job id is outstanding.

        Returns:
            True if queued, False if deduplicated.

        Raises:
            EnqueueError: If the queue is unavailable.
        """
        ...

    def retry(self, job: ProcessingJob, delay_seconds: int) -> None:
        """Schedule another attempt after a delay (no deduplication)."""
        ...

    def release(self, job_id: str) -> None:
        """Forget a finished job so the id can be queued again."""
        ...


def _dedup_key(job_id: str) -> str:
    return f"job:{job_id}"


class HueyJobQueue:
    """JobQueue backed by a Huey instance."""

    def __init__(self, huey_instance: SqliteHuey):
        self.huey = huey_instance

    def enqueue(self, job: ProcessingJob) -> bool:
        try:
            claimed = self.huey.put_if_empty(_dedup_key(job.job_id), job.upload_id)
        except Exception as e:
            raise EnqueueError(f"Job queue unavailable: {e}", job.upload_id) from e

        if not claimed:
            logger.info(
                "Job %s already queued for upload_id=%s, skipping", job.job_id, job.upload_id
            )
            return False

        logger.info("Enqueueing job %s for upload_id=%s", job.job_id, job.upload_id)
        try:
            process_upload_task(job.upload_id, job.job_id, job.attempt)
        except Exception as e:
            self.release(job.job_id)
            raise EnqueueError(f"Failed to enqueue job {job.job_id}: {e}", job.upload_id) from e
        return True

    def retry(self, job: ProcessingJob, delay_seconds: int) -> None:
        logger.info(
            "Scheduling job %s attempt %d for upload_id=%s in %ds",
            job.job_id,
            job.attempt,
            job.upload_id,
            delay_seconds,
        )
        if delay_seconds > 0:
            process_upload_task.schedule(
                (job.upload_id, job.job_id, job.attempt), delay=delay_seconds
            )
        else:
            process_upload_task(job.upload_id, job.job_id, job.attempt)

    def release(self, job_id: str) -> None:
        # get() without peek pops the key
        self.huey.get(_dedup_key(job_id))


_job_queue = HueyJobQueue(huey)


def get_job_queue() -> HueyJobQueue:
    """The process-wide Huey-backed job queue."""
    return _job_queue


# --- Tasks ---


@huey.task()
def process_upload_task(upload_id: str, job_id: str, attempt: int = 1) -> dict:
    """Huey task running one processing attempt for an upload.

    Args:
        upload_id: Upload to process.
        job_id: Deterministic job id of the upload.
        attempt: 1-based attempt number.

    Returns:
        Dict with the attempt outcome (for logging/debugging).
    """
    # Import here to avoid circular imports
    from services.worker_upload.run import run_upload_job

    job = ProcessingJob(upload_id=upload_id, job_id=job_id, attempt=attempt)
    logger.info("Processing task started: job_id=%s, attempt=%d", job_id, attempt)
    result = run_upload_job(job, get_job_queue())
    logger.info("Processing task finished: job_id=%s, result=%s", job_id, result)
    return result


@huey.periodic_task(crontab(minute="*/5"))
def recover_stalled_uploads_task() -> dict:
    """Periodic sweep re-queuing lost jobs and failing interrupted intakes."""
    from songflow.recovery import recover_stalled_uploads

    return recover_stalled_uploads(
        runtime.get_session_factory(),
        runtime.get_blob_store(),
        get_job_queue(),
    )
