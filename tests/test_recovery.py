"""Tests for the stalled upload recovery sweep."""

from datetime import timedelta

import pytest
from sqlalchemy import update

from services.ingest_api.service import submit_upload
from songflow.huey_app import ProcessingJob, recover_stalled_uploads_task
from songflow.models import UploadRecord, UploadStatus, utc_now
from songflow.recovery import (
    INTAKE_INTERRUPTED_REASON,
    PROCESSING_STALLED_REASON,
    recover_stalled_uploads,
)
from songflow.upload_store import (
    attach_blob_keys,
    create_upload,
    find_upload,
    mark_completed,
)


def _backdate(SessionFactory, upload_id, hours=1):
    session = SessionFactory()
    try:
        session.execute(
            update(UploadRecord)
            .where(UploadRecord.upload_id == upload_id)
            .values(updated_at=utc_now() - timedelta(hours=hours))
        )
        session.commit()
    finally:
        session.close()


def _record(SessionFactory, upload_id):
    session = SessionFactory()
    try:
        return find_upload(session, upload_id)
    finally:
        session.close()


@pytest.fixture
def processing_upload(temp_db, blob_store, job_queue, make_request):
    """An upload accepted by intake whose job was never run."""
    _, _, SessionFactory = temp_db
    session = SessionFactory()
    try:
        result = submit_upload(session, blob_store, job_queue, make_request(upload_id="lost"))
    finally:
        session.close()
    return result


@pytest.fixture
def pending_upload(temp_db, blob_store, make_request):
    """A PENDING record with a stored blob, as left by an interrupted intake."""
    _, _, SessionFactory = temp_db
    session = SessionFactory()
    try:
        record = create_upload(session, "interrupted", make_request())
        blob_store.put("songs/interrupted.wav", b"RIFF")
        attach_blob_keys(session, record, "songs/interrupted.wav", None)
        session.commit()
    finally:
        session.close()
    return "interrupted"


class TestRecoverySweep:
    def test_stale_processing_is_requeued(self, temp_db, blob_store, job_queue, processing_upload):
        _, _, SessionFactory = temp_db
        _backdate(SessionFactory, "lost")

        outcome = recover_stalled_uploads(SessionFactory, blob_store, job_queue, 600)

        assert outcome == {"requeued": 1, "failed": 0}
        assert job_queue.retries == [(ProcessingJob("lost", "process-lost", 2), 0)]
        record = _record(SessionFactory, "lost")
        assert record.status == UploadStatus.PROCESSING
        assert record.recovery_count == 1

    def test_requeue_refreshes_idle_clock(self, temp_db, blob_store, job_queue, processing_upload):
        _, _, SessionFactory = temp_db
        _backdate(SessionFactory, "lost")

        recover_stalled_uploads(SessionFactory, blob_store, job_queue, 600)
        second = recover_stalled_uploads(SessionFactory, blob_store, job_queue, 600)

        assert second == {"requeued": 0, "failed": 0}
        assert len(job_queue.retries) == 1

    def test_repeatedly_stalled_upload_is_abandoned(
        self, temp_db, blob_store, job_queue, processing_upload
    ):
        _, _, SessionFactory = temp_db
        audio_key = _record(SessionFactory, "lost").audio_blob_key

        outcomes = []
        for _ in range(3):
            _backdate(SessionFactory, "lost")
            outcomes.append(recover_stalled_uploads(SessionFactory, blob_store, job_queue, 600))

        assert outcomes == [
            {"requeued": 1, "failed": 0},
            {"requeued": 1, "failed": 0},
            {"requeued": 0, "failed": 1},
        ]
        assert [job.attempt for job, _ in job_queue.retries] == [2, 3]
        record = _record(SessionFactory, "lost")
        assert record.status == UploadStatus.FAILED
        assert record.last_error == PROCESSING_STALLED_REASON
        assert record.compensation_applied is True
        assert not blob_store.exists(audio_key)
        assert job_queue.released == ["process-lost"]

        # Later sweeps leave the abandoned upload alone
        _backdate(SessionFactory, "lost")
        assert recover_stalled_uploads(SessionFactory, blob_store, job_queue, 600) == {
            "requeued": 0,
            "failed": 0,
        }

    def test_resubmission_after_abandonment_gets_fresh_budget(
        self, temp_db, blob_store, job_queue, processing_upload, make_request
    ):
        _, _, SessionFactory = temp_db
        for _ in range(3):
            _backdate(SessionFactory, "lost")
            recover_stalled_uploads(SessionFactory, blob_store, job_queue, 600)

        session = SessionFactory()
        try:
            result = submit_upload(session, blob_store, job_queue, make_request(upload_id="lost"))
        finally:
            session.close()

        assert result.status == UploadStatus.PROCESSING
        record = _record(SessionFactory, "lost")
        assert record.retry_count == 1
        assert record.recovery_count == 0

    def test_stale_pending_is_failed_and_compensated(
        self, temp_db, blob_store, job_queue, pending_upload
    ):
        _, _, SessionFactory = temp_db
        _backdate(SessionFactory, pending_upload)

        outcome = recover_stalled_uploads(SessionFactory, blob_store, job_queue, 600)

        assert outcome == {"requeued": 0, "failed": 1}
        record = _record(SessionFactory, pending_upload)
        assert record.status == UploadStatus.FAILED
        assert record.last_error == INTAKE_INTERRUPTED_REASON
        assert record.compensation_applied is True
        assert not blob_store.exists("songs/interrupted.wav")
        assert job_queue.retries == []
        assert job_queue.released == ["process-interrupted"]

    def test_fresh_rows_are_untouched(
        self, temp_db, blob_store, job_queue, processing_upload, pending_upload
    ):
        _, _, SessionFactory = temp_db

        outcome = recover_stalled_uploads(SessionFactory, blob_store, job_queue, 600)

        assert outcome == {"requeued": 0, "failed": 0}
        assert _record(SessionFactory, pending_upload).status == UploadStatus.PENDING
        assert blob_store.exists("songs/interrupted.wav")

    def test_terminal_rows_are_ignored(self, temp_db, blob_store, job_queue, processing_upload):
        _, _, SessionFactory = temp_db
        session = SessionFactory()
        try:
            mark_completed(session, find_upload(session, "lost"), "song-1", None)
            session.commit()
        finally:
            session.close()
        _backdate(SessionFactory, "lost")

        outcome = recover_stalled_uploads(SessionFactory, blob_store, job_queue, 600)

        assert outcome == {"requeued": 0, "failed": 0}


class TestPeriodicTask:
    def test_periodic_sweep_reprocesses_lost_job(self, temp_db, immediate_huey, processing_upload):
        _, _, SessionFactory = temp_db
        _backdate(SessionFactory, "lost")

        outcome = recover_stalled_uploads_task.call_local()

        assert outcome == {"requeued": 1, "failed": 0}
        record = _record(SessionFactory, "lost")
        assert record.status == UploadStatus.COMPLETED
        assert record.result_entity_id is not None
