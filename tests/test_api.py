"""Tests for the upload HTTP API."""

import pytest
from sqlalchemy import select

from songflow import config
from songflow.models import Song, SongStatus, UploadRecord

OWNER = {"X-Owner-Id": "user-123"}


def _post(test_client, wav_bytes, headers=OWNER, files=None, **data):
    form = {"title": "Test"}
    form.update({k: v for k, v in data.items() if v is not None})
    if files is None:
        files = {"audio": ("song.wav", wav_bytes, "audio/wav")}
    return test_client.post("/v1/uploads", data=form, files=files, headers=headers)


def _blob_files(blob_store):
    if not blob_store.root.exists():
        return []
    return [p for p in blob_store.root.rglob("*") if p.is_file()]


class TestHealth:
    def test_health(self, client):
        test_client, _ = client
        response = test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestSubmit:
    """Tests for POST /v1/uploads."""

    def test_accepted(self, client, seeded_refs, wav_bytes, job_queue):
        test_client, _ = client

        response = _post(
            test_client, wav_bytes, artist_id=seeded_refs["artist_id"], upload_id="api-1"
        )

        assert response.status_code == 202
        body = response.json()
        assert body["upload_id"] == "api-1"
        assert body["status"] == "processing"
        assert body["job_id"] == "process-api-1"
        assert body["check_status_url"] == "/v1/uploads/api-1/status"
        assert body["is_duplicate"] is False
        assert len(job_queue.enqueued) == 1

    def test_optional_fields_are_recorded(self, client, seeded_refs, wav_bytes):
        test_client, SessionFactory = client

        response = _post(
            test_client,
            wav_bytes,
            files={
                "audio": ("song.wav", wav_bytes, "audio/wav"),
                "cover": ("cover.png", b"\x89PNG", "image/png"),
            },
            artist_id=seeded_refs["artist_id"],
            album_id=seeded_refs["album_id"],
            genre_id=seeded_refs["genre_id"],
            status="pending",
            duration="187.4",
            upload_id="api-opt",
        )

        assert response.status_code == 202
        session = SessionFactory()
        try:
            record = session.execute(
                select(UploadRecord).where(UploadRecord.upload_id == "api-opt")
            ).scalar_one()
            assert record.requested_album_id == seeded_refs["album_id"]
            assert record.requested_genre_id == seeded_refs["genre_id"]
            assert record.requested_status == "pending"
            assert record.requested_duration == pytest.approx(187.4)
            assert record.cover_blob_key is not None
        finally:
            session.close()

    def test_missing_owner_is_unauthenticated(self, client, seeded_refs, wav_bytes):
        test_client, _ = client

        response = _post(test_client, wav_bytes, headers={}, artist_id=seeded_refs["artist_id"])

        assert response.status_code == 401
        assert response.json()["error_code"] == "UNAUTHENTICATED"

    def test_missing_title(self, client, seeded_refs, wav_bytes, blob_store):
        test_client, _ = client

        response = test_client.post(
            "/v1/uploads",
            data={"artist_id": seeded_refs["artist_id"]},
            files={"audio": ("song.wav", wav_bytes, "audio/wav")},
            headers=OWNER,
        )

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error_code"] == "VALIDATION_FAILED"
        assert _blob_files(blob_store) == []

    def test_non_finite_duration_rejected(self, client, seeded_refs, wav_bytes, blob_store):
        test_client, _ = client

        response = _post(
            test_client, wav_bytes, artist_id=seeded_refs["artist_id"], duration="inf"
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_FAILED"
        assert _blob_files(blob_store) == []

    def test_missing_audio(self, client, seeded_refs):
        test_client, _ = client

        response = test_client.post(
            "/v1/uploads",
            data={"title": "Test", "artist_id": seeded_refs["artist_id"]},
            headers=OWNER,
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_FAILED"

    def test_unsupported_media_type(self, client, seeded_refs, wav_bytes):
        test_client, _ = client

        response = _post(
            test_client,
            wav_bytes,
            files={"audio": ("clip.mp4", b"\x00\x00", "video/mp4")},
            artist_id=seeded_refs["artist_id"],
        )

        assert response.status_code == 415
        assert response.json()["error_code"] == "UNSUPPORTED_MEDIA_TYPE"

    def test_payload_too_large(self, client, seeded_refs, wav_bytes, monkeypatch):
        test_client, _ = client
        monkeypatch.setattr(config, "MAX_AUDIO_SIZE_BYTES", 16)

        response = _post(test_client, wav_bytes, artist_id=seeded_refs["artist_id"])

        assert response.status_code == 413
        assert response.json()["error_code"] == "PAYLOAD_TOO_LARGE"

    def test_duplicate_submission(self, client, seeded_refs, wav_bytes, job_queue):
        test_client, _ = client
        first = _post(test_client, wav_bytes, artist_id=seeded_refs["artist_id"], upload_id="d1")
        second = _post(test_client, wav_bytes, artist_id=seeded_refs["artist_id"], upload_id="d1")

        assert first.status_code == 202
        assert second.status_code == 202
        assert second.json()["is_duplicate"] is True
        assert second.json()["job_id"] == first.json()["job_id"]
        assert len(job_queue.enqueued) == 1

    def test_upload_id_owned_by_other_caller(self, client, seeded_refs, wav_bytes):
        test_client, _ = client
        _post(test_client, wav_bytes, artist_id=seeded_refs["artist_id"], upload_id="c1")

        response = _post(
            test_client,
            wav_bytes,
            headers={"X-Owner-Id": "intruder"},
            artist_id=seeded_refs["artist_id"],
            upload_id="c1",
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "UPLOAD_CONFLICT"

    def test_enqueue_failure_returns_upload_id(
        self, client, seeded_refs, wav_bytes, job_queue, blob_store
    ):
        test_client, _ = client
        job_queue.fail_with = "queue unavailable"

        response = _post(test_client, wav_bytes, artist_id=seeded_refs["artist_id"], upload_id="q1")

        assert response.status_code == 400
        body = response.json()
        assert body["error_code"] == "ENQUEUE_FAILED"
        assert body["upload_id"] == "q1"
        assert _blob_files(blob_store) == []


class TestStatus:
    """Tests for GET /v1/uploads/{upload_id}/status."""

    def test_owner_reads_status(self, client, seeded_refs, wav_bytes):
        test_client, _ = client
        _post(test_client, wav_bytes, artist_id=seeded_refs["artist_id"], upload_id="s1")

        response = test_client.get("/v1/uploads/s1/status", headers=OWNER)

        assert response.status_code == 200
        body = response.json()
        assert body["upload_id"] == "s1"
        assert body["owner_id"] == "user-123"
        assert body["status"] == "processing"
        assert body["requested_title"] == "Test"
        assert body["requested_artist_id"] == seeded_refs["artist_id"]
        assert body["retry_count"] == 0

    def test_internal_fields_are_not_exposed(self, client, seeded_refs, wav_bytes):
        test_client, _ = client
        _post(test_client, wav_bytes, artist_id=seeded_refs["artist_id"], upload_id="s2")

        body = test_client.get("/v1/uploads/s2/status", headers=OWNER).json()

        for field in ("audio_blob_key", "cover_blob_key", "compensation_applied"):
            assert field not in body

    def test_other_owner_gets_404(self, client, seeded_refs, wav_bytes):
        test_client, _ = client
        _post(test_client, wav_bytes, artist_id=seeded_refs["artist_id"], upload_id="s3")

        response = test_client.get("/v1/uploads/s3/status", headers={"X-Owner-Id": "other"})

        assert response.status_code == 404
        assert response.json()["error_code"] == "UPLOAD_NOT_FOUND"

    def test_unknown_upload_404(self, client):
        test_client, _ = client
        response = test_client.get("/v1/uploads/nope/status", headers=OWNER)
        assert response.status_code == 404

    def test_status_requires_owner(self, client):
        test_client, _ = client
        response = test_client.get("/v1/uploads/any/status")
        assert response.status_code == 401


class TestEndToEnd:
    """Uploads processed synchronously through the Huey task."""

    def test_upload_completes_with_song(self, e2e_client, seeded_refs, wav_factory):
        test_client, SessionFactory = e2e_client

        response = _post(
            test_client,
            wav_factory(seconds=2.0),
            artist_id=seeded_refs["artist_id"],
            status="published",
            upload_id="e2e-1",
        )
        assert response.status_code == 202
        assert response.json()["status"] == "completed"

        body = test_client.get("/v1/uploads/e2e-1/status", headers=OWNER).json()
        assert body["status"] == "completed"
        assert body["extracted_metadata"]["duration"] == pytest.approx(2.0)
        assert body["last_error"] is None

        session = SessionFactory()
        try:
            song = session.get(Song, body["result_entity_id"])
            assert song.duration == 2
            assert song.status == SongStatus.PUBLISHED
            assert song.upload_id == "e2e-1"
            assert song.file_url.startswith("http://testserver/uploads/songs/")
        finally:
            session.close()

    def test_bad_artist_fails_and_cleans_blobs(
        self, e2e_client, seeded_refs, wav_bytes, blob_store
    ):
        test_client, SessionFactory = e2e_client

        response = _post(test_client, wav_bytes, artist_id="missing-artist", upload_id="e2e-2")
        assert response.status_code == 202

        body = test_client.get("/v1/uploads/e2e-2/status", headers=OWNER).json()
        assert body["status"] == "failed"
        assert body["last_error"] == "Artist not found: missing-artist"
        assert _blob_files(blob_store) == []

        session = SessionFactory()
        try:
            assert session.execute(select(Song)).first() is None
        finally:
            session.close()

    def test_corrupt_audio_completes_with_zero_duration(self, e2e_client, seeded_refs):
        test_client, SessionFactory = e2e_client

        response = _post(
            test_client,
            b"",
            files={"audio": ("broken.mp3", b"not really audio", "audio/mpeg")},
            artist_id=seeded_refs["artist_id"],
            upload_id="e2e-3",
        )
        assert response.status_code == 202

        body = test_client.get("/v1/uploads/e2e-3/status", headers=OWNER).json()
        assert body["status"] == "completed"

        session = SessionFactory()
        try:
            song = session.get(Song, body["result_entity_id"])
            assert song.duration == 0
            assert song.status == SongStatus.DRAFT
        finally:
            session.close()

    def test_failed_upload_can_be_resubmitted(self, e2e_client, seeded_refs, wav_bytes):
        test_client, _ = e2e_client
        _post(test_client, wav_bytes, artist_id="missing-artist", upload_id="e2e-4")

        response = _post(
            test_client, wav_bytes, artist_id=seeded_refs["artist_id"], upload_id="e2e-4"
        )

        assert response.status_code == 202
        assert response.json()["status"] == "completed"
        body = test_client.get("/v1/uploads/e2e-4/status", headers=OWNER).json()
        assert body["retry_count"] == 1
