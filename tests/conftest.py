"""Shared pytest fixtures for SongFlow tests.

This module contains common fixtures used across multiple test files,
reducing duplication and improving test maintainability.
"""

import io
import os
import tempfile
import wave
from pathlib import Path

# Keep the default data/queue directories out of the repository
os.environ.setdefault("SONGFLOW_DATA_DIR", tempfile.mkdtemp(prefix="songflow-test-"))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from songflow import runtime  # noqa: E402
from songflow.blobstore import LocalBlobStore  # noqa: E402
from songflow.db import init_db  # noqa: E402
from songflow.errors import EnqueueError  # noqa: E402
from songflow.huey_app import get_job_queue, huey  # noqa: E402
from songflow.metadata import WaveMetadataExtractor  # noqa: E402
from songflow.models import Album, Artist, Genre  # noqa: E402
from songflow.schemas import UploadedFile, UploadRequest  # noqa: E402
from services.ingest_api.main import (  # noqa: E402
    app,
    get_blob_store,
    get_db_session,
    get_queue,
    override_session_factory,
)

_OWNER_ID = "user-123"


def make_wav_bytes(seconds: float = 1.0, sample_rate: int = 22050) -> bytes:
    """Build a mono 16-bit PCM WAV of silence."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(b"\x00" * int(sample_rate * seconds) * 2)
    return buf.getvalue()


class RecordingJobQueue:
    """In-memory JobQueue that records calls instead of running jobs.

    Deduplicates by job id like the Huey queue. Set ``fail_with`` to make
    enqueue raise.
    """

    def __init__(self):
        self.enqueued = []
        self.retries = []
        self.released = []
        self.outstanding = set()
        self.fail_with = None

    def enqueue(self, job):
        if self.fail_with is not None:
            raise EnqueueError(str(self.fail_with), job.upload_id)
        if job.job_id in self.outstanding:
            return False
        self.outstanding.add(job.job_id)
        self.enqueued.append(job)
        return True

    def retry(self, job, delay_seconds):
        self.retries.append((job, delay_seconds))

    def release(self, job_id):
        self.outstanding.discard(job_id)
        self.released.append(job_id)


@pytest.fixture
def temp_db():
    """Create a temporary database for testing.

    Creates an isolated SQLite database in a temporary directory.
    The database is cleaned up after the test completes.

    Yields:
        tuple: (db_path, engine, SessionFactory)
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        engine, SessionFactory = init_db(db_path)
        override_session_factory(SessionFactory)
        yield db_path, engine, SessionFactory
        engine.dispose()


@pytest.fixture
def blob_store(tmp_path):
    """Local blob store rooted in a temporary directory."""
    return LocalBlobStore(tmp_path / "blobs", "http://testserver")


@pytest.fixture
def job_queue():
    """Recording fake job queue."""
    return RecordingJobQueue()


@pytest.fixture
def seeded_refs(temp_db):
    """Seed one artist, album and genre.

    Returns:
        dict with artist_id, album_id and genre_id.
    """
    _, _, SessionFactory = temp_db
    session = SessionFactory()
    try:
        artist = Artist(stage_name="Test Artist")
        session.add(artist)
        session.flush()
        album = Album(artist_id=artist.id, title="Test Album")
        genre = Genre(name="Electronic")
        session.add_all([album, genre])
        session.commit()
        return {"artist_id": artist.id, "album_id": album.id, "genre_id": genre.id}
    finally:
        session.close()


@pytest.fixture
def wav_factory():
    """Factory building WAV bytes of a given length."""
    return make_wav_bytes


@pytest.fixture
def wav_bytes():
    """One second of silence as WAV bytes (mono, 22050 Hz)."""
    return make_wav_bytes()


@pytest.fixture
def make_request(seeded_refs, wav_bytes):
    """Factory for valid UploadRequest objects against the seeded artist."""

    def _make(**overrides):
        fields = {
            "owner_id": _OWNER_ID,
            "title": "Test",
            "artist_id": seeded_refs["artist_id"],
            "audio": UploadedFile(data=wav_bytes, content_type="audio/wav", filename="song.wav"),
        }
        fields.update(overrides)
        return UploadRequest(**fields)

    return _make


@pytest.fixture
def immediate_huey(temp_db, blob_store):
    """Run Huey tasks synchronously against the test database and blob store.

    Yields:
        HueyJobQueue bound to the immediate-mode Huey instance.
    """
    _, _, SessionFactory = temp_db
    runtime.configure(
        session_factory=SessionFactory,
        blob_store=blob_store,
        metadata_extractor=WaveMetadataExtractor(),
    )
    huey.immediate = True
    try:
        yield get_job_queue()
    finally:
        huey.immediate = False
        runtime.reset()


def _install_overrides(SessionFactory, blob_store, queue):
    def get_test_session():
        session = SessionFactory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db_session] = get_test_session
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    app.dependency_overrides[get_queue] = lambda: queue


@pytest.fixture
def client(temp_db, blob_store, job_queue):
    """Create a FastAPI test client with temp database, blob store and fake queue.

    The dependency overrides are cleared after the test completes.

    Yields:
        tuple: (test_client, SessionFactory)
    """
    _, _, SessionFactory = temp_db
    _install_overrides(SessionFactory, blob_store, job_queue)

    with TestClient(app) as test_client:
        yield test_client, SessionFactory

    app.dependency_overrides.clear()


@pytest.fixture
def e2e_client(temp_db, blob_store, immediate_huey):
    """Test client whose uploads are processed synchronously by Huey.

    Yields:
        tuple: (test_client, SessionFactory)
    """
    _, _, SessionFactory = temp_db
    _install_overrides(SessionFactory, blob_store, immediate_huey)

    with TestClient(app) as test_client:
        yield test_client, SessionFactory

    app.dependency_overrides.clear()
