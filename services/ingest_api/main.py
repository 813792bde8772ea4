"""SongFlow - Upload API FastAPI application.

FastAPI service for song upload intake and status polling.

POST /v1/uploads accepts a multipart submission, stores the raw bytes and
queues background processing, then answers 202 with a pollable upload id.
GET /v1/uploads/{upload_id}/status returns the upload's current state.

The caller identity comes from the X-Owner-Id header, set by the upstream
authentication layer.

Run with:
    uvicorn services.ingest_api.main:app --reload  # dev server only
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, File, Form, Header, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from songflow import runtime
from songflow.blobstore import BlobStore
from songflow.errors import UploadError, UploadErrorCode
from songflow.huey_app import JobQueue, get_job_queue
from songflow.schemas import (
    UploadAcceptedResponse,
    UploadedFile,
    UploadErrorResponse,
    UploadRequest,
    UploadStatusResponse,
)
from services.ingest_api.service import get_upload_status, submit_upload

logger = logging.getLogger(__name__)

# --- Database Setup ---

# Module-level session factory (initialized on startup)
_session_factory = None


def get_session_factory():
    """Get the session factory.

    Raises:
        RuntimeError: If session factory not initialized (app lifespan not invoked).
    """
    global _session_factory
    if _session_factory is None:
        raise RuntimeError("Session factory not initialized. App lifespan not invoked?")
    return _session_factory


def get_db_session():
    """Dependency that provides a database session."""
    SessionFactory = get_session_factory()
    session = SessionFactory()
    try:
        yield session
    finally:
        session.close()


def get_blob_store() -> BlobStore:
    """Dependency that provides the blob store."""
    return runtime.get_blob_store()


def get_queue() -> JobQueue:
    """Dependency that provides the processing job queue."""
    return get_job_queue()


# --- Lifespan ---


def _cleanup_orphan_temp_files_safe() -> None:
    """Clean up orphan temp files left by interrupted blob writes (best-effort).

    Never crashes startup.
    """
    from songflow.config import BLOB_DIR
    from songflow.utils.atomic_io import cleanup_orphan_temp_files

    try:
        if BLOB_DIR.exists():
            total_cleaned = cleanup_orphan_temp_files(BLOB_DIR)
            if total_cleaned > 0:
                logger.info("Startup cleanup: removed %d orphan temp files", total_cleaned)
    except Exception:
        # Best-effort: never crash startup
        logger.warning("Startup cleanup failed (non-fatal)", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler.

    Initializes the database on startup and cleans up orphan temp files.
    """
    global _session_factory
    if _session_factory is None:
        _session_factory = runtime.get_session_factory()

    _cleanup_orphan_temp_files_safe()

    yield


# --- FastAPI App ---


app = FastAPI(
    title="SongFlow - Upload API",
    description="Idempotent asynchronous song upload intake and status.",
    version="0.1.0",
    lifespan=lifespan,
)


# --- Error Handling ---


_STATUS_BY_ERROR_CODE = {
    UploadErrorCode.VALIDATION_FAILED: 400,
    UploadErrorCode.UNSUPPORTED_MEDIA_TYPE: 415,
    UploadErrorCode.PAYLOAD_TOO_LARGE: 413,
    UploadErrorCode.STORAGE_FAILED: 400,
    UploadErrorCode.ENQUEUE_FAILED: 400,
    UploadErrorCode.UPLOAD_NOT_FOUND: 404,
    UploadErrorCode.UPLOAD_CONFLICT: 409,
    UploadErrorCode.UNAUTHENTICATED: 401,
}


def error_code_to_status(error_code: str) -> int:
    """Map error codes to HTTP status codes.

    Intake storage and enqueue failures are client errors carrying the
    upload id, so the caller can resubmit under it. Unknown codes -> 500.
    """
    return _STATUS_BY_ERROR_CODE.get(error_code, 500)


def make_error_response(
    error_code: str, error_message: str, upload_id: str | None = None
) -> JSONResponse:
    """Create a JSON error response."""
    return JSONResponse(
        status_code=error_code_to_status(error_code),
        content=UploadErrorResponse(
            error_code=error_code,
            error_message=error_message,
            upload_id=upload_id,
        ).model_dump(),
    )


async def _read_upload(file: UploadFile | None) -> UploadedFile | None:
    if file is None:
        return None
    data = await file.read()
    return UploadedFile(data=data, content_type=file.content_type, filename=file.filename)


# --- Endpoints ---


@app.post(
    "/v1/uploads",
    status_code=202,
    response_model=UploadAcceptedResponse,
    responses={
        400: {"model": UploadErrorResponse, "description": "Invalid request or intake failure"},
        401: {"model": UploadErrorResponse, "description": "Missing caller identity"},
        409: {"model": UploadErrorResponse, "description": "Upload id owned by another caller"},
        413: {"model": UploadErrorResponse, "description": "File too large"},
        415: {"model": UploadErrorResponse, "description": "Unsupported media type"},
        500: {"model": UploadErrorResponse, "description": "Unexpected failure"},
    },
    summary="Submit a song upload",
    description="Accept an audio file (and optional cover) for asynchronous processing.",
)
async def create_upload(
    session: Annotated[Session, Depends(get_db_session)],
    blob_store: Annotated[BlobStore, Depends(get_blob_store)],
    queue: Annotated[JobQueue, Depends(get_queue)],
    audio: Annotated[UploadFile | None, File(description="Audio file")] = None,
    cover: Annotated[UploadFile | None, File(description="Optional cover image")] = None,
    title: Annotated[str | None, Form(description="Song title")] = None,
    artist_id: Annotated[str | None, Form(description="Artist id")] = None,
    upload_id: Annotated[str | None, Form(description="Optional idempotency key")] = None,
    album_id: Annotated[str | None, Form(description="Optional album id")] = None,
    genre_id: Annotated[str | None, Form(description="Optional genre id")] = None,
    status: Annotated[str | None, Form(description="Requested lifecycle status")] = None,
    duration: Annotated[float | None, Form(description="Duration hint in seconds")] = None,
    x_owner_id: Annotated[str | None, Header(description="Caller identity")] = None,
):
    """Submit a song upload.

    Idempotency rule:
    - A repeated upload_id returns the existing upload (is_duplicate=true)
      without storing or queueing anything.
    - A repeated upload_id on a failed upload retries it.
    """
    if not x_owner_id or not x_owner_id.strip():
        return make_error_response(UploadErrorCode.UNAUTHENTICATED, "Missing X-Owner-Id header")

    request = UploadRequest(
        owner_id=x_owner_id,
        title=title,
        artist_id=artist_id,
        audio=await _read_upload(audio),
        cover=await _read_upload(cover),
        upload_id=upload_id,
        album_id=album_id,
        genre_id=genre_id,
        requested_status=status,
        duration=duration,
    )

    try:
        # Sync DB and blob I/O runs in the threadpool
        result = await run_in_threadpool(submit_upload, session, blob_store, queue, request)
    except UploadError as e:
        return make_error_response(e.error_code, e.message, e.upload_id)
    except Exception:
        # Log full exception server-side, return generic message to client
        logger.exception("Unexpected error during upload intake")
        return make_error_response(
            UploadErrorCode.UPLOAD_FAILED,
            "An unexpected error occurred during upload",
        )

    return UploadAcceptedResponse(
        upload_id=result.upload_id,
        status=result.status,
        job_id=result.job_id,
        check_status_url=f"/v1/uploads/{result.upload_id}/status",
        message=result.message,
        is_duplicate=result.is_duplicate,
    )


@app.get(
    "/v1/uploads/{upload_id}/status",
    response_model=UploadStatusResponse,
    responses={
        401: {"model": UploadErrorResponse, "description": "Missing caller identity"},
        404: {"model": UploadErrorResponse, "description": "Upload not found"},
    },
    summary="Get upload status",
)
def read_upload_status(
    upload_id: str,
    session: Annotated[Session, Depends(get_db_session)],
    x_owner_id: Annotated[str | None, Header(description="Caller identity")] = None,
):
    """Return the upload record (internal fields omitted) for its owner."""
    if not x_owner_id or not x_owner_id.strip():
        return make_error_response(UploadErrorCode.UNAUTHENTICATED, "Missing X-Owner-Id header")

    try:
        record = get_upload_status(session, upload_id, x_owner_id.strip())
    except UploadError as e:
        return make_error_response(e.error_code, e.message, e.upload_id)

    return UploadStatusResponse.model_validate(record)


@app.get("/health", summary="Health check")
def health_check():
    """Simple health check endpoint."""
    return {"status": "ok"}


# --- For testing: allow overriding session factory ---


def override_session_factory(factory):
    """Override the session factory for testing."""
    global _session_factory
    _session_factory = factory
