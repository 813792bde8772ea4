"""SongFlow - Error taxonomy.

Error codes and exception types shared by intake, processing and the HTTP
layer. Every exception carries a stable ``error_code`` plus a human-readable
``message`` (the text persisted as ``last_error`` on failed uploads).
"""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy.exc import OperationalError


class UploadErrorCode(StrEnum):
    """Error codes for the upload pipeline."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    UNSUPPORTED_MEDIA_TYPE = "UNSUPPORTED_MEDIA_TYPE"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    STORAGE_FAILED = "STORAGE_FAILED"
    BLOB_NOT_FOUND = "BLOB_NOT_FOUND"
    ENQUEUE_FAILED = "ENQUEUE_FAILED"
    REFERENCE_NOT_FOUND = "REFERENCE_NOT_FOUND"
    UPLOAD_NOT_FOUND = "UPLOAD_NOT_FOUND"
    UPLOAD_CONFLICT = "UPLOAD_CONFLICT"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    UPLOAD_FAILED = "UPLOAD_FAILED"


class UploadError(Exception):
    """Base exception for upload pipeline errors."""

    def __init__(self, error_code: str, message: str, upload_id: str | None = None):
        self.error_code = error_code
        self.message = message
        self.upload_id = upload_id
        super().__init__(message)


# --- Intake validation (rejected before any side effect) ---


class UploadValidationError(UploadError):
    """Missing or malformed submission field."""

    def __init__(self, message: str):
        super().__init__(UploadErrorCode.VALIDATION_FAILED, message)


class UnsupportedMediaTypeError(UploadError):
    """File MIME type is not on the allow-list."""

    def __init__(self, field_name: str, content_type: str | None, allowed: frozenset[str]):
        super().__init__(
            UploadErrorCode.UNSUPPORTED_MEDIA_TYPE,
            f"Content type not allowed for '{field_name}': {content_type}. "
            f"Allowed types: {', '.join(sorted(allowed))}",
        )


class PayloadTooLargeError(UploadError):
    """File exceeds its size ceiling."""

    def __init__(self, field_name: str, size: int, limit: int):
        super().__init__(
            UploadErrorCode.PAYLOAD_TOO_LARGE,
            f"File '{field_name}' is {size} bytes, exceeding the {limit // (1024 * 1024)}MB limit",
        )


# --- Storage ---


class StorageError(UploadError):
    """Blob store read/write/delete failure."""

    def __init__(self, message: str, upload_id: str | None = None):
        super().__init__(UploadErrorCode.STORAGE_FAILED, message, upload_id)


class BlobNotFoundError(StorageError):
    """Referenced blob does not exist in the blob store."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Blob not found: {key}")
        self.error_code = UploadErrorCode.BLOB_NOT_FOUND


class EnqueueError(UploadError):
    """Processing job could not be enqueued."""

    def __init__(self, message: str, upload_id: str | None = None):
        super().__init__(UploadErrorCode.ENQUEUE_FAILED, message, upload_id)


# --- Processing ---


class ReferenceNotFoundError(UploadError):
    """Referenced artist, album or genre does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            UploadErrorCode.REFERENCE_NOT_FOUND, f"{entity.capitalize()} not found: {entity_id}"
        )


class TransientProcessingError(UploadError):
    """Infrastructure hiccup worth another attempt."""

    def __init__(self, message: str):
        super().__init__(UploadErrorCode.TRANSIENT_FAILURE, message)


# --- Upload records ---


class UploadNotFoundError(UploadError):
    """No upload record matches the lookup."""

    def __init__(self, upload_id: str):
        super().__init__(
            UploadErrorCode.UPLOAD_NOT_FOUND, f"Upload not found: {upload_id}", upload_id
        )


class UploadConflictError(UploadError):
    """Upload id is already in use by another principal."""

    def __init__(self, upload_id: str):
        super().__init__(
            UploadErrorCode.UPLOAD_CONFLICT,
            f"Upload id already in use: {upload_id}",
            upload_id,
        )


class InvalidTransitionError(UploadError):
    """Requested lifecycle transition is not allowed."""

    def __init__(self, upload_id: str, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(
            UploadErrorCode.INVALID_TRANSITION,
            f"Upload {upload_id} cannot move from {current} to {requested}",
            upload_id,
        )


def is_retryable(exc: BaseException) -> bool:
    """Whether a processing failure should be retried by the job queue.

    Reference errors and missing blobs fail identically on every attempt and
    are terminal. Storage hiccups, database timeouts/locks and explicit
    transient errors are retried.
    """
    if isinstance(exc, BlobNotFoundError):
        return False
    if isinstance(exc, (TransientProcessingError, StorageError)):
        return True
    if isinstance(exc, (OperationalError, TimeoutError)):
        return True
    return False


__all__ = [
    "UploadErrorCode",
    "UploadError",
    "UploadValidationError",
    "UnsupportedMediaTypeError",
    "PayloadTooLargeError",
    "StorageError",
    "BlobNotFoundError",
    "EnqueueError",
    "ReferenceNotFoundError",
    "TransientProcessingError",
    "UploadNotFoundError",
    "UploadConflictError",
    "InvalidTransitionError",
    "is_retryable",
]
