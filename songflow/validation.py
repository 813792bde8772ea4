"""SongFlow - Intake validation.

Synchronous checks on a submission that run before any side effect: no blob
is written and no upload record is created for a request that fails here.
"""

from __future__ import annotations

import math

from songflow import config
from songflow.errors import PayloadTooLargeError, UnsupportedMediaTypeError, UploadValidationError
from songflow.schemas import UploadedFile, UploadRequest


def _normalize_content_type(content_type: str | None) -> str | None:
    if not content_type:
        return None
    # Drop parameters such as "; charset=binary"
    return content_type.split(";", 1)[0].strip().lower() or None


def validate_audio_file(file: UploadedFile | None, field_name: str = "audio") -> None:
    """Validate the audio part: present, non-empty, allowed type, within size.

    Raises:
        UploadValidationError: If the file is missing or empty.
        UnsupportedMediaTypeError: If the MIME type is not allowed.
        PayloadTooLargeError: If the file exceeds MAX_AUDIO_SIZE_BYTES.
    """
    if file is None:
        raise UploadValidationError(f"An audio file is required in field '{field_name}'")
    if not file.data:
        raise UploadValidationError(f"The audio file in '{field_name}' is empty")

    content_type = _normalize_content_type(file.content_type)
    if content_type not in config.ALLOWED_AUDIO_TYPES:
        raise UnsupportedMediaTypeError(field_name, file.content_type, config.ALLOWED_AUDIO_TYPES)

    if file.size > config.MAX_AUDIO_SIZE_BYTES:
        raise PayloadTooLargeError(field_name, file.size, config.MAX_AUDIO_SIZE_BYTES)


def validate_cover_file(file: UploadedFile, field_name: str = "cover") -> None:
    """Validate the optional cover image part.

    Raises:
        UploadValidationError: If the file is empty.
        UnsupportedMediaTypeError: If the MIME type is not allowed.
        PayloadTooLargeError: If the file exceeds MAX_COVER_SIZE_BYTES.
    """
    if not file.data:
        raise UploadValidationError(f"The image file in '{field_name}' is empty")

    content_type = _normalize_content_type(file.content_type)
    if content_type not in config.ALLOWED_IMAGE_TYPES:
        raise UnsupportedMediaTypeError(field_name, file.content_type, config.ALLOWED_IMAGE_TYPES)

    if file.size > config.MAX_COVER_SIZE_BYTES:
        raise PayloadTooLargeError(field_name, file.size, config.MAX_COVER_SIZE_BYTES)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def validate_upload_request(request: UploadRequest) -> UploadRequest:
    """Validate a submission and return it with text fields normalized.

    Text fields are stripped; blank optional fields become None and content
    types lose their parameters.

    Args:
        request: The raw submission.

    Returns:
        A normalized copy-in-place of the request.

    Raises:
        UploadValidationError, UnsupportedMediaTypeError, PayloadTooLargeError
    """
    request.owner_id = _clean(request.owner_id)
    request.title = _clean(request.title)
    request.artist_id = _clean(request.artist_id)
    request.upload_id = _clean(request.upload_id)
    request.album_id = _clean(request.album_id)
    request.genre_id = _clean(request.genre_id)
    request.requested_status = _clean(request.requested_status)

    if request.owner_id is None:
        raise UploadValidationError("An owner id is required")
    if request.title is None:
        raise UploadValidationError("Field 'title' is required")
    if len(request.title) > 200:
        raise UploadValidationError("Field 'title' must be at most 200 characters")
    if request.artist_id is None:
        raise UploadValidationError("Field 'artist_id' is required")
    if request.upload_id is not None and len(request.upload_id) > 128:
        raise UploadValidationError("Field 'upload_id' must be at most 128 characters")

    if request.requested_status is not None:
        request.requested_status = request.requested_status.lower()
        if request.requested_status not in config.ALLOWED_REQUESTED_STATUSES:
            raise UploadValidationError(
                f"Field 'status' must be one of: {', '.join(config.ALLOWED_REQUESTED_STATUSES)}"
            )

    if request.duration is not None and (
        not math.isfinite(request.duration) or request.duration < 0
    ):
        raise UploadValidationError("Field 'duration' must be a finite, non-negative number")

    validate_audio_file(request.audio)
    if request.audio is not None:
        request.audio.content_type = _normalize_content_type(request.audio.content_type)

    if request.cover is not None:
        validate_cover_file(request.cover)
        request.cover.content_type = _normalize_content_type(request.cover.content_type)

    return request
