"""SongFlow - Pydantic models for API validation plus internal request types.

Response models are used by FastAPI for serialization; the dataclasses at the
bottom carry a submission from the HTTP layer into the intake service.
"""

from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from songflow.models import UploadStatus


# --- Response Models ---


class UploadAcceptedResponse(BaseModel):
    """Response for an accepted (202) upload submission."""

    model_config = ConfigDict(extra="forbid")

    upload_id: str = Field(..., description="Idempotency key to poll the upload with")
    status: UploadStatus = Field(..., description="Current upload lifecycle state")
    job_id: str | None = Field(default=None, description="Processing job identifier")
    check_status_url: str = Field(..., description="Relative URL of the status endpoint")
    message: str = Field(default="", description="Human-readable summary")
    is_duplicate: bool = Field(
        default=False,
        description="True if the upload id already existed (idempotent resubmission)",
    )


class UploadErrorResponse(BaseModel):
    """Response for failed upload operations."""

    model_config = ConfigDict(extra="forbid")

    status: str = Field(default="error", description="Operation status")
    error_code: str = Field(..., description="Error taxonomy code")
    error_message: str = Field(..., description="Human-readable error description")
    upload_id: str | None = Field(
        default=None, description="Upload id, when the failure was tracked on a record"
    )


class ExtractedMetadataResponse(BaseModel):
    """Audio metadata recorded by background processing."""

    model_config = ConfigDict(extra="ignore")

    duration: float = Field(default=0.0, ge=0, description="Duration in seconds")
    codec: str | None = Field(default=None, description="Codec name")
    bitrate: int | None = Field(default=None, description="Bitrate in bits per second")
    sample_rate: int | None = Field(default=None, description="Sample rate in Hz")
    channels: int | None = Field(default=None, description="Channel count")
    format: str | None = Field(default=None, description="Container/format name")
    title: str | None = Field(default=None, description="Embedded title tag")
    artist: str | None = Field(default=None, description="Embedded artist tag")
    album: str | None = Field(default=None, description="Embedded album tag")


class UploadStatusResponse(BaseModel):
    """Upload record as exposed to its owner (internal fields omitted)."""

    model_config = ConfigDict(extra="forbid", from_attributes=True)

    upload_id: str = Field(..., description="Idempotency key")
    owner_id: str = Field(..., description="Submitting principal")
    status: UploadStatus = Field(..., description="Current upload lifecycle state")
    result_entity_id: str | None = Field(
        default=None, description="Created song id (set only when completed)"
    )
    requested_title: str = Field(..., description="Requested song title")
    requested_artist_id: str = Field(..., description="Requested artist id")
    requested_album_id: str | None = Field(default=None, description="Requested album id")
    requested_genre_id: str | None = Field(default=None, description="Requested genre id")
    requested_status: str | None = Field(default=None, description="Requested song lifecycle")
    extracted_metadata: ExtractedMetadataResponse | None = Field(
        default=None, description="Metadata extracted from the audio"
    )
    last_error: str | None = Field(default=None, description="Failure reason, if failed")
    job_id: str | None = Field(default=None, description="Processing job identifier")
    retry_count: int = Field(default=0, ge=0, description="Resubmissions after failure")
    created_at: datetime = Field(..., description="When the record was created")
    updated_at: datetime = Field(..., description="When the record last changed")


# --- Internal Data Transfer Types ---


@dataclass
class UploadedFile:
    """Raw bytes of one submitted file."""

    data: bytes
    content_type: str | None
    filename: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class UploadRequest:
    """A song submission as received by the intake service."""

    owner_id: str | None
    title: str | None
    artist_id: str | None
    audio: UploadedFile | None
    cover: UploadedFile | None = None
    upload_id: str | None = None
    album_id: str | None = None
    genre_id: str | None = None
    requested_status: str | None = None
    duration: float | None = None


__all__ = [
    "UploadAcceptedResponse",
    "UploadErrorResponse",
    "ExtractedMetadataResponse",
    "UploadStatusResponse",
    "UploadedFile",
    "UploadRequest",
]
