"""SongFlow - SQLAlchemy ORM models.

Database tables:
1. song_uploads - upload tracking records (idempotency key + lifecycle)
2. songs - catalog records created by background processing
3. artists, albums, genres - reference entities validated during processing
"""

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def new_entity_id() -> str:
    """Generate a catalog entity identifier (uuid4 string)."""
    return str(uuid.uuid4())


def _enum_values(enum_cls: type[StrEnum]) -> list[str]:
    """Persist enum values ("pending") rather than member names ("PENDING")."""
    return [member.value for member in enum_cls]


class UploadStatus(StrEnum):
    """Lifecycle states of an upload tracking record."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SongStatus(StrEnum):
    """Publication state of a catalog song."""

    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class UploadRecord(Base):
    """Tracking row for one upload attempt, keyed by the idempotency key.

    Single source of truth for upload lifecycle state. Rows are never
    deleted by the pipeline.
    """

    __tablename__ = "song_uploads"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Idempotency key (client-supplied or server-generated)
    upload_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)

    # Submitting principal, scopes status queries
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)

    status: Mapped[UploadStatus] = mapped_column(
        Enum(UploadStatus, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=UploadStatus.PENDING,
    )

    # Blob store references, set once intake storage writes succeed
    audio_blob_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cover_blob_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    audio_content_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cover_content_type: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Created catalog record, set only when status=completed
    result_entity_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    # Caller-supplied creation parameters (processing is replayable from these)
    requested_title: Mapped[str] = mapped_column(String(200), nullable=False)
    requested_artist_id: Mapped[str] = mapped_column(String(36), nullable=False)
    requested_album_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    requested_genre_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    requested_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    requested_duration: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Populated by the background processor
    extracted_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    # Failure reason, cleared on retry
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Queue job identifier for correlation
    job_id: Mapped[str | None] = mapped_column(String(160), nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Times the recovery sweep re-queued the current attempt
    recovery_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    compensation_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        Index("ix_uploads_owner_status", "owner_id", "status"),
        Index("ix_uploads_status_updated", "status", "updated_at"),
        Index("ix_uploads_created_at", "created_at"),
    )


class Artist(Base):
    """Artist reference entity."""

    __tablename__ = "artists"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_entity_id)
    stage_name: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class Album(Base):
    """Album reference entity."""

    __tablename__ = "albums"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_entity_id)
    artist_id: Mapped[str] = mapped_column(String(36), ForeignKey("artists.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class Genre(Base):
    """Genre reference entity."""

    __tablename__ = "genres"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_entity_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)


class Song(Base):
    """Catalog record created by background processing of an upload."""

    __tablename__ = "songs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_entity_id)

    artist_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("artists.id"), nullable=False, index=True
    )
    album_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("albums.id"), nullable=True
    )
    genre_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("genres.id"), nullable=True
    )

    title: Mapped[str] = mapped_column(String(200), nullable=False)

    # Duration in whole seconds
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    file_url: Mapped[str] = mapped_column(Text, nullable=False)
    cover_art_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[SongStatus] = mapped_column(
        Enum(SongStatus, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=SongStatus.DRAFT,
    )

    # Counters start at zero
    total_streams: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_likes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_shares: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Originating upload; unique so redelivered jobs cannot create a second song
    upload_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
