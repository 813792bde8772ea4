"""SongFlow - Audio metadata extraction strategies.

The extractor is chosen once at startup from configuration
(SONGFLOW_METADATA_EXTRACTOR) and injected into the background processor:

- "mutagen": mutagen-based parsing (mp3, flac, m4a, wav, ...) including tags
- "wave":    stdlib wave module, WAV only
- "none":    degraded default, always returns an empty result

Extraction is best-effort. Callers go through extract_metadata_safely(),
which never raises and bounds extraction time so a corrupt file cannot
stall a worker.
"""

from __future__ import annotations

import io
import logging
import wave
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import asdict, dataclass
from typing import Any, Protocol

import mutagen

logger = logging.getLogger(__name__)


@dataclass
class ExtractedAudioMetadata:
    """Metadata extracted from raw audio bytes (best-effort).

    A zero duration means "unknown"; every other field may be None.
    """

    duration: float = 0.0
    codec: str | None = None
    bitrate: int | None = None
    sample_rate: int | None = None
    channels: int | None = None
    format: str | None = None
    title: str | None = None
    artist: str | None = None
    album: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class MetadataExtractor(Protocol):
    """Strategy interface for audio metadata extraction."""

    name: str

    def extract(self, data: bytes, content_type: str | None = None) -> ExtractedAudioMetadata:
        """Extract metadata from raw audio bytes. May raise on unreadable input."""
        ...


class NullMetadataExtractor:
    """Extractor that knows nothing; used when extraction is disabled."""

    name = "none"

    def extract(self, data: bytes, content_type: str | None = None) -> ExtractedAudioMetadata:
        return ExtractedAudioMetadata(format=_format_from_content_type(content_type))


class WaveMetadataExtractor:
    """WAV extraction using the stdlib wave module."""

    name = "wave"

    def extract(self, data: bytes, content_type: str | None = None) -> ExtractedAudioMetadata:
        with wave.open(io.BytesIO(data), "rb") as wf:
            sample_rate = wf.getframerate()
            channels = wf.getnchannels()
            sample_width = wf.getsampwidth()
            n_frames = wf.getnframes()

        duration = n_frames / sample_rate if sample_rate > 0 else 0.0
        return ExtractedAudioMetadata(
            duration=duration,
            codec="pcm",
            bitrate=sample_rate * channels * sample_width * 8,
            sample_rate=sample_rate,
            channels=channels,
            format="wav",
        )


class MutagenMetadataExtractor:
    """Extraction using mutagen's format detection and easy tag interface."""

    name = "mutagen"

    def extract(self, data: bytes, content_type: str | None = None) -> ExtractedAudioMetadata:
        audio = mutagen.File(io.BytesIO(data), easy=True)
        if audio is None:
            raise ValueError(f"Unrecognized audio format ({content_type or 'unknown type'})")

        info = audio.info
        length = getattr(info, "length", 0) or 0
        bitrate = getattr(info, "bitrate", None)

        return ExtractedAudioMetadata(
            duration=float(length),
            codec=getattr(info, "codec", None) or type(audio).__name__.lower(),
            bitrate=int(bitrate) if bitrate else None,
            sample_rate=getattr(info, "sample_rate", None),
            channels=getattr(info, "channels", None),
            format=_format_from_content_type(content_type) or type(audio).__name__.lower(),
            title=_first_tag(audio, "title"),
            artist=_first_tag(audio, "artist"),
            album=_first_tag(audio, "album"),
        )


def _first_tag(audio: Any, key: str) -> str | None:
    tags = getattr(audio, "tags", None)
    if tags is None:
        return None
    try:
        values = tags.get(key)
    except (KeyError, ValueError, TypeError):
        return None
    if not values:
        return None
    if isinstance(values, (list, tuple)):
        values = values[0]
    text = str(values).strip()
    return text or None


def _format_from_content_type(content_type: str | None) -> str | None:
    if not content_type or "/" not in content_type:
        return None
    subtype = content_type.split("/", 1)[1].lower()
    if subtype.startswith("x-"):
        subtype = subtype[2:]
    return "mp3" if subtype == "mpeg" else subtype


_EXTRACTORS: dict[str, type] = {
    NullMetadataExtractor.name: NullMetadataExtractor,
    WaveMetadataExtractor.name: WaveMetadataExtractor,
    MutagenMetadataExtractor.name: MutagenMetadataExtractor,
}


def build_metadata_extractor(name: str) -> MetadataExtractor:
    """Build the extractor strategy named in configuration.

    Args:
        name: "mutagen", "wave" or "none".

    Returns:
        A MetadataExtractor instance.

    Raises:
        ValueError: If the name is unknown.
    """
    try:
        extractor_cls = _EXTRACTORS[name.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown metadata extractor {name!r}; expected one of {sorted(_EXTRACTORS)}"
        ) from None
    return extractor_cls()


def extract_metadata_safely(
    extractor: MetadataExtractor,
    data: bytes,
    content_type: str | None = None,
    timeout_seconds: float | None = None,
) -> tuple[ExtractedAudioMetadata, bool]:
    """Run an extractor without ever raising.

    Extraction runs on a helper thread bounded by ``timeout_seconds``. On
    error or timeout the result is an empty (zero-duration) metadata object.

    Args:
        extractor: Strategy to run.
        data: Raw audio bytes.
        content_type: MIME type hint.
        timeout_seconds: Upper bound for extraction; None waits indefinitely.

    Returns:
        Tuple of (metadata, succeeded).
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="metadata-extract")
    future = executor.submit(extractor.extract, data, content_type)
    try:
        return future.result(timeout=timeout_seconds), True
    except FutureTimeoutError:
        logger.warning(
            "Metadata extraction (%s) timed out after %ss; continuing without metadata",
            extractor.name,
            timeout_seconds,
        )
    except Exception as e:
        logger.warning(
            "Metadata extraction (%s) failed: %s; continuing without metadata",
            extractor.name,
            e,
        )
    finally:
        # A hung extraction thread is abandoned, not joined
        executor.shutdown(wait=False, cancel_futures=True)

    return ExtractedAudioMetadata(format=_format_from_content_type(content_type)), False


__all__ = [
    "ExtractedAudioMetadata",
    "MetadataExtractor",
    "NullMetadataExtractor",
    "WaveMetadataExtractor",
    "MutagenMetadataExtractor",
    "build_metadata_extractor",
    "extract_metadata_safely",
]
