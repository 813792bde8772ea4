"""SongFlow - Configuration constants.

Plain module-level configuration resolved from environment variables once at
import time. No external config libraries. All paths are relative to the
repository root by default.
"""

import os
from pathlib import Path

# Repository root (parent of songflow/)
REPO_ROOT = Path(__file__).parent.parent.resolve()


def _get_path(name: str, default: Path) -> Path:
    """Get a directory path from the environment or use the default."""
    env_val = os.environ.get(name)
    if env_val:
        return Path(env_val).expanduser().resolve()
    return default


def _get_positive_int(name: str, default: int) -> int:
    """Get a positive integer from the environment or use the default.

    Invalid or non-positive values fall back to the default.

    Args:
        name: Environment variable name.
        default: Value used when the variable is unset or invalid.

    Returns:
        The resolved integer.
    """
    env_val = os.environ.get(name)
    if env_val:
        try:
            value = int(env_val)
            if value > 0:
                return value
        except ValueError:
            pass
    return default


# Data directories
DATA_DIR = _get_path("SONGFLOW_DATA_DIR", REPO_ROOT / "data")
BLOB_DIR = DATA_DIR / "blobs"

# Database path
DB_PATH = DATA_DIR / "songflow.db"

# Queue directory and Huey database path
QUEUE_DIR = DATA_DIR / "queue"
HUEY_DB_PATH = QUEUE_DIR / "huey.db"

# Base URL under which stored blobs are publicly served
PUBLIC_BASE_URL = os.environ.get("SONGFLOW_PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")

# Metadata extractor strategy: "mutagen", "wave" or "none"
METADATA_EXTRACTOR = os.environ.get("SONGFLOW_METADATA_EXTRACTOR", "mutagen").strip().lower()

# Upper bound for a single extraction so a corrupt file cannot stall a worker
EXTRACTION_TIMEOUT_SECONDS = _get_positive_int("SONGFLOW_EXTRACTION_TIMEOUT_SEC", 30)

# Intake limits, enforced before any storage write
MAX_AUDIO_SIZE_BYTES = 100 * 1024 * 1024  # 100 MB
MAX_COVER_SIZE_BYTES = 5 * 1024 * 1024  # 5 MB

ALLOWED_AUDIO_TYPES = frozenset(
    {
        "audio/mpeg",
        "audio/mp3",
        "audio/wav",
        "audio/x-wav",
        "audio/m4a",
        "audio/x-m4a",
        "audio/flac",
        "audio/x-flac",
    }
)

ALLOWED_IMAGE_TYPES = frozenset(
    {
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/webp",
        "image/gif",
    }
)

# Lifecycle hints a caller may request for the created song
ALLOWED_REQUESTED_STATUSES = ("draft", "pending", "published", "rejected")

# Retry policy for background processing
# Total attempts = initial attempt + 2 retries; delays grow exponentially (5s, 10s)
MAX_ATTEMPTS_TOTAL = 3
RETRY_BACKOFF_BASE_SECONDS = 5

# PROCESSING/PENDING rows untouched for this long are picked up by the recovery sweep
STALE_UPLOAD_SECONDS = _get_positive_int("SONGFLOW_STALE_UPLOAD_SEC", 1800)


def retry_delay_seconds(attempt: int) -> int:
    """Backoff delay before the attempt that follows ``attempt``.

    Args:
        attempt: The 1-based attempt number that just failed.

    Returns:
        Delay in seconds (5, 10, 20, ...).
    """
    return RETRY_BACKOFF_BASE_SECONDS * 2 ** (max(attempt, 1) - 1)
