"""SongFlow - Utility modules."""

from songflow.utils.atomic_io import atomic_write_bytes, cleanup_orphan_temp_files
from songflow.utils.failpoints import FailpointTriggered, maybe_fail

__all__ = [
    # atomic_io
    "atomic_write_bytes",
    "cleanup_orphan_temp_files",
    # failpoints
    "FailpointTriggered",
    "maybe_fail",
]
