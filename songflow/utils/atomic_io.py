"""SongFlow - Atomic I/O utilities.

Implements the atomic publish rule used by the local blob store:
1. Write to temp path in same directory
2. Flush + best-effort fsync
3. Rename temp -> final (the publish boundary)

A blob key therefore either resolves to complete bytes or does not exist.
Partial writes only affect the temp file, which the startup sweep removes.

Failpoints:
- ATOMIC_WRITE_AFTER_TMP_WRITE: After writing to temp file, before fsync
- ATOMIC_WRITE_AFTER_FSYNC_BEFORE_RENAME: After fsync, before atomic rename
"""

import os
from pathlib import Path

from songflow.utils.failpoints import maybe_fail

TEMP_SUFFIX = ".tmp"


def temp_path_for(final_path: Path, temp_suffix: str = TEMP_SUFFIX) -> Path:
    """Sibling temp path for ``final_path`` (e.g. a.mp3 -> a.mp3.tmp)."""
    return final_path.with_name(final_path.name + temp_suffix)


def _write_fully(fd: int, data: bytes) -> None:
    # os.write may write fewer bytes than asked
    view = memoryview(data)
    while view:
        try:
            written = os.write(fd, view)
        except InterruptedError:
            continue
        if written == 0:
            raise OSError("os.write() made no progress")
        view = view[written:]


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except OSError:
        pass


def atomic_write_bytes(
    final_path: str | Path,
    data: bytes,
    temp_suffix: str = TEMP_SUFFIX,
) -> None:
    """Publish ``data`` at ``final_path`` all-or-nothing.

    A leftover temp file from an interrupted earlier write is overwritten.
    Parent directories are created as needed.

    Raises:
        OSError: If directory creation, write, or rename fails. The temp file
            is removed and any previous file at ``final_path`` is untouched.
    """
    final_path = Path(final_path)
    temp_path = temp_path_for(final_path, temp_suffix)
    final_path.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    try:
        _write_fully(fd, data)
        maybe_fail("ATOMIC_WRITE_AFTER_TMP_WRITE")
        os.fsync(fd)
    except OSError:
        os.close(fd)
        _discard(temp_path)
        raise
    os.close(fd)

    _sync_directory(final_path.parent)
    maybe_fail("ATOMIC_WRITE_AFTER_FSYNC_BEFORE_RENAME")

    os.replace(temp_path, final_path)


def _sync_directory(dir_path: Path) -> None:
    """Best-effort fsync of a directory so the rename survives a crash."""
    try:
        fd = os.open(dir_path, os.O_RDONLY | os.O_DIRECTORY)
    except (OSError, AttributeError):
        # O_DIRECTORY is POSIX only
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def cleanup_orphan_temp_files(directory: str | Path, temp_suffix: str = TEMP_SUFFIX) -> int:
    """Remove temp files left below ``directory`` by interrupted writes.

    Walks subdirectories, since blob keys are namespaced (songs/, covers/).

    Returns:
        Number of files removed.
    """
    directory = Path(directory)
    if not directory.exists():
        return 0

    removed = 0
    for candidate in directory.rglob(f"*{temp_suffix}"):
        if candidate.is_file():
            try:
                candidate.unlink()
            except OSError:
                continue
            removed += 1
    return removed
