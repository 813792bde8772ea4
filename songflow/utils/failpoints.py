"""SongFlow - Failpoint injection for resilience testing.

Provides deterministic failure injection at named points in the upload
pipeline. Used to verify atomic blob publish, transactional catalog creation
and compensation.

Safety gate: Failpoints are only active when SONGFLOW_ENABLE_FAILPOINTS=1.
This ensures no production impact - the default is a complete no-op.

Environment variables:
- SONGFLOW_ENABLE_FAILPOINTS: Set to "1" to enable failpoint system (default: disabled)
- SONGFLOW_FAILPOINT: Name of the failpoint to trigger (e.g., "PROCESS_BEFORE_CATALOG_PERSIST")
- SONGFLOW_FAILPOINT_MODE: "crash" (default) exits the process, "raise" raises FailpointTriggered
- SONGFLOW_FAILPOINT_EXIT_CODE: Exit code to use when crashing (default: 42)
- SONGFLOW_FAILPOINT_ONCE: Set to "1" to only trigger once, then clear (default: trigger every time)

Usage:
    from songflow.utils.failpoints import maybe_fail

    maybe_fail("PROCESS_BEFORE_CATALOG_PERSIST")

Failpoint naming convention:
    {COMPONENT}_{LOCATION}
    e.g., ATOMIC_WRITE_AFTER_TMP_WRITE, PROCESS_BEFORE_CATALOG_PERSIST
"""

from __future__ import annotations

import os


class FailpointTriggered(RuntimeError):
    """Raised by a failpoint running in "raise" mode."""

    def __init__(self, point: str):
        self.point = point
        super().__init__(f"Failpoint triggered: {point}")


def _normalize(name: str) -> str:
    name = name.upper()
    if name.startswith("FAILPOINT_"):
        name = name[len("FAILPOINT_") :]
    return name


def maybe_fail(point: str) -> None:
    """Check if a failpoint should trigger and fail if so.

    A complete no-op when failpoints are disabled (the default). When enabled
    and ``point`` matches SONGFLOW_FAILPOINT, either crashes the process with
    os._exit() (bypassing finally blocks and atexit, like a power failure) or
    raises FailpointTriggered, depending on SONGFLOW_FAILPOINT_MODE.

    Args:
        point: The failpoint name to check (e.g., "ATOMIC_WRITE_AFTER_TMP_WRITE").
    """
    if os.environ.get("SONGFLOW_ENABLE_FAILPOINTS") != "1":
        return

    target = os.environ.get("SONGFLOW_FAILPOINT", "")
    if not target:
        return

    if _normalize(point) != _normalize(target):
        return

    if os.environ.get("SONGFLOW_FAILPOINT_ONCE") == "1":
        # Only affects the current process
        os.environ.pop("SONGFLOW_FAILPOINT", None)
        os.environ.pop("SONGFLOW_FAILPOINT_ONCE", None)

    if os.environ.get("SONGFLOW_FAILPOINT_MODE", "crash").lower() == "raise":
        raise FailpointTriggered(_normalize(point))

    try:
        exit_code = int(os.environ.get("SONGFLOW_FAILPOINT_EXIT_CODE", "42"))
    except ValueError:
        exit_code = 42

    os._exit(exit_code)


def is_failpoint_enabled() -> bool:
    """Check if the failpoint system is enabled.

    Returns:
        True if SONGFLOW_ENABLE_FAILPOINTS=1, False otherwise.
    """
    return os.environ.get("SONGFLOW_ENABLE_FAILPOINTS") == "1"


def get_active_failpoint() -> str | None:
    """Get the currently active failpoint name, if any.

    Returns:
        The failpoint name (without FAILPOINT_ prefix) or None.
    """
    if not is_failpoint_enabled():
        return None
    target = os.environ.get("SONGFLOW_FAILPOINT", "")
    if not target:
        return None
    return _normalize(target)
