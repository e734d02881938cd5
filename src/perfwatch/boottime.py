"""Boot time and kernel unit helpers for Linux.

Process start times in /proc/<pid>/stat are clock ticks since boot; these
helpers turn them into wall-clock timestamps.
"""

import functools
import os

import psutil


@functools.cache
def get_boot_time() -> int:
    """Return system boot time as Unix timestamp (cached for the run)."""
    return int(psutil.boot_time())


def clock_ticks() -> int:
    """Return kernel clock ticks per second (USER_HZ), usually 100."""
    try:
        return os.sysconf("SC_CLK_TCK")
    except (ValueError, OSError):
        return 100


def page_size() -> int:
    """Return memory page size in bytes."""
    try:
        return os.sysconf("SC_PAGE_SIZE")
    except (ValueError, OSError):
        return 4096


def start_time_to_wall(start_ticks: int, boot_time: float | None = None) -> float:
    """Convert a process start time (ticks since boot) to a Unix timestamp."""
    if boot_time is None:
        boot_time = get_boot_time()
    return boot_time + start_ticks / clock_ticks()
