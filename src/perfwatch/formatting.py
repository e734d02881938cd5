"""Formatting utilities for consistent output across CLI, TUI and text logs.

Every helper accepts None for "no data" and renders it as NO_DATA, so an
unavailable metric is never shown as zero.
"""

NO_DATA = "--"


def format_bytes(bytes_val: float | None) -> str:
    """Format bytes as human-readable string."""
    if bytes_val is None:
        return NO_DATA
    if bytes_val < 1024:
        return f"{bytes_val:.0f}B"
    elif bytes_val < 1024 * 1024:
        return f"{bytes_val / 1024:.0f}K"
    elif bytes_val < 1024 * 1024 * 1024:
        return f"{bytes_val / (1024 * 1024):.1f}M"
    else:
        return f"{bytes_val / (1024 * 1024 * 1024):.1f}G"


def format_rate(bytes_per_sec: float | None) -> str:
    """Format bytes/sec as human-readable rate."""
    if bytes_per_sec is None:
        return NO_DATA
    return f"{format_bytes(bytes_per_sec)}/s"


def format_count(val: float | None) -> str:
    """Format large counts with k/M suffix."""
    if val is None:
        return NO_DATA
    if val >= 1_000_000:
        return f"{val / 1_000_000:.1f}M"
    if val >= 1000:
        return f"{val / 1000:.1f}k"
    if val == int(val):
        return str(int(val))
    return f"{val:.1f}"


def format_pct(value: float | None, width: int = 0) -> str:
    """Format a percentage with one decimal."""
    text = NO_DATA if value is None else f"{value:.1f}"
    return text.rjust(width) if width else text


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 60:
        return f"{int(seconds)}s"
    elif seconds < 3600:
        return f"{int(seconds // 60)}m{int(seconds % 60)}s"
    else:
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        return f"{hours}h{mins}m"
