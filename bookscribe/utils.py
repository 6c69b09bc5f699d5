"""
bookscribe.utils - Shared utility functions.

Time formatting and the timestamp normalization step shared by the engine
and the store.
"""

from __future__ import annotations

TIMESTAMP_RESOLUTION = 0.1


def round_timestamp(seconds: float) -> float:
    """Round a timestamp to the nearest 0.1 second.

    Args:
        seconds: Time in seconds

    Returns:
        Time rounded to TIMESTAMP_RESOLUTION
    """
    return round(seconds, 1)


def format_duration(seconds: float) -> str:
    """Format seconds as HH:MM:SS or MM:SS.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (HH:MM:SS if >= 1 hour, otherwise MM:SS)
    """
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def format_srt_time(seconds: float) -> str:
    """Format seconds as an SRT timestamp (HH:MM:SS,mmm)."""
    total_ms = int(round(seconds * 1000))
    hours, remainder = divmod(total_ms, 3_600_000)
    minutes, remainder = divmod(remainder, 60_000)
    secs, millis = divmod(remainder, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"
