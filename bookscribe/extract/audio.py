"""
bookscribe.extract.audio - FFmpeg audio extraction.

Extracts a bounded [start, end) segment of a book's audio as 16kHz mono WAV
into a transient file. The FFmpeg process is polled so a cancellation signal
stops it promptly.
"""

from __future__ import annotations

import logging
import subprocess
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from bookscribe.exceptions import ExtractionError, TranscriptionCancelled

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1

# Characters of FFmpeg's error output kept in ExtractionError messages.
STDERR_TAIL = 2000


def build_extract_command(source_path: Path, start: float, end: float, output_path: Path) -> list[str]:
    """FFmpeg command cutting [start, end) of ``source_path`` to 16kHz mono WAV."""
    return [
        "ffmpeg",
        "-nostdin",
        "-y",
        "-loglevel",
        "error",
        "-ss",
        f"{start:.3f}",
        "-to",
        f"{end:.3f}",
        "-i",
        str(source_path),
        "-vn",
        "-acodec",
        "pcm_s16le",
        "-ar",
        "16000",
        "-ac",
        "1",
        str(output_path),
    ]


def extract_segment(
    source_path: Path,
    start: float,
    end: float,
    output_path: Path,
    cancel_event: threading.Event | None = None,
) -> Path:
    """Extract a bounded audio segment using FFmpeg.

    Args:
        source_path: Book audio file
        start: Segment start in seconds (absolute book time)
        end: Segment end in seconds
        output_path: Destination WAV path
        cancel_event: Set to abort; the FFmpeg process is terminated

    Returns:
        ``output_path``

    Raises:
        ExtractionError: If the source is missing or FFmpeg fails
        TranscriptionCancelled: If ``cancel_event`` was set before FFmpeg finished
    """
    if end <= start:
        raise ExtractionError(f"Empty segment requested: {start}s - {end}s")
    if not source_path.exists():
        raise ExtractionError(f"Audio file not found: {source_path}")

    output_path.parent.mkdir(parents=True, exist_ok=True)
    cmd = build_extract_command(source_path, start, end, output_path)

    # FFmpeg stderr is collected in a file; an unread pipe would block it once full.
    with tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace") as log:
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=log)
        except FileNotFoundError as e:
            raise ExtractionError("FFmpeg not found in PATH") from e

        while True:
            try:
                proc.wait(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    proc.terminate()
                    try:
                        proc.wait(timeout=5)
                    except subprocess.TimeoutExpired:
                        proc.kill()
                        proc.wait()
                    output_path.unlink(missing_ok=True)
                    raise TranscriptionCancelled(f"Extraction of {start}s - {end}s cancelled")

        log.seek(0)
        stderr = log.read()[-STDERR_TAIL:]

    if proc.returncode != 0:
        output_path.unlink(missing_ok=True)
        raise ExtractionError(f"FFmpeg segment extraction failed: {stderr.strip()}")
    if not output_path.exists() or output_path.stat().st_size == 0:
        raise ExtractionError(f"FFmpeg produced no audio for {start}s - {end}s")

    logger.debug("Extracted %.1fs - %.1fs to %s (%s)", start, end, output_path, format_size(output_path))
    return output_path


@contextmanager
def extracted_segment(
    source_path: Path,
    start: float,
    end: float,
    cancel_event: threading.Event | None = None,
) -> Iterator[Path]:
    """Extract a segment into a temporary directory that is removed afterwards."""
    with tempfile.TemporaryDirectory(prefix="bookscribe_") as tmp:
        yield extract_segment(
            source_path,
            start,
            end,
            Path(tmp) / "segment.wav",
            cancel_event=cancel_event,
        )


def format_size(path: Path) -> str:
    """Format file size in human-readable format."""
    if not path.exists():
        return "-"
    size = path.stat().st_size
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"
