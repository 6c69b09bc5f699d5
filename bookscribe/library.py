"""
bookscribe.library - Book identity and chapter discovery.

Books and chapters get deterministic ids so transcription records survive
restarts and re-imports. Chapters come from the file's embedded chapter
metadata when present, otherwise from equal-length simulated chapters.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import subprocess
import uuid
from pathlib import Path
from typing import Any

from bookscribe.config import BookscribeConfig
from bookscribe.exceptions import DependencyError, ExtractionError
from bookscribe.models import Book, Chapter
from bookscribe.utils import round_timestamp

logger = logging.getLogger(__name__)


def uuid_from_string(seed: str) -> str:
    """Derive a stable v4-shaped UUID from a string seed via SHA-256."""
    digest = bytearray(hashlib.sha256(seed.encode("utf-8")).digest()[:16])
    digest[6] = (digest[6] & 0x0F) | 0x40
    digest[8] = (digest[8] & 0x3F) | 0x80
    return str(uuid.UUID(bytes=bytes(digest))).upper()


def book_id_for_path(path: Path) -> str:
    """Deterministic book id from the resolved source path."""
    return uuid_from_string(f"book:{Path(path).expanduser().resolve()}")


def chapter_id_for_range(book_id: str, start: float, end: float) -> str:
    """Deterministic chapter id from the book id and the chapter's 0.1s-rounded range."""
    return uuid_from_string(f"chapter:{book_id}:{round_timestamp(start)}:{round_timestamp(end)}")


def make_chapter(book_id: str, title: str, start: float, end: float) -> Chapter:
    return Chapter(
        id=chapter_id_for_range(book_id, start, end),
        title=title,
        start=start,
        end=end,
    )


def simulate_chapters(book_id: str, duration: float, chapter_length: float) -> list[Chapter]:
    """Divide a book into equal-length chapters, the last one possibly shorter.

    Args:
        book_id: Owning book id
        duration: Total book duration in seconds
        chapter_length: Desired chapter length in seconds

    Returns:
        Chapters sorted by start; a single chapter when the inputs are degenerate
    """
    if duration <= 0:
        return []
    if chapter_length <= 0:
        return [make_chapter(book_id, "Chapter 1", 0.0, duration)]

    chapters = []
    for i in range(math.ceil(duration / chapter_length)):
        start = i * chapter_length
        end = min(start + chapter_length, duration)
        if end > start:
            chapters.append(make_chapter(book_id, f"Chapter {i + 1}", start, end))

    return chapters or [make_chapter(book_id, "Chapter 1", 0.0, duration)]


def run_ffprobe(path: Path) -> dict[str, Any]:
    """Run ffprobe and return its parsed JSON output (format + chapters)."""
    cmd = [
        "ffprobe",
        "-v",
        "quiet",
        "-print_format",
        "json",
        "-show_format",
        "-show_chapters",
        str(path),
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except FileNotFoundError as e:
        raise DependencyError(
            "ffprobe",
            "FFprobe not found in PATH",
            "Install with: brew install ffmpeg (macOS) or apt install ffmpeg (Linux)",
        ) from e
    if result.returncode != 0:
        raise ExtractionError(f"ffprobe failed for {path}: {result.stderr}")
    return json.loads(result.stdout or "{}")


def chapters_from_probe(book_id: str, probe: dict[str, Any]) -> list[Chapter]:
    """Build chapters from ffprobe's ``chapters`` array, skipping empty ones."""
    chapters = []
    for i, raw in enumerate(probe.get("chapters", [])):
        start = float(raw.get("start_time", 0))
        end = float(raw.get("end_time", 0))
        if end <= start:
            continue
        title = (raw.get("tags") or {}).get("title") or f"Chapter {i + 1}"
        chapters.append(make_chapter(book_id, title, start, end))
    chapters.sort(key=lambda c: c.start)
    return chapters


def build_book(
    path: Path,
    probe: dict[str, Any],
    config: BookscribeConfig,
) -> Book:
    """Assemble a Book from probe data.

    Embedded chapters win. Simulated chapters are only used when the file has
    none; the two sources are never mixed so chapter ids stay stable.
    """
    book_id = book_id_for_path(path)
    format_info = probe.get("format", {})
    duration = float(format_info.get("duration", 0) or 0)
    title = (format_info.get("tags") or {}).get("title") or Path(path).stem

    chapters = chapters_from_probe(book_id, probe)
    if not chapters and duration > 0:
        if config.simulate_chapters:
            chapters = simulate_chapters(book_id, duration, config.simulated_chapter_length)
        else:
            chapters = [make_chapter(book_id, "Chapter 1", 0.0, duration)]

    if chapters and duration <= 0:
        duration = chapters[-1].end

    logger.debug("Built book %s (%s) with %d chapters", title, book_id, len(chapters))
    return Book(
        id=book_id,
        title=title,
        source_path=Path(path),
        duration=duration,
        chapters=tuple(chapters),
    )


def probe_book(path: Path, config: BookscribeConfig) -> Book:
    """Probe an audio file and return a Book with its chapter index."""
    path = Path(path).expanduser()
    if not path.exists():
        raise ExtractionError(f"Audio file not found: {path}")
    return build_book(path, run_ffprobe(path), config)
