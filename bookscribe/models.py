"""
bookscribe.models - Books, chapters, sentences and scheduler task types.

Books and chapters are immutable references handed in by playback; sentences
and chapter records are what the store persists; tasks live only inside the
scheduler.
"""

from __future__ import annotations

import itertools
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Chapter(BaseModel):
    """A time-bounded slice of a book's audio timeline."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    start: float = Field(ge=0.0)
    end: float

    @model_validator(mode="after")
    def check_range(self) -> Chapter:
        if self.end <= self.start:
            raise ValueError(f"Chapter end ({self.end}) must be after start ({self.start})")
        return self

    @property
    def duration(self) -> float:
        return self.end - self.start

    def owns_end_time(self, t: float) -> bool:
        """Whether a sentence ending at ``t`` belongs to this chapter."""
        return self.start < t <= self.end


class Book(BaseModel):
    """An imported audiobook and its chapter index."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    source_path: Path
    duration: float = Field(default=0.0, ge=0.0)
    chapters: tuple[Chapter, ...] = ()

    def chapter_by_id(self, chapter_id: str) -> Chapter | None:
        for chapter in self.chapters:
            if chapter.id == chapter_id:
                return chapter
        return None

    def chapter_index(self, chapter: Chapter) -> int | None:
        for i, candidate in enumerate(self.chapters):
            if candidate.id == chapter.id:
                return i
        return None

    def next_chapter(self, chapter: Chapter) -> Chapter | None:
        """Return the chapter following ``chapter``, or None at the end of the book."""
        index = self.chapter_index(chapter)
        if index is None or index + 1 >= len(self.chapters):
            return None
        return self.chapters[index + 1]

    def chapter_at(self, t: float) -> Chapter | None:
        """Return the chapter whose [start, end) range contains playback time ``t``."""
        for chapter in self.chapters:
            if chapter.start <= t < chapter.end:
                return chapter
        return None


class Sentence(BaseModel):
    """A transcribed sentence in the book's absolute timeline."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    book_id: str
    chapter_id: str | None
    text: str
    start: float
    end: float
    created_at: float = Field(default_factory=time.time)
    # Fixed-window identifier from the earlier chunked layout; read-only.
    chunk_id: str | None = None

    @model_validator(mode="after")
    def check_range(self) -> Sentence:
        if self.end <= self.start:
            raise ValueError(f"Sentence end ({self.end}) must be after start ({self.start})")
        return self


class ChapterTranscriptionRecord(BaseModel):
    """Completion record for one (book, chapter) pair."""

    model_config = ConfigDict(frozen=True)

    book_id: str
    chapter_id: str
    start: float
    end: float
    is_complete: bool
    transcribed_at: float


class SentenceSpan(NamedTuple):
    """A finalized sentence as produced by the engine, before it is persisted."""

    text: str
    start: float
    end: float


class Priority(IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2


class TaskState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    CANCELLED = "cancelled"
    COMPLETE = "complete"
    FAILED = "failed"


_task_sequence = itertools.count()


@dataclass
class TranscriptionTask:
    """Scheduler-internal unit of work for one chapter. Never persisted."""

    book: Book
    chapter: Chapter
    priority: Priority
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.monotonic)
    attempts: int = 0
    state: TaskState = TaskState.QUEUED
    not_before: float = 0.0
    last_error: str | None = None
    sequence: int = field(default_factory=lambda: next(_task_sequence))

    @property
    def key(self) -> tuple[str, str]:
        return (self.book.id, self.chapter.id)

    def sort_key(self) -> tuple[int, float, int]:
        """High priority first, then oldest first."""
        return (-int(self.priority), self.created_at, self.sequence)

    def snapshot(self) -> TaskSnapshot:
        return TaskSnapshot(
            task_id=self.id,
            book_id=self.book.id,
            chapter_id=self.chapter.id,
            chapter_start=self.chapter.start,
            chapter_end=self.chapter.end,
            priority=self.priority,
            attempts=self.attempts,
            state=self.state,
            not_before=self.not_before,
            last_error=self.last_error,
        )


@dataclass(frozen=True)
class TaskSnapshot:
    """Read-only copy of a task handed out by ``TranscriptionScheduler.status``."""

    task_id: str
    book_id: str
    chapter_id: str
    chapter_start: float
    chapter_end: float
    priority: Priority
    attempts: int
    state: TaskState
    not_before: float
    last_error: str | None


@dataclass(frozen=True)
class SchedulerStatus:
    queued: list[TaskSnapshot]
    running: TaskSnapshot | None
    attempts: dict[tuple[str, str], int]
    enabled: bool = True

    @property
    def is_idle(self) -> bool:
        return self.running is None and not self.queued
