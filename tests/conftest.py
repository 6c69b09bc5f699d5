"""
Test configuration and shared fixtures.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from fakes import FakeExtractor, FakeRecognizer

from bookscribe.config import BookscribeConfig
from bookscribe.library import book_id_for_path, make_chapter
from bookscribe.models import Book
from bookscribe.pipeline import Pipeline, build_pipeline
from bookscribe.scheduler import SchedulerEvent
from bookscribe.store import ChapterStore


@pytest.fixture
def config(tmp_path: Path) -> BookscribeConfig:
    """Configuration with millisecond-scale scheduler timing."""
    return BookscribeConfig(
        database_path=tmp_path / "data" / "transcription.db",
        speech_backend="none",
        progress_check_interval=0.02,
        stall_timeout=0.2,
        first_sentence_timeout=0.4,
        retry_delay=0.05,
        max_attempts=3,
        settle_delay=0.05,
        prefetch_next_chapter=False,
    )


@pytest.fixture
def store(config: BookscribeConfig) -> Iterator[ChapterStore]:
    chapter_store = ChapterStore(config.database_path)
    yield chapter_store
    chapter_store.close()


@pytest.fixture
def book(tmp_path: Path) -> Book:
    """A four-chapter book, ten seconds per chapter."""
    source = tmp_path / "book.m4b"
    source.write_bytes(b"\x00")
    book_id = book_id_for_path(source)
    chapters = tuple(
        make_chapter(book_id, f"Chapter {i + 1}", i * 10.0, (i + 1) * 10.0) for i in range(4)
    )
    return Book(id=book_id, title="Test Book", source_path=source, duration=40.0, chapters=chapters)


@pytest.fixture
def recognizer() -> FakeRecognizer:
    return FakeRecognizer()


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def pipeline(
    config: BookscribeConfig,
    recognizer: FakeRecognizer,
    extractor: FakeExtractor,
) -> Iterator[Pipeline]:
    running = build_pipeline(config, recognizer=recognizer, extractor=extractor)
    yield running
    recognizer.release.set()
    running.close()


@pytest.fixture
def events(pipeline: Pipeline) -> list[SchedulerEvent]:
    """Every scheduler event, in emission order."""
    received: list[SchedulerEvent] = []
    pipeline.scheduler.add_listener(received.append)
    return received


@pytest.fixture
def wait_for() -> Callable[..., bool]:
    """Poll ``predicate`` until it is true or ``timeout`` expires."""

    def _wait(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.005)
        return predicate()

    return _wait
