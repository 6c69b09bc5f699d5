"""Tests for bookscribe.pipeline module."""

from __future__ import annotations

import pytest
from fakes import FakeExtractor, FakeRecognizer

from bookscribe.config import BookscribeConfig
from bookscribe.exceptions import StoreError
from bookscribe.models import Book
from bookscribe.pipeline import Pipeline, build_pipeline


class TestPipelineClose:
    def test_context_manager_closes_everything(
        self,
        config: BookscribeConfig,
        recognizer: FakeRecognizer,
        extractor: FakeExtractor,
        book: Book,
    ) -> None:
        with build_pipeline(config, recognizer=recognizer, extractor=extractor) as running:
            assert running.scheduler.enqueue_chapter(book, book.chapters[0]).result(timeout=5)
            assert running.scheduler.wait_until_idle(timeout=5)

        assert running.scheduler.enqueue_chapter(book, book.chapters[1]).result(timeout=1) is False
        with pytest.raises(StoreError, match="closed"):
            running.store.chapter_count(book.id)

    def test_store_closed_when_scheduler_shutdown_fails(
        self,
        pipeline: Pipeline,
        book: Book,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def stuck(timeout: float | None = None) -> None:
            raise TimeoutError("worker did not stop")

        monkeypatch.setattr(pipeline.scheduler, "shutdown", stuck)

        with pytest.raises(TimeoutError):
            pipeline.close()
        with pytest.raises(StoreError, match="closed"):
            pipeline.store.is_chapter_transcribed(book.id, book.chapters[0].id)
