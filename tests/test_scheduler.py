"""Tests for bookscribe.scheduler module."""

from __future__ import annotations

import time
from collections.abc import Callable

from fakes import FakeExtractor, FakeRecognizer

from bookscribe.config import BookscribeConfig
from bookscribe.models import Book, Priority, SentenceSpan, TaskState
from bookscribe.pipeline import Pipeline
from bookscribe.scheduler import EventKind, SchedulerEvent


def kinds_for(events: list[SchedulerEvent], chapter_id: str) -> list[EventKind]:
    return [e.kind for e in events if e.task.chapter_id == chapter_id]


class TestEnqueue:
    def test_chapter_runs_to_completion(
        self,
        pipeline: Pipeline,
        book: Book,
        events: list[SchedulerEvent],
    ) -> None:
        chapter = book.chapters[0]
        assert pipeline.scheduler.enqueue_chapter(book, chapter, Priority.HIGH).result(timeout=5)
        assert pipeline.scheduler.wait_until_idle(timeout=5)

        assert pipeline.store.is_chapter_transcribed(book.id, chapter.id)
        assert not pipeline.store.is_chapter_transcribing(book.id, chapter.id)
        assert kinds_for(events, chapter.id) == [
            EventKind.QUEUED,
            EventKind.STARTED,
            EventKind.COMPLETED,
        ]
        sentences = pipeline.store.load_sentences_for_chapter(book.id, chapter.id)
        assert len(sentences) == 5
        assert all(s.start < s.end for s in sentences)

    def test_unknown_chapter_reads_empty(self, pipeline: Pipeline, book: Book) -> None:
        chapter = book.chapters[2]
        assert pipeline.store.load_sentences_for_chapter(book.id, chapter.id) == []
        assert not pipeline.store.is_chapter_transcribed(book.id, chapter.id)

    def test_transcribed_chapter_is_not_queued(
        self,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
    ) -> None:
        chapter = book.chapters[0]
        pipeline.store.save_chapter_transcription(
            book.id, chapter, [SentenceSpan("Done.", 0.0, 1.0)]
        )

        assert not pipeline.scheduler.enqueue_chapter(book, chapter).result(timeout=5)
        status = pipeline.scheduler.status()
        assert status.is_idle
        assert recognizer.calls == []

    def test_duplicate_request_is_absorbed(self, pipeline: Pipeline, book: Book, recognizer: FakeRecognizer) -> None:
        recognizer.default = "endless"
        scheduler = pipeline.scheduler
        assert scheduler.enqueue_chapter(book, book.chapters[0]).result(timeout=5)
        assert not scheduler.enqueue_chapter(book, book.chapters[0]).result(timeout=5)

        assert scheduler.enqueue_chapter(book, book.chapters[1], Priority.LOW).result(timeout=5)
        assert not scheduler.enqueue_chapter(book, book.chapters[1], Priority.LOW).result(timeout=5)

        status = scheduler.status()
        assert status.running is not None
        assert len(status.queued) == 1

    def test_nearby_start_time_counts_as_same_chapter(
        self,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
    ) -> None:
        from bookscribe.library import make_chapter

        recognizer.default = "endless"
        scheduler = pipeline.scheduler
        assert scheduler.enqueue_chapter(book, book.chapters[1], Priority.LOW).result(timeout=5)
        shifted = make_chapter(book.id, "Shifted", 10.4, 20.0)
        assert shifted.id != book.chapters[1].id
        assert not scheduler.enqueue_chapter(book, shifted, Priority.LOW).result(timeout=5)

    def test_disabled_scheduler_ignores_requests(self, pipeline: Pipeline, book: Book) -> None:
        scheduler = pipeline.scheduler
        scheduler.set_enabled(False).result(timeout=5)
        assert not scheduler.enqueue_chapter(book, book.chapters[0]).result(timeout=5)
        assert not scheduler.status().enabled

        scheduler.set_enabled(True).result(timeout=5)
        assert scheduler.enqueue_chapter(book, book.chapters[0]).result(timeout=5)

    def test_queue_first_chapter_transcription(self, pipeline: Pipeline, book: Book) -> None:
        assert pipeline.scheduler.queue_first_chapter_transcription(book).result(timeout=5)
        assert pipeline.scheduler.wait_until_idle(timeout=5)
        assert pipeline.store.is_chapter_transcribed(book.id, book.chapters[0].id)
        assert not pipeline.store.is_chapter_transcribed(book.id, book.chapters[1].id)

    def test_enqueue_next_chapter_at_end_of_book(self, pipeline: Pipeline, book: Book) -> None:
        assert not pipeline.scheduler.enqueue_next_chapter(book, book.chapters[-1]).result(timeout=5)


class TestOrdering:
    def test_lower_priority_waits_for_running_task(
        self,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
        events: list[SchedulerEvent],
        wait_for: Callable[..., bool],
    ) -> None:
        a, b = book.chapters[0], book.chapters[1]
        recognizer.plan(a.start, "endless")
        scheduler = pipeline.scheduler

        scheduler.enqueue_chapter(book, a, Priority.HIGH)
        assert wait_for(lambda: scheduler.current_chapter_id(book.id) == a.id)
        scheduler.enqueue_chapter(book, b, Priority.MEDIUM).result(timeout=5)

        status = scheduler.status()
        assert status.running is not None and status.running.chapter_id == a.id
        assert [t.chapter_id for t in status.queued] == [b.id]
        assert status.queued[0].state == TaskState.QUEUED

        recognizer.release.set()
        assert scheduler.wait_until_idle(timeout=5)
        assert EventKind.CANCELLED not in kinds_for(events, a.id)
        assert pipeline.store.is_chapter_transcribed(book.id, a.id)
        assert pipeline.store.is_chapter_transcribed(book.id, b.id)

        completed_a = next(i for i, e in enumerate(events) if e.kind == EventKind.COMPLETED and e.task.chapter_id == a.id)
        started_b = next(i for i, e in enumerate(events) if e.kind == EventKind.STARTED and e.task.chapter_id == b.id)
        assert completed_a < started_b

    def test_queue_ordered_by_priority_then_age(
        self,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
        wait_for: Callable[..., bool],
    ) -> None:
        recognizer.plan(book.chapters[0].start, "endless")
        scheduler = pipeline.scheduler
        scheduler.enqueue_chapter(book, book.chapters[0], Priority.HIGH)
        assert wait_for(lambda: scheduler.is_busy())

        scheduler.enqueue_chapter(book, book.chapters[1], Priority.LOW)
        scheduler.enqueue_chapter(book, book.chapters[2], Priority.MEDIUM)
        scheduler.enqueue_chapter(book, book.chapters[3], Priority.LOW)

        queued = scheduler.status().queued
        assert [t.chapter_id for t in queued] == [
            book.chapters[2].id,
            book.chapters[1].id,
            book.chapters[3].id,
        ]

    def test_only_one_task_runs_at_a_time(
        self,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
        events: list[SchedulerEvent],
    ) -> None:
        recognizer.word_delay = 0.005
        for chapter in book.chapters:
            pipeline.scheduler.enqueue_chapter(book, chapter, Priority.LOW)
        assert pipeline.scheduler.wait_until_idle(timeout=10)

        running = 0
        peak = 0
        for event in events:
            if event.kind == EventKind.STARTED:
                running += 1
            elif event.kind in (EventKind.COMPLETED, EventKind.CANCELLED, EventKind.STALLED, EventKind.ERRORED):
                running -= 1
            peak = max(peak, running)
        assert peak == 1
        assert all(pipeline.store.is_chapter_transcribed(book.id, c.id) for c in book.chapters)


class TestPreemption:
    def test_high_priority_request_preempts_running_chapter(
        self,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
        events: list[SchedulerEvent],
        wait_for: Callable[..., bool],
    ) -> None:
        a, c = book.chapters[0], book.chapters[2]
        recognizer.plan(a.start, "endless", "endless")
        scheduler = pipeline.scheduler

        scheduler.enqueue_chapter(book, a, Priority.HIGH)
        assert wait_for(lambda: scheduler.current_chapter_id() == a.id)
        scheduler.enqueue_chapter(book, c, Priority.HIGH)

        assert wait_for(lambda: pipeline.store.is_chapter_transcribed(book.id, c.id))
        assert kinds_for(events, a.id).count(EventKind.CANCELLED) == 1
        assert pipeline.store.load_sentences_for_chapter(book.id, a.id) == []
        assert not pipeline.store.is_chapter_transcribed(book.id, a.id)

        cancelled = next(e for e in events if e.kind == EventKind.CANCELLED)
        assert cancelled.error == "preempted"
        assert scheduler.status().attempts.get((book.id, a.id), 0) == 0

    def test_preempted_chapter_resumes_without_penalty(
        self,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
        events: list[SchedulerEvent],
        wait_for: Callable[..., bool],
    ) -> None:
        a, c = book.chapters[0], book.chapters[2]
        recognizer.plan(a.start, "endless", "ok")
        scheduler = pipeline.scheduler

        scheduler.enqueue_chapter(book, a, Priority.HIGH)
        assert wait_for(lambda: scheduler.current_chapter_id() == a.id)
        scheduler.enqueue_chapter(book, c, Priority.HIGH)

        assert scheduler.wait_until_idle(timeout=5)
        assert pipeline.store.is_chapter_transcribed(book.id, a.id)
        assert pipeline.store.is_chapter_transcribed(book.id, c.id)
        assert kinds_for(events, a.id).count(EventKind.STARTED) == 2
        assert EventKind.RETRY_SCHEDULED not in kinds_for(events, a.id)

    def test_medium_priority_does_not_preempt(
        self,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
        events: list[SchedulerEvent],
        wait_for: Callable[..., bool],
    ) -> None:
        recognizer.plan(book.chapters[0].start, "endless")
        scheduler = pipeline.scheduler
        scheduler.enqueue_chapter(book, book.chapters[0], Priority.HIGH)
        assert wait_for(lambda: scheduler.is_busy())
        scheduler.enqueue_chapter(book, book.chapters[1], Priority.MEDIUM).result(timeout=5)

        assert scheduler.current_chapter_id() == book.chapters[0].id
        assert EventKind.CANCELLED not in [e.kind for e in events]

    def test_promoted_duplicate_preempts(
        self,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
        wait_for: Callable[..., bool],
    ) -> None:
        a, b = book.chapters[0], book.chapters[1]
        recognizer.plan(a.start, "endless")
        scheduler = pipeline.scheduler
        scheduler.enqueue_chapter(book, a, Priority.HIGH)
        assert wait_for(lambda: scheduler.current_chapter_id() == a.id)
        assert scheduler.enqueue_chapter(book, b, Priority.LOW).result(timeout=5)

        assert not scheduler.enqueue_chapter(book, b, Priority.HIGH).result(timeout=5)
        assert wait_for(lambda: pipeline.store.is_chapter_transcribed(book.id, b.id))


class TestFailures:
    def test_stalled_chapter_fails_after_max_attempts(
        self,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
        events: list[SchedulerEvent],
    ) -> None:
        d = book.chapters[3]
        recognizer.default = "stall"
        pipeline.scheduler.enqueue_chapter(book, d, Priority.HIGH)
        assert pipeline.scheduler.wait_until_idle(timeout=10)

        kinds = kinds_for(events, d.id)
        assert kinds.count(EventKind.STARTED) == 3
        assert kinds.count(EventKind.STALLED) == 3
        assert kinds.count(EventKind.RETRY_SCHEDULED) == 2
        assert kinds[-1] == EventKind.GAVE_UP
        assert len(recognizer.calls) == 3

        assert not pipeline.store.is_chapter_transcribed(book.id, d.id)
        assert not pipeline.store.is_chapter_transcribing(book.id, d.id)
        assert pipeline.store.load_sentences_for_chapter(book.id, d.id) == []

    def test_failed_attempt_is_retried(
        self,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
        events: list[SchedulerEvent],
    ) -> None:
        chapter = book.chapters[1]
        recognizer.plan(chapter.start, "fail", "crash", "ok")
        pipeline.scheduler.enqueue_chapter(book, chapter)
        assert pipeline.scheduler.wait_until_idle(timeout=10)

        kinds = kinds_for(events, chapter.id)
        assert kinds.count(EventKind.ERRORED) == 2
        assert kinds[-1] == EventKind.COMPLETED
        assert pipeline.store.is_chapter_transcribed(book.id, chapter.id)

    def test_extraction_failure_is_retried(
        self,
        pipeline: Pipeline,
        book: Book,
        extractor: FakeExtractor,
        events: list[SchedulerEvent],
    ) -> None:
        extractor.failures = 1
        chapter = book.chapters[0]
        pipeline.scheduler.enqueue_chapter(book, chapter)
        assert pipeline.scheduler.wait_until_idle(timeout=10)

        assert len(extractor.calls) == 2
        assert EventKind.RETRY_SCHEDULED in kinds_for(events, chapter.id)
        assert pipeline.store.is_chapter_transcribed(book.id, chapter.id)

    def test_unavailable_backend_drops_task_without_retry(
        self,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
        extractor: FakeExtractor,
        events: list[SchedulerEvent],
    ) -> None:
        recognizer.available = False
        chapter = book.chapters[0]
        pipeline.scheduler.enqueue_chapter(book, chapter)
        assert pipeline.scheduler.wait_until_idle(timeout=5)

        kinds = kinds_for(events, chapter.id)
        assert kinds.count(EventKind.STARTED) == 1
        assert EventKind.RETRY_SCHEDULED not in kinds
        assert kinds[-1] == EventKind.DROPPED
        assert extractor.calls == []
        assert not pipeline.store.is_chapter_transcribing(book.id, chapter.id)


class TestCancellation:
    def test_cancel_all_for_book(
        self,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
        wait_for: Callable[..., bool],
    ) -> None:
        recognizer.default = "endless"
        scheduler = pipeline.scheduler
        scheduler.enqueue_chapter(book, book.chapters[0], Priority.HIGH)
        scheduler.enqueue_chapter(book, book.chapters[1], Priority.LOW)
        assert wait_for(lambda: scheduler.is_busy())

        assert scheduler.cancel_all_for_book(book.id).result(timeout=5) == 2
        assert scheduler.wait_until_idle(timeout=5)
        assert not pipeline.store.is_chapter_transcribing(book.id, book.chapters[0].id)
        assert pipeline.store.load_sentences_for_chapter(book.id, book.chapters[0].id) == []

    def test_cancel_leaves_other_books_alone(
        self,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
        wait_for: Callable[..., bool],
    ) -> None:
        recognizer.default = "endless"
        scheduler = pipeline.scheduler
        scheduler.enqueue_chapter(book, book.chapters[0], Priority.HIGH)
        assert wait_for(lambda: scheduler.is_busy())

        assert scheduler.cancel_all_for_book("another-book").result(timeout=5) == 0
        assert scheduler.current_chapter_id(book.id) == book.chapters[0].id

    def test_current_chapter_id_is_per_book(
        self,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
        wait_for: Callable[..., bool],
    ) -> None:
        recognizer.default = "endless"
        scheduler = pipeline.scheduler
        assert scheduler.current_chapter_id() is None
        scheduler.enqueue_chapter(book, book.chapters[0])
        assert wait_for(lambda: scheduler.current_chapter_id() is not None)

        assert scheduler.current_chapter_id(book.id) == book.chapters[0].id
        assert scheduler.current_chapter_id("another-book") is None
        assert scheduler.is_in_flight(book.id, book.chapters[0].id)
        assert not scheduler.is_in_flight(book.id, book.chapters[1].id)

    def test_shutdown_cancels_running_attempt(
        self,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
        wait_for: Callable[..., bool],
    ) -> None:
        recognizer.default = "endless"
        scheduler = pipeline.scheduler
        scheduler.enqueue_chapter(book, book.chapters[0])
        assert wait_for(lambda: pipeline.store.is_chapter_transcribing(book.id, book.chapters[0].id))

        scheduler.shutdown()
        assert not scheduler.is_busy()
        assert not pipeline.store.is_chapter_transcribing(book.id, book.chapters[0].id)
        assert not pipeline.store.is_chapter_transcribed(book.id, book.chapters[0].id)

    def test_request_during_book_cancellation_is_queued(
        self,
        config: BookscribeConfig,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
        wait_for: Callable[..., bool],
    ) -> None:
        config.stall_timeout = 1.0
        config.first_sentence_timeout = 1.0
        recognizer.word_delay = 0.1
        scheduler = pipeline.scheduler
        chapter = book.chapters[0]
        scheduler.enqueue_chapter(book, chapter, Priority.HIGH)
        assert wait_for(lambda: scheduler.is_busy())

        assert scheduler.cancel_all_for_book(book.id).result(timeout=5) == 1
        assert scheduler.enqueue_chapter(book, chapter, Priority.HIGH).result(timeout=5)
        assert scheduler.wait_until_idle(timeout=10)
        assert pipeline.store.is_chapter_transcribed(book.id, chapter.id)

    def test_request_after_reenabling_is_queued(
        self,
        config: BookscribeConfig,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
        wait_for: Callable[..., bool],
    ) -> None:
        config.stall_timeout = 1.0
        config.first_sentence_timeout = 1.0
        recognizer.word_delay = 0.1
        scheduler = pipeline.scheduler
        chapter = book.chapters[1]
        scheduler.enqueue_chapter(book, chapter, Priority.HIGH)
        assert wait_for(lambda: scheduler.is_busy())

        assert scheduler.set_enabled(False).result(timeout=5) == 1
        assert scheduler.set_enabled(True).result(timeout=5) == 0
        assert scheduler.enqueue_chapter(book, chapter, Priority.HIGH).result(timeout=5)
        assert scheduler.wait_until_idle(timeout=10)
        assert pipeline.store.is_chapter_transcribed(book.id, chapter.id)


class TestShutdown:
    def test_unresponsive_attempt_is_abandoned(
        self,
        config: BookscribeConfig,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
        wait_for: Callable[..., bool],
    ) -> None:
        config.stall_timeout = 0.3
        config.first_sentence_timeout = 5.0
        recognizer.word_delay = 3.0
        scheduler = pipeline.scheduler
        chapter = book.chapters[0]
        scheduler.enqueue_chapter(book, chapter)
        assert wait_for(lambda: pipeline.store.is_chapter_transcribing(book.id, chapter.id))

        started = time.monotonic()
        scheduler.shutdown()

        assert time.monotonic() - started < 2.0
        assert not scheduler.is_busy()
        assert scheduler.wait_until_idle(timeout=1)
        assert not pipeline.store.is_chapter_transcribing(book.id, chapter.id)

    def test_requests_after_shutdown_resolve(self, pipeline: Pipeline, book: Book) -> None:
        scheduler = pipeline.scheduler
        scheduler.shutdown()

        assert scheduler.enqueue_chapter(book, book.chapters[0]).result(timeout=1) is False
        assert scheduler.cancel_all_for_book(book.id).result(timeout=1) == 0
        assert scheduler.set_enabled(False).result(timeout=1) == 0
        assert scheduler.status(timeout=1).is_idle
        assert scheduler.wait_until_idle(timeout=1)

    def test_shutdown_is_repeatable(self, pipeline: Pipeline) -> None:
        pipeline.scheduler.shutdown()
        pipeline.scheduler.shutdown()
        assert pipeline.scheduler.status(timeout=1).is_idle

    def test_shutdown_clears_records_of_queued_chapters(
        self,
        pipeline: Pipeline,
        book: Book,
        recognizer: FakeRecognizer,
        wait_for: Callable[..., bool],
    ) -> None:
        recognizer.default = "endless"
        a, c = book.chapters[0], book.chapters[2]
        scheduler = pipeline.scheduler
        scheduler.enqueue_chapter(book, a, Priority.HIGH)
        assert wait_for(lambda: scheduler.current_chapter_id() == a.id)
        scheduler.enqueue_chapter(book, c, Priority.HIGH)
        assert wait_for(lambda: scheduler.current_chapter_id() == c.id)
        assert pipeline.store.is_chapter_transcribing(book.id, a.id)

        scheduler.shutdown()

        assert not pipeline.store.is_chapter_transcribing(book.id, a.id)
        assert not pipeline.store.is_chapter_transcribing(book.id, c.id)
