"""
bookscribe.scheduler - Transcription scheduler.

Owns the work queue and the single running slot. All queue and running-task
state belongs to one worker thread; public methods only post messages to its
inbox and, where they need an answer, wait on a Future.

Policy:
- one attempt runs at a time, system-wide
- requests are deduplicated per (book, chapter); chapters already stored as
  transcribed are never queued
- a high-priority request for a different chapter preempts the running
  attempt; the preempted chapter goes back to the queue without using a retry
- the queue is ordered by priority, then creation time
- a progress watchdog cancels attempts that stop producing sentences
- failed attempts are retried after a delay up to ``max_attempts`` times;
  availability errors are never retried
"""

from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from bookscribe.config import BookscribeConfig
from bookscribe.exceptions import (
    AvailabilityError,
    StallError,
    StoreError,
    TranscriptionCancelled,
)
from bookscribe.models import (
    Book,
    Chapter,
    Priority,
    SchedulerStatus,
    TaskSnapshot,
    TaskState,
    TranscriptionTask,
)
from bookscribe.store import ChapterStore
from bookscribe.transcribe.engine import TranscriptionEngine

logger = logging.getLogger(__name__)

# Seconds shutdown waits for the worker beyond the attempt join deadline.
SHUTDOWN_MARGIN = 5.0


class EventKind(str, Enum):
    QUEUED = "queued"
    STARTED = "started"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    STALLED = "stalled"
    ERRORED = "errored"
    RETRY_SCHEDULED = "retry_scheduled"
    GAVE_UP = "gave_up"
    DROPPED = "dropped"


@dataclass(frozen=True)
class SchedulerEvent:
    """Notification delivered to listeners on the scheduler's worker thread."""

    kind: EventKind
    task: TaskSnapshot
    book: Book
    attempt_id: str | None = None
    sentence_count: int = 0
    error: str | None = None
    timestamp: float = field(default_factory=time.time)


class CancelReason(str, Enum):
    PREEMPTED = "preempted"
    STALLED = "stalled"
    BOOK_CANCELLED = "book_cancelled"
    SHUTDOWN = "shutdown"


@dataclass
class _Attempt:
    task: TranscriptionTask
    started_at: float
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    cancel_event: threading.Event = field(default_factory=threading.Event)
    thread: threading.Thread | None = None
    sentence_count: int = 0
    sampled_count: int = 0
    last_progress_at: float = 0.0
    next_check_at: float = 0.0
    cancel_reason: CancelReason | None = None
    drain_deadline: float = 0.0


# Inbox messages -----------------------------------------------------------


@dataclass
class _Enqueue:
    book: Book
    chapter: Chapter
    priority: Priority
    reply: Future


@dataclass
class _CancelBook:
    book_id: str | None
    reply: Future


@dataclass
class _SetEnabled:
    enabled: bool
    reply: Future


@dataclass
class _Status:
    reply: Future


@dataclass
class _AttemptFinished:
    attempt: _Attempt
    sentence_count: int
    error: BaseException | None


@dataclass
class _Stop:
    reply: Future


class TranscriptionScheduler:
    """Single-slot background scheduler for chapter transcription.

    Args:
        store: Chapter store results are written through
        engine: Transcription engine run for each attempt
        config: Timing, retry and dedup settings
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        store: ChapterStore,
        engine: TranscriptionEngine,
        config: BookscribeConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.engine = engine
        self.config = config
        self._clock = clock
        self._inbox: queue.Queue[Any] = queue.Queue()

        # Worker-owned state.
        self._queue: list[TranscriptionTask] = []
        self._running: _Attempt | None = None
        self._draining: list[_Attempt] = []
        self._enabled = config.enabled
        self._stopping = False

        # Once closed, requests are answered by the caller instead of the worker.
        self._closed = False
        self._stop_requested = False
        self._submit_lock = threading.Lock()

        # Published snapshots, replaced wholesale by the worker.
        self._current: tuple[str, str] | None = None
        self._in_flight: frozenset[tuple[str, str]] = frozenset()
        self._idle = threading.Event()
        self._idle.set()

        self._listeners: list[Callable[[SchedulerEvent], None]] = []
        self._listeners_lock = threading.Lock()
        self._worker = threading.Thread(target=self._run, name="bookscribe-scheduler", daemon=True)

    # Lifecycle -------------------------------------------------------------

    def start(self) -> TranscriptionScheduler:
        if not self._worker.is_alive():
            self._worker.start()
        return self

    def shutdown(self, timeout: float | None = None) -> None:
        """Cancel the running attempt, stop the worker and join its threads.

        Attempts get ``stall_timeout`` seconds to observe cancellation before
        they are abandoned, so the default wait is that plus a small margin.

        Raises:
            concurrent.futures.TimeoutError: If the worker did not stop in time
        """
        if timeout is None:
            timeout = self.config.stall_timeout + SHUTDOWN_MARGIN
        with self._submit_lock:
            if not self._worker.is_alive():
                self._closed = True
                return
            first = not self._stop_requested
            self._stop_requested = True
        if first:
            reply: Future = Future()
            self._inbox.put(_Stop(reply))
            reply.result(timeout=timeout)
        self._worker.join(timeout=timeout)

    def __enter__(self) -> TranscriptionScheduler:
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    def add_listener(self, callback: Callable[[SchedulerEvent], None]) -> None:
        with self._listeners_lock:
            self._listeners.append(callback)

    # Public API --------------------------------------------------------------

    def enqueue_chapter(self, book: Book, chapter: Chapter, priority: Priority = Priority.HIGH) -> Future:
        """Request transcription of ``chapter``.

        Returns:
            Future resolving to True if a new task was queued, False if the
            request was absorbed by deduplication or the scheduler is disabled
            or shut down
        """
        return self._submit(_Enqueue(book, chapter, Priority(priority), Future()))

    def enqueue_next_chapter(self, book: Book, chapter: Chapter) -> Future:
        """Pre-fetch the chapter after ``chapter`` at medium priority."""
        next_chapter = book.next_chapter(chapter)
        if next_chapter is None:
            done: Future = Future()
            done.set_result(False)
            return done
        return self.enqueue_chapter(book, next_chapter, Priority.MEDIUM)

    def queue_first_chapter_transcription(self, book: Book) -> Future:
        """Fire-and-forget low-priority request for a freshly imported book."""
        if not book.chapters:
            done: Future = Future()
            done.set_result(False)
            return done
        return self.enqueue_chapter(book, book.chapters[0], Priority.LOW)

    def cancel_all_for_book(self, book_id: str) -> Future:
        """Drop queued tasks and cancel the running attempt for one book.

        Returns:
            Future resolving to the number of tasks removed
        """
        return self._submit(_CancelBook(book_id, Future()))

    def cancel_all(self) -> Future:
        return self._submit(_CancelBook(None, Future()))

    def set_enabled(self, enabled: bool) -> Future:
        """Turn transcription on or off. Turning it off cancels all work."""
        return self._submit(_SetEnabled(enabled, Future()))

    def status(self, timeout: float | None = 5.0) -> SchedulerStatus:
        return self._submit(_Status(Future())).result(timeout=timeout)

    def current_chapter_id(self, book_id: str | None = None) -> str | None:
        """Id of the chapter currently being transcribed, optionally for one book only."""
        current = self._current
        if current is None or (book_id is not None and current[0] != book_id):
            return None
        return current[1]

    def is_busy(self) -> bool:
        return self._current is not None

    def is_in_flight(self, book_id: str, chapter_id: str) -> bool:
        """Whether the chapter is queued, running or being cancelled."""
        return (book_id, chapter_id) in self._in_flight

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        """Block until nothing is queued or running. Returns False on timeout."""
        self.status(timeout=timeout)
        return self._idle.wait(timeout=timeout)

    def _submit(self, message: Any) -> Future:
        with self._submit_lock:
            if not self._closed:
                self._inbox.put(message)
                return message.reply
        self._reject(message)
        return message.reply

    def _reject(self, message: Any) -> None:
        """Answer a request the worker will never see."""
        if isinstance(message, _Enqueue):
            message.reply.set_result(False)
        elif isinstance(message, (_CancelBook, _SetEnabled)):
            message.reply.set_result(0)
        elif isinstance(message, _Status):
            message.reply.set_result(
                SchedulerStatus(queued=[], running=None, attempts={}, enabled=self._enabled)
            )

    # Worker loop ---------------------------------------------------------------

    def _run(self) -> None:
        logger.debug("Scheduler worker started")
        while True:
            delay = self._next_wakeup_delay()
            try:
                message = self._inbox.get(timeout=delay)
            except queue.Empty:
                message = None

            if isinstance(message, _Stop):
                self._handle_stop(message)
                break
            if message is not None:
                self._handle(message)

            self._check_drains()
            self._check_progress()
            self._dispatch()
            self._publish()
        logger.debug("Scheduler worker stopped")

    def _handle(self, message: Any) -> None:
        if isinstance(message, _Enqueue):
            message.reply.set_result(self._enqueue(message.book, message.chapter, message.priority))
        elif isinstance(message, _AttemptFinished):
            self._finish_attempt(message)
        elif isinstance(message, _CancelBook):
            message.reply.set_result(self._cancel_book(message.book_id))
        elif isinstance(message, _SetEnabled):
            self._enabled = message.enabled
            removed = 0 if message.enabled else self._cancel_book(None)
            logger.info("Transcription %s", "enabled" if message.enabled else "disabled")
            message.reply.set_result(removed)
        elif isinstance(message, _Status):
            message.reply.set_result(self._status())

    def _next_wakeup_delay(self) -> float | None:
        now = self._clock()
        deadlines = [attempt.drain_deadline for attempt in self._draining]
        if self._running is not None:
            deadlines.append(self._running.next_check_at)
        elif not self._draining:
            deadlines.extend(task.not_before for task in self._queue)
        if not deadlines:
            return None
        return max(0.0, min(deadlines) - now)

    def _publish(self) -> None:
        running = self._running
        self._current = running.task.key if running is not None else None
        keys = {task.key for task in self._queue}
        keys.update(attempt.task.key for attempt in self._draining)
        if running is not None:
            keys.add(running.task.key)
        self._in_flight = frozenset(keys)
        if running is None and not self._queue and not self._draining:
            self._idle.set()
        else:
            self._idle.clear()

    # Enqueue / dedup / preemption -----------------------------------------

    def _matches(self, task: TranscriptionTask, book_id: str, chapter: Chapter) -> bool:
        if task.book.id != book_id:
            return False
        return (
            task.chapter.id == chapter.id
            or abs(task.chapter.start - chapter.start) < self.config.dedup_tolerance
        )

    def _will_requeue(self, attempt: _Attempt) -> bool:
        """Whether a cancelled attempt's task goes back to the queue when it ends."""
        if attempt.cancel_reason == CancelReason.PREEMPTED:
            return not self._stopping
        if attempt.cancel_reason == CancelReason.STALLED:
            return attempt.task.attempts + 1 < self.config.max_attempts
        return False

    def _find_existing(self, book_id: str, chapter: Chapter) -> TranscriptionTask | None:
        if self._running is not None and self._matches(self._running.task, book_id, chapter):
            return self._running.task
        for attempt in self._draining:
            if self._will_requeue(attempt) and self._matches(attempt.task, book_id, chapter):
                return attempt.task
        for task in self._queue:
            if self._matches(task, book_id, chapter):
                return task
        return None

    def _enqueue(self, book: Book, chapter: Chapter, priority: Priority) -> bool:
        if not self._enabled or self._stopping:
            logger.debug("Ignoring request for chapter %s: transcription disabled", chapter.id)
            return False

        existing = self._find_existing(book.id, chapter)
        if existing is not None:
            if priority > existing.priority:
                logger.info(
                    "Raising priority of chapter %s from %s to %s",
                    existing.chapter.id,
                    existing.priority.name,
                    priority.name,
                )
                existing.priority = priority
            else:
                logger.debug("Chapter %s already queued or running, skipping", chapter.id)
            if priority == Priority.HIGH and existing.state == TaskState.QUEUED:
                self._maybe_preempt(existing)
            return False

        try:
            if self.store.is_chapter_transcribed(book.id, chapter.id):
                logger.debug("Chapter %s already transcribed, skipping", chapter.id)
                return False
        except StoreError as e:
            logger.warning("Could not check transcription state of chapter %s: %s", chapter.id, e)

        task = TranscriptionTask(book=book, chapter=chapter, priority=priority, created_at=self._clock())
        self._queue.append(task)
        logger.info(
            "Queued chapter %s of book %s (%s priority), %d queued",
            chapter.id,
            book.id,
            priority.name.lower(),
            len(self._queue),
        )
        self._emit(EventKind.QUEUED, task)
        if priority == Priority.HIGH:
            self._maybe_preempt(task)
        return True

    def _maybe_preempt(self, task: TranscriptionTask) -> None:
        running = self._running
        if running is None or running.task is task or task.not_before > self._clock():
            return
        logger.info(
            "Preempting chapter %s for high-priority chapter %s",
            running.task.chapter.id,
            task.chapter.id,
        )
        self._cancel_running(CancelReason.PREEMPTED)

    def _cancel_running(self, reason: CancelReason) -> None:
        attempt = self._running
        if attempt is None:
            return
        attempt.cancel_reason = reason
        attempt.cancel_event.set()
        attempt.task.state = TaskState.CANCELLED
        attempt.drain_deadline = self._clock() + self.config.stall_timeout
        self._draining.append(attempt)
        self._running = None

    def _cancel_book(self, book_id: str | None) -> int:
        removed = [t for t in self._queue if book_id is None or t.book.id == book_id]
        self._queue = [t for t in self._queue if t not in removed]
        for task in removed:
            task.state = TaskState.CANCELLED
            self._emit(EventKind.DROPPED, task, error="cancelled")
            self._clear_in_progress(task)
        count = len(removed)

        if self._running is not None and (book_id is None or self._running.task.book.id == book_id):
            self._cancel_running(CancelReason.BOOK_CANCELLED)
            count += 1
        for attempt in self._draining:
            if book_id is None or attempt.task.book.id == book_id:
                attempt.cancel_reason = CancelReason.BOOK_CANCELLED

        logger.info("Cancelled %d task(s)%s", count, f" for book {book_id}" if book_id else "")
        return count

    # Dispatch ------------------------------------------------------------------

    def _dispatch(self) -> None:
        if self._running is not None or self._draining or not self._enabled or self._stopping:
            return
        now = self._clock()
        ready = [task for task in self._queue if task.not_before <= now]
        if not ready:
            return
        task = min(ready, key=lambda t: t.sort_key())
        self._queue.remove(task)

        task.state = TaskState.RUNNING
        attempt = _Attempt(
            task=task,
            started_at=now,
            last_progress_at=now,
            next_check_at=now + self.config.progress_check_interval,
        )
        attempt.thread = threading.Thread(
            target=self._execute,
            args=(attempt,),
            name=f"bookscribe-attempt-{task.chapter.id[:8]}",
            daemon=True,
        )
        self._running = attempt
        logger.info(
            "Starting chapter %s of book %s (attempt %d/%d, %d queued)",
            task.chapter.id,
            task.book.id,
            task.attempts + 1,
            self.config.max_attempts,
            len(self._queue),
        )
        self._publish()
        attempt.thread.start()
        self._emit(EventKind.STARTED, task, attempt=attempt)

    def _execute(self, attempt: _Attempt) -> None:
        """Runs on the attempt thread; reports back through the inbox."""
        task = attempt.task
        error: BaseException | None = None
        try:
            self.store.mark_chapter_transcribing(task.book.id, task.chapter)
            sentences = []
            for sentence in self.engine.transcribe_chapter(
                task.book,
                task.chapter.start,
                task.chapter.end,
                attempt.cancel_event,
            ):
                sentences.append(sentence)
                attempt.sentence_count += 1
            if attempt.cancel_event.is_set():
                raise TranscriptionCancelled("Cancelled before save")
            self.store.save_chapter_transcription(
                task.book.id,
                task.chapter,
                sentences,
                should_abort=attempt.cancel_event.is_set,
            )
        except Exception as e:
            error = e
        self._inbox.put(_AttemptFinished(attempt, attempt.sentence_count, error))

    # Watchdog ------------------------------------------------------------------

    def _check_progress(self) -> None:
        attempt = self._running
        if attempt is None:
            return
        now = self._clock()
        if now < attempt.next_check_at:
            return
        attempt.next_check_at = now + self.config.progress_check_interval

        count = attempt.sentence_count
        if count != attempt.sampled_count:
            attempt.sampled_count = count
            attempt.last_progress_at = now
            return

        limit = self.config.stall_timeout if count else self.config.first_sentence_timeout
        idle_for = now - attempt.last_progress_at
        if idle_for >= limit:
            logger.warning(
                "Chapter %s stalled: no new sentence for %.1fs (%d so far)",
                attempt.task.chapter.id,
                idle_for,
                count,
            )
            self._cancel_running(CancelReason.STALLED)

    def _check_drains(self) -> None:
        now = self._clock()
        for attempt in list(self._draining):
            if now >= attempt.drain_deadline:
                logger.error(
                    "Attempt for chapter %s did not stop after cancellation, abandoning it",
                    attempt.task.chapter.id,
                )
                self._finish_attempt(
                    _AttemptFinished(attempt, attempt.sentence_count, TranscriptionCancelled("abandoned"))
                )

    # Completion / retry ------------------------------------------------------

    def _finish_attempt(self, message: _AttemptFinished) -> None:
        attempt = message.attempt
        if attempt is self._running:
            self._running = None
        elif attempt in self._draining:
            self._draining.remove(attempt)
        else:
            return

        task = attempt.task
        error = message.error
        reason = attempt.cancel_reason

        if error is None:
            task.state = TaskState.COMPLETE
            logger.info(
                "Completed chapter %s of book %s with %d sentences",
                task.chapter.id,
                task.book.id,
                message.sentence_count,
            )
            self._emit(EventKind.COMPLETED, task, attempt=attempt)
            return

        if reason == CancelReason.PREEMPTED and not self._stopping:
            # Requeued behind the request that preempted it.
            task.state = TaskState.QUEUED
            task.created_at = self._clock()
            self._queue.append(task)
            logger.info("Chapter %s returned to queue after preemption", task.chapter.id)
            self._emit(EventKind.CANCELLED, task, attempt=attempt, error="preempted")
            return

        if reason in (CancelReason.BOOK_CANCELLED, CancelReason.SHUTDOWN) or (
            reason == CancelReason.PREEMPTED and self._stopping
        ):
            task.state = TaskState.CANCELLED
            self._emit(EventKind.CANCELLED, task, attempt=attempt, error=reason.value)
            self._clear_in_progress(task)
            return

        if reason == CancelReason.STALLED:
            error = StallError(
                f"No progress on chapter {task.chapter.id} after {message.sentence_count} sentences"
            )
            self._emit(EventKind.STALLED, task, attempt=attempt, error=str(error))
        else:
            self._emit(EventKind.ERRORED, task, attempt=attempt, error=str(error))

        if isinstance(error, AvailabilityError):
            task.state = TaskState.FAILED
            task.last_error = str(error)
            logger.warning("Dropping chapter %s: %s", task.chapter.id, error)
            self._emit(EventKind.DROPPED, task, error=str(error))
            self._clear_in_progress(task)
            return

        task.attempts += 1
        task.last_error = str(error)
        if task.attempts >= self.config.max_attempts:
            task.state = TaskState.FAILED
            logger.warning(
                "Giving up on chapter %s after %d attempts: %s",
                task.chapter.id,
                task.attempts,
                error,
            )
            self._emit(EventKind.GAVE_UP, task, error=str(error))
            self._clear_in_progress(task)
            return

        task.state = TaskState.QUEUED
        task.not_before = self._clock() + self.config.retry_delay
        self._queue.append(task)
        logger.warning(
            "Chapter %s attempt %d failed (%s), retrying in %.1fs",
            task.chapter.id,
            task.attempts,
            error,
            self.config.retry_delay,
        )
        self._emit(EventKind.RETRY_SCHEDULED, task, error=str(error))

    def _clear_in_progress(self, task: TranscriptionTask) -> None:
        try:
            self.store.clear_chapter_transcribing(task.book.id, task.chapter.id)
        except StoreError as e:
            logger.warning("Could not clear in-progress record for chapter %s: %s", task.chapter.id, e)

    # Status / stop -------------------------------------------------------------

    def _status(self) -> SchedulerStatus:
        queued = sorted(self._queue, key=lambda t: t.sort_key())
        attempts = {task.key: task.attempts for task in queued}
        running = None
        if self._running is not None:
            running = self._running.task.snapshot()
            attempts[self._running.task.key] = self._running.task.attempts
        for attempt in self._draining:
            attempts[attempt.task.key] = attempt.task.attempts
        return SchedulerStatus(
            queued=[task.snapshot() for task in queued],
            running=running,
            attempts=attempts,
            enabled=self._enabled,
        )

    def _handle_stop(self, message: _Stop) -> None:
        self._stopping = True
        attempts = list(self._draining)
        if self._running is not None:
            attempts.append(self._running)
            self._cancel_running(CancelReason.SHUTDOWN)
        for attempt in attempts:
            attempt.cancel_reason = CancelReason.SHUTDOWN
        for task in self._queue:
            self._clear_in_progress(task)
        self._queue.clear()
        with self._submit_lock:
            self._closed = True

        deadline = self._clock() + self.config.stall_timeout
        for attempt in attempts:
            if attempt.thread is not None:
                attempt.thread.join(timeout=max(0.0, deadline - self._clock()))
        # Drain completion messages so in-progress records are cleared.
        while True:
            try:
                pending = self._inbox.get_nowait()
            except queue.Empty:
                break
            if isinstance(pending, _AttemptFinished):
                self._finish_attempt(pending)
            else:
                self._reject(pending)
        for attempt in list(self._draining):
            logger.error(
                "Attempt for chapter %s did not stop before shutdown, abandoning it",
                attempt.task.chapter.id,
            )
            self._finish_attempt(
                _AttemptFinished(attempt, attempt.sentence_count, TranscriptionCancelled("abandoned"))
            )
        self._publish()
        message.reply.set_result(None)

    # Events ------------------------------------------------------------------

    def _emit(
        self,
        kind: EventKind,
        task: TranscriptionTask,
        attempt: _Attempt | None = None,
        error: str | None = None,
    ) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        if not listeners:
            return
        event = SchedulerEvent(
            kind=kind,
            task=task.snapshot(),
            book=task.book,
            attempt_id=attempt.id if attempt is not None else None,
            sentence_count=attempt.sentence_count if attempt is not None else 0,
            error=error,
        )
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Scheduler listener failed on %s event", kind.value)
