"""
bookscribe.trigger - Playback-driven transcription requests.

Turns playback-state changes into scheduler requests. Requests are debounced
per book with a short settle delay and revalidated against the playback
state before being sent, so scrubbing through chapters does not churn the
scheduler.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Protocol

from bookscribe.config import BookscribeConfig
from bookscribe.exceptions import StoreError
from bookscribe.models import Book, Chapter, Priority
from bookscribe.scheduler import EventKind, SchedulerEvent, TranscriptionScheduler
from bookscribe.store import ChapterStore

logger = logging.getLogger(__name__)


class TriggerReason(str, Enum):
    CHAPTER_CHANGED = "chapter-changed"
    PLAYBACK_STARTED = "playback-started"
    CHAPTERS_LOADED = "chapters-loaded"


class PlaybackState(Protocol):
    """What the trigger needs to know about the player."""

    def chapters_loaded(self, book_id: str) -> bool: ...

    def current_chapter_id(self, book_id: str) -> str | None: ...


class PlaybackTrigger:
    """Requests high-priority transcription for the chapter being listened to.

    Args:
        scheduler: Scheduler receiving requests
        store: Store consulted for already-transcribed chapters
        playback: Live playback state; None means no player is attached and
            chapter changes are taken at face value
        config: Settle delay and pre-fetch settings
    """

    def __init__(
        self,
        scheduler: TranscriptionScheduler,
        store: ChapterStore,
        playback: PlaybackState | None,
        config: BookscribeConfig,
    ) -> None:
        self.scheduler = scheduler
        self.store = store
        self.playback = playback
        self.config = config
        self._pending: dict[str, threading.Timer] = {}
        self._lock = threading.Lock()
        self._closed = False
        scheduler.add_listener(self._on_scheduler_event)

    def on_playback_event(self, book: Book, chapter: Chapter, reason: TriggerReason) -> bool:
        """Handle a playback-state change.

        Returns:
            True if a request was scheduled after the settle delay
        """
        if self._closed:
            return False
        if self.playback is not None and not self.playback.chapters_loaded(book.id):
            logger.debug("Ignoring %s for book %s: chapters not loaded", reason.value, book.id)
            return False
        if not self._needs_transcription(book, chapter):
            return False

        logger.debug("Chapter %s needs transcription (%s), settling", chapter.id, reason.value)
        timer = threading.Timer(self.config.settle_delay, self._settled, args=(book, chapter))
        timer.daemon = True
        with self._lock:
            previous = self._pending.pop(book.id, None)
            if previous is not None:
                previous.cancel()
            self._pending[book.id] = timer
        timer.start()
        return True

    def _needs_transcription(self, book: Book, chapter: Chapter) -> bool:
        if self.scheduler.is_in_flight(book.id, chapter.id):
            return False
        try:
            return not self.store.is_chapter_transcribed(book.id, chapter.id)
        except StoreError as e:
            logger.warning("Could not read transcription state for chapter %s: %s", chapter.id, e)
            return True

    def _settled(self, book: Book, chapter: Chapter) -> None:
        with self._lock:
            if self._pending.get(book.id) is not threading.current_thread():
                return
            del self._pending[book.id]
        if self._closed:
            return

        if self.playback is not None and self.playback.current_chapter_id(book.id) != chapter.id:
            logger.debug("Chapter %s no longer active, dropping request", chapter.id)
            return
        if not self._needs_transcription(book, chapter):
            return
        self.scheduler.enqueue_chapter(book, chapter, Priority.HIGH)

    def _on_scheduler_event(self, event: SchedulerEvent) -> None:
        if event.kind != EventKind.STARTED or not self.config.prefetch_next_chapter:
            return
        # Look ahead from the chapter being listened to only, not from pre-fetches.
        if event.task.priority != Priority.HIGH:
            return
        chapter = event.book.chapter_by_id(event.task.chapter_id)
        if chapter is not None:
            self.scheduler.enqueue_next_chapter(event.book, chapter)

    def cancel_pending(self, book_id: str | None = None) -> None:
        """Drop settle timers for one book, or all of them."""
        with self._lock:
            book_ids = [book_id] if book_id is not None else list(self._pending)
            for key in book_ids:
                timer = self._pending.pop(key, None)
                if timer is not None:
                    timer.cancel()

    def close(self) -> None:
        self._closed = True
        self.cancel_pending()
