"""
bookscribe.transcribe.engine - Chapter transcription engine.

Stateless per call: given a book and a chapter's time range it checks the
speech capability, extracts the bounded audio, streams it through the
recognizer and yields finalized sentences in absolute book time. Sentences
are yielded one at a time so the scheduler can watch progress.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager
from pathlib import Path

from bookscribe.exceptions import (
    AvailabilityError,
    BookscribeError,
    TranscriptionCancelled,
    TranscriptionError,
)
from bookscribe.extract.audio import extracted_segment
from bookscribe.models import Book, SentenceSpan
from bookscribe.transcribe.sentences import normalize_sentence, split_sentences
from bookscribe.transcribe.speech import SpeechRecognizer

logger = logging.getLogger(__name__)

SegmentExtractor = Callable[
    [Path, float, float, "threading.Event | None"], AbstractContextManager[Path]
]


class TranscriptionEngine:
    """Turns one chapter of a book into time-stamped sentences.

    Args:
        recognizer: Speech-to-text capability
        locale: The single configured locale
        extractor: Context manager factory producing the bounded audio file;
            defaults to FFmpeg extraction into a temporary directory
    """

    def __init__(
        self,
        recognizer: SpeechRecognizer,
        locale: str = "en_US",
        extractor: SegmentExtractor = extracted_segment,
    ) -> None:
        self.recognizer = recognizer
        self.locale = locale
        self._extractor = extractor

    def is_available(self) -> bool:
        return self.recognizer.is_available(self.locale)

    def transcribe_chapter(
        self,
        book: Book,
        chapter_start: float,
        chapter_end: float,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[SentenceSpan]:
        """Yield the chapter's sentences in order.

        Args:
            book: Book whose source file is transcribed
            chapter_start: Chapter start in absolute book time
            chapter_end: Chapter end in absolute book time
            cancel_event: Cooperative cancellation signal, checked during
                extraction, between recognizer results and between sentences

        Raises:
            AvailabilityError: Speech capability or locale unavailable
            ExtractionError: Bounded audio could not be produced
            TranscriptionError: Recognizer failed mid-stream
            TranscriptionCancelled: ``cancel_event`` was set
        """
        if not self.recognizer.is_available(self.locale):
            raise AvailabilityError(
                f"Speech backend '{self.recognizer.name}' unavailable for locale {self.locale}"
            )

        _check_cancelled(cancel_event)
        logger.info(
            "Transcribing %s [%.1fs - %.1fs]",
            book.title or book.id,
            chapter_start,
            chapter_end,
        )

        with self._extractor(book.source_path, chapter_start, chapter_end, cancel_event) as audio_path:
            _check_cancelled(cancel_event)
            words = self.recognizer.transcribe(audio_path, self.locale, cancel_event)
            count = 0
            try:
                for span in split_sentences(words):
                    _check_cancelled(cancel_event)
                    sentence = normalize_sentence(span, chapter_start, chapter_end)
                    count += 1
                    logger.debug("Sentence %d [%.1f - %.1f]: %s", count, sentence.start, sentence.end, sentence.text[:60])
                    yield sentence
            except BookscribeError:
                raise
            except Exception as e:
                raise TranscriptionError(f"Transcription failed: {e}") from e

        logger.info("Finished %s [%.1fs - %.1fs]: %d sentences", book.title or book.id, chapter_start, chapter_end, count)


def _check_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise TranscriptionCancelled("Transcription cancelled")
