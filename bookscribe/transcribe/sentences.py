"""
bookscribe.transcribe.sentences - Sentence assembly and timestamp normalization.

Words arrive from the recognizer with offsets relative to the extracted
segment. They are grouped into sentences on terminal punctuation, shifted
into the book's absolute timeline and rounded to 0.1s.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from bookscribe.models import SentenceSpan
from bookscribe.transcribe.speech import WordSpan
from bookscribe.utils import TIMESTAMP_RESOLUTION, round_timestamp

TERMINAL_PUNCTUATION = (".", "!", "?", "…")
CLOSING_MARKS = "\"')]}»”’"
MIN_SENTENCE_DURATION = TIMESTAMP_RESOLUTION


def ends_sentence(text: str) -> bool:
    """Whether a word closes a sentence, ignoring trailing quotes and brackets."""
    return text.rstrip().rstrip(CLOSING_MARKS).endswith(TERMINAL_PUNCTUATION)


def _append(current: str, piece: str) -> str:
    if not current:
        return piece
    if piece and not current[-1].isspace() and not piece[0].isspace():
        return f"{current} {piece}"
    return current + piece


def split_sentences(words: Iterable[WordSpan]) -> Iterator[SentenceSpan]:
    """Group words into sentences as they arrive.

    A sentence takes its start from its first word and its end from its last.
    Whatever is left when the stream ends is flushed as a final sentence.
    """
    text = ""
    start: float | None = None
    end = 0.0

    for word in words:
        if not word.text.strip() and not text:
            continue
        if start is None:
            start = word.start
        end = max(end, word.end)
        text = _append(text, word.text)

        if ends_sentence(word.text):
            sentence = " ".join(text.split())
            if sentence:
                yield SentenceSpan(sentence, start, end)
            text, start, end = "", None, 0.0

    sentence = " ".join(text.split())
    if sentence and start is not None:
        yield SentenceSpan(sentence, start, end)


def normalize_sentence(
    span: SentenceSpan,
    offset: float,
    chapter_end: float | None = None,
) -> SentenceSpan:
    """Shift a sentence into book time and round both ends to 0.1s.

    The end is clamped to ``chapter_end`` so a sentence always belongs to the
    chapter that produced it, and a zero-length sentence is widened to
    MIN_SENTENCE_DURATION so that start < end holds.
    """
    start = round_timestamp(span.start + offset)
    end = round_timestamp(span.end + offset)

    limit = round_timestamp(chapter_end) if chapter_end is not None else None
    if limit is not None:
        end = min(end, limit)

    if end <= start:
        end = round_timestamp(start + MIN_SENTENCE_DURATION)
        if limit is not None and end > limit:
            end = limit
            start = round_timestamp(limit - MIN_SENTENCE_DURATION)

    return SentenceSpan(span.text, start, end)
