"""
bookscribe.store.database - SQLite chapter store.

Durable record of which chapters are transcribed or in progress and the
ordered sentences belonging to each chapter.

Every connection is owned by one ChapterStore. Writes go through a single
writer connection under a lock, one IMMEDIATE transaction per operation.
Reads use per-thread connections on a WAL database, so they run concurrently
with each other and only ever see committed writes.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

from bookscribe.exceptions import StoreError, TranscriptionCancelled
from bookscribe.models import Chapter, ChapterTranscriptionRecord, Sentence, SentenceSpan
from bookscribe.utils import round_timestamp

logger = logging.getLogger(__name__)

SENTENCES_TABLE = """
CREATE TABLE IF NOT EXISTS sentences (
    id TEXT PRIMARY KEY,
    book_id TEXT NOT NULL,
    chapter_id TEXT,
    text TEXT NOT NULL,
    start_time REAL NOT NULL,
    end_time REAL NOT NULL,
    chunk_id TEXT,
    created_at REAL NOT NULL
)
"""

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS chapter_transcriptions (
    book_id TEXT NOT NULL,
    chapter_id TEXT NOT NULL,
    start_time REAL NOT NULL,
    end_time REAL NOT NULL,
    is_complete INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL,
    PRIMARY KEY (book_id, chapter_id)
);

{SENTENCES_TABLE};

CREATE INDEX IF NOT EXISTS idx_sentences_book_chapter ON sentences(book_id, chapter_id);
CREATE INDEX IF NOT EXISTS idx_sentences_book_time ON sentences(book_id, start_time);
CREATE INDEX IF NOT EXISTS idx_sentences_book_end_time ON sentences(book_id, end_time);
"""

SENTENCE_COLUMNS = "id, book_id, chapter_id, text, start_time, end_time, chunk_id, created_at"

# Tries per operation while the database is locked, on top of busy_timeout.
BUSY_RETRIES = 3
BUSY_BACKOFF = 0.1

T = TypeVar("T")


class ChapterStore:
    """Single-writer / multi-reader store for chapter transcriptions.

    Args:
        path: SQLite database file. Created with its parent directory if missing.
        busy_timeout: Seconds each try of an operation waits on a locked
            database. An operation is tried BUSY_RETRIES times before it
            fails with StoreError.
    """

    def __init__(self, path: Path, busy_timeout: float = 5.0) -> None:
        self.path = Path(path).expanduser()
        self.busy_timeout = busy_timeout
        self._write_lock = threading.Lock()
        self._local = threading.local()
        self._readers: list[sqlite3.Connection] = []
        self._readers_lock = threading.Lock()
        self._closed = False

        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._writer = self._connect()
            self._writer.execute("PRAGMA journal_mode=WAL")
            with self._write_lock:
                self._migrate_legacy_sentences(self._writer)
                self._writer.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to open transcription database {self.path}: {e}") from e
        logger.debug("Opened chapter store at %s", self.path)

    def __enter__(self) -> ChapterStore:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # Connection management ---------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.path,
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def _reader(self) -> sqlite3.Connection:
        if self._closed:
            raise StoreError("Chapter store is closed")
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
            with self._readers_lock:
                self._readers.append(conn)
        return conn

    def _retry_busy(self, operation: Callable[[], T], what: str) -> T:
        """Run ``operation``, retrying a bounded number of times while the file is locked.

        Each try already waits up to ``busy_timeout`` inside SQLite. Errors
        other than a busy/locked database fail at once.
        """
        attempt = 1
        while True:
            try:
                return operation()
            except sqlite3.Error as e:
                if attempt >= BUSY_RETRIES or not _is_busy(e):
                    raise StoreError(f"{what} failed: {e}") from e
                logger.warning("Database busy during %s, retrying (%d/%d)", what, attempt, BUSY_RETRIES)
                time.sleep(BUSY_BACKOFF * attempt)
                attempt += 1

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        """Run one write transaction on the writer connection."""
        if self._closed:
            raise StoreError("Chapter store is closed")
        with self._write_lock:
            conn = self._writer
            self._retry_busy(lambda: conn.execute("BEGIN IMMEDIATE"), "begin write")
            try:
                yield conn
            except sqlite3.Error as e:
                _rollback(conn)
                raise StoreError(f"Write failed: {e}") from e
            except BaseException:
                _rollback(conn)
                raise
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                _rollback(conn)
                raise StoreError(f"Failed to commit write: {e}") from e

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        return self._retry_busy(lambda: self._reader().execute(sql, params).fetchall(), "query")

    def close(self) -> None:
        """Close every connection owned by this store."""
        if self._closed:
            return
        self._closed = True
        with self._readers_lock:
            for conn in self._readers:
                conn.close()
            self._readers.clear()
        with self._write_lock:
            self._writer.close()

    # Schema --------------------------------------------------------------

    def _migrate_legacy_sentences(self, conn: sqlite3.Connection) -> None:
        """Bring a chunk-era sentences table up to the chapter layout.

        Older databases keyed sentences by a mandatory chunk id and had no
        chapter column. Their rows are kept with chapter_id NULL; chunk_id
        becomes nullable so new rows can omit it.
        """
        columns = {row["name"]: row for row in conn.execute("PRAGMA table_info(sentences)")}
        if not columns:
            return
        if "chapter_id" in columns and not columns.get("chunk_id", {"notnull": 0})["notnull"]:
            return

        logger.info("Migrating legacy sentences table in %s", self.path)
        chunk_expr = "chunk_id" if "chunk_id" in columns else "NULL"
        chapter_expr = "chapter_id" if "chapter_id" in columns else "NULL"
        conn.execute("BEGIN IMMEDIATE")
        try:
            conn.execute("ALTER TABLE sentences RENAME TO sentences_legacy")
            conn.execute(SENTENCES_TABLE)
            conn.execute(
                f"INSERT INTO sentences ({SENTENCE_COLUMNS}) "
                f"SELECT id, book_id, {chapter_expr}, text, start_time, end_time, "
                f"{chunk_expr}, created_at FROM sentences_legacy"
            )
            conn.execute("DROP TABLE sentences_legacy")
            conn.execute("COMMIT")
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise

    # Reads ---------------------------------------------------------------

    def get_chapter_record(self, book_id: str, chapter_id: str) -> ChapterTranscriptionRecord | None:
        rows = self._query(
            "SELECT * FROM chapter_transcriptions WHERE book_id = ? AND chapter_id = ?",
            (book_id, chapter_id),
        )
        return _row_to_record(rows[0]) if rows else None

    def list_chapter_records(self, book_id: str) -> list[ChapterTranscriptionRecord]:
        rows = self._query(
            "SELECT * FROM chapter_transcriptions WHERE book_id = ? ORDER BY start_time ASC",
            (book_id,),
        )
        return [_row_to_record(row) for row in rows]

    def is_chapter_transcribed(self, book_id: str, chapter_id: str) -> bool:
        record = self.get_chapter_record(book_id, chapter_id)
        return record is not None and record.is_complete

    def is_chapter_transcribing(self, book_id: str, chapter_id: str) -> bool:
        """Whether an in-progress record exists (completion flag unset)."""
        record = self.get_chapter_record(book_id, chapter_id)
        return record is not None and not record.is_complete

    def chapter_count(self, book_id: str) -> int:
        rows = self._query(
            "SELECT COUNT(*) AS count FROM chapter_transcriptions WHERE book_id = ?",
            (book_id,),
        )
        return int(rows[0]["count"])

    def load_sentences_for_chapter(self, book_id: str, chapter_id: str) -> list[Sentence]:
        """Sentences of one chapter, ascending by start time."""
        rows = self._query(
            f"SELECT {SENTENCE_COLUMNS} FROM sentences "
            "WHERE book_id = ? AND chapter_id = ? ORDER BY start_time ASC, end_time ASC",
            (book_id, chapter_id),
        )
        return _rows_to_sentences(rows)

    def load_sentences(self, book_id: str, start: float, end: float) -> list[Sentence]:
        """Sentences starting in [start, end), ascending by start time.

        Includes rows written by the legacy chunked layout.
        """
        rows = self._query(
            f"SELECT {SENTENCE_COLUMNS} FROM sentences "
            "WHERE book_id = ? AND start_time >= ? AND start_time < ? "
            "ORDER BY start_time ASC, end_time ASC",
            (book_id, start, end),
        )
        return _rows_to_sentences(rows)

    def find_sentence(self, book_id: str, at_time: float) -> Sentence | None:
        """The sentence whose [start, end) range contains ``at_time``."""
        rows = self._query(
            f"SELECT {SENTENCE_COLUMNS} FROM sentences "
            "WHERE book_id = ? AND start_time <= ? AND end_time > ? "
            "ORDER BY start_time DESC LIMIT 1",
            (book_id, at_time, at_time),
        )
        sentences = _rows_to_sentences(rows)
        return sentences[0] if sentences else None

    def get_transcription_progress(self, book_id: str) -> float:
        """Latest sentence end time for the book, 0.0 when nothing is stored."""
        rows = self._query(
            "SELECT MAX(end_time) AS max_time FROM sentences WHERE book_id = ?",
            (book_id,),
        )
        value = rows[0]["max_time"] if rows else None
        return float(value) if value is not None else 0.0

    # Writes --------------------------------------------------------------

    def mark_chapter_transcribing(self, book_id: str, chapter: Chapter) -> None:
        """Idempotently record that ``chapter`` is being transcribed.

        A chapter that is already complete stays complete.
        """
        with self._write() as conn:
            conn.execute(
                """
                INSERT INTO chapter_transcriptions
                    (book_id, chapter_id, start_time, end_time, is_complete, created_at)
                VALUES (?, ?, ?, ?, 0, ?)
                ON CONFLICT(book_id, chapter_id) DO UPDATE SET
                    start_time = excluded.start_time,
                    end_time = excluded.end_time
                """,
                (book_id, chapter.id, chapter.start, chapter.end, time.time()),
            )

    def clear_chapter_transcribing(self, book_id: str, chapter_id: str) -> None:
        """Drop an in-progress record. Completed records are left alone."""
        with self._write() as conn:
            conn.execute(
                "DELETE FROM chapter_transcriptions "
                "WHERE book_id = ? AND chapter_id = ? AND is_complete = 0",
                (book_id, chapter_id),
            )

    def save_chapter_transcription(
        self,
        book_id: str,
        chapter: Chapter,
        sentences: Iterable[SentenceSpan | Sentence],
        should_abort: Callable[[], bool] | None = None,
    ) -> int:
        """Atomically replace a chapter's sentences and mark it complete.

        Prior sentences of the chapter (including legacy rows whose end time
        falls inside it) are deleted, the new set inserted and the completion
        flag set in one transaction. ``should_abort`` is checked right before
        commit; if it returns True nothing is persisted.

        Returns:
            Number of sentences written

        Raises:
            TranscriptionCancelled: If ``should_abort`` fired before commit
            StoreError: If the write failed
        """
        now = time.time()
        rows = []
        for s in sentences:
            sentence = s if isinstance(s, Sentence) else Sentence(
                book_id=book_id,
                chapter_id=chapter.id,
                text=s.text,
                start=round_timestamp(s.start),
                end=round_timestamp(s.end),
                created_at=now,
            )
            rows.append(
                (
                    sentence.id,
                    book_id,
                    chapter.id,
                    sentence.text,
                    sentence.start,
                    sentence.end,
                    None,
                    sentence.created_at,
                )
            )

        with self._write() as conn:
            conn.execute(
                "DELETE FROM sentences WHERE book_id = ? AND chapter_id = ?",
                (book_id, chapter.id),
            )
            conn.execute(
                "DELETE FROM sentences WHERE book_id = ? AND chapter_id IS NULL "
                "AND end_time > ? AND end_time <= ?",
                (book_id, chapter.start, chapter.end),
            )
            conn.executemany(
                f"INSERT INTO sentences ({SENTENCE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
            conn.execute(
                """
                INSERT INTO chapter_transcriptions
                    (book_id, chapter_id, start_time, end_time, is_complete, created_at)
                VALUES (?, ?, ?, ?, 1, ?)
                ON CONFLICT(book_id, chapter_id) DO UPDATE SET
                    start_time = excluded.start_time,
                    end_time = excluded.end_time,
                    is_complete = 1,
                    created_at = excluded.created_at
                """,
                (book_id, chapter.id, chapter.start, chapter.end, now),
            )
            if should_abort is not None and should_abort():
                raise TranscriptionCancelled(f"Save of chapter {chapter.id} aborted")

        logger.info("Saved %d sentences for chapter %s of book %s", len(rows), chapter.id, book_id)
        return len(rows)

    def delete_transcription(self, book_id: str) -> None:
        """Remove every chapter record and sentence of a book."""
        with self._write() as conn:
            conn.execute("DELETE FROM sentences WHERE book_id = ?", (book_id,))
            conn.execute("DELETE FROM chapter_transcriptions WHERE book_id = ?", (book_id,))
        logger.info("Deleted transcription data for book %s", book_id)


def _is_busy(error: sqlite3.Error) -> bool:
    message = str(error).lower()
    return isinstance(error, sqlite3.OperationalError) and ("locked" in message or "busy" in message)


def _rollback(conn: sqlite3.Connection) -> None:
    if not conn.in_transaction:
        return
    try:
        conn.execute("ROLLBACK")
    except sqlite3.Error as e:
        raise StoreError(f"Rollback failed: {e}") from e


def _row_to_record(row: sqlite3.Row) -> ChapterTranscriptionRecord:
    return ChapterTranscriptionRecord(
        book_id=row["book_id"],
        chapter_id=row["chapter_id"],
        start=row["start_time"],
        end=row["end_time"],
        is_complete=bool(row["is_complete"]),
        transcribed_at=row["created_at"],
    )


def _rows_to_sentences(rows: list[sqlite3.Row]) -> list[Sentence]:
    sentences = []
    for row in rows:
        if row["end_time"] <= row["start_time"]:
            logger.debug("Skipping sentence %s with empty time range", row["id"])
            continue
        sentences.append(
            Sentence(
                id=row["id"],
                book_id=row["book_id"],
                chapter_id=row["chapter_id"],
                text=row["text"],
                start=row["start_time"],
                end=row["end_time"],
                chunk_id=row["chunk_id"],
                created_at=row["created_at"],
            )
        )
    return sentences
