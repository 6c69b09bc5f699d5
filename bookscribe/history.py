"""
bookscribe.history - Attempt history for diagnostics.

Subscribes to scheduler events and keeps one record per transcription
attempt, with summary statistics and text/JSON export.
"""

from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from bookscribe.io import write_json
from bookscribe.scheduler import EventKind, SchedulerEvent
from bookscribe.utils import format_duration

OUTCOMES = {
    EventKind.COMPLETED: "completed",
    EventKind.CANCELLED: "cancelled",
    EventKind.STALLED: "stalled",
    EventKind.ERRORED: "failed",
}


@dataclass
class AttemptRecord:
    attempt_id: str
    book_id: str
    book_title: str
    chapter_id: str
    chapter_start: float
    chapter_end: float
    priority: str
    started_at: float
    finished_at: float | None = None
    outcome: str = "running"
    sentence_count: int = 0
    error: str | None = None

    @property
    def duration(self) -> float | None:
        if self.finished_at is None:
            return None
        return self.finished_at - self.started_at


@dataclass(frozen=True)
class HistoryStats:
    total: int
    running: int
    completed: int
    failed: int
    cancelled: int
    stalled: int
    average_duration: float | None


class TranscriptionHistory:
    """Thread-safe log of transcription attempts.

    Register with ``scheduler.add_listener(history.record)``.
    """

    def __init__(self) -> None:
        self._records: dict[str, AttemptRecord] = {}
        self._lock = threading.Lock()

    def record(self, event: SchedulerEvent) -> None:
        if event.attempt_id is None:
            return
        with self._lock:
            if event.kind == EventKind.STARTED:
                self._records[event.attempt_id] = AttemptRecord(
                    attempt_id=event.attempt_id,
                    book_id=event.task.book_id,
                    book_title=event.book.title,
                    chapter_id=event.task.chapter_id,
                    chapter_start=event.task.chapter_start,
                    chapter_end=event.task.chapter_end,
                    priority=event.task.priority.name.lower(),
                    started_at=event.timestamp,
                )
                return

            outcome = OUTCOMES.get(event.kind)
            entry = self._records.get(event.attempt_id)
            if outcome is None or entry is None:
                return
            entry.outcome = outcome
            entry.finished_at = event.timestamp
            entry.sentence_count = event.sentence_count
            entry.error = event.error

    def records(self) -> list[AttemptRecord]:
        with self._lock:
            return sorted(self._records.values(), key=lambda r: r.started_at)

    def stats(self) -> HistoryStats:
        records = self.records()
        counts = {outcome: 0 for outcome in ("running", "completed", "failed", "cancelled", "stalled")}
        for entry in records:
            counts[entry.outcome] += 1
        durations = [r.duration for r in records if r.outcome == "completed" and r.duration is not None]
        return HistoryStats(
            total=len(records),
            average_duration=sum(durations) / len(durations) if durations else None,
            **counts,
        )

    def export(self) -> str:
        """Render the history as plain text."""
        stats = self.stats()
        lines = [
            "Transcription history",
            f"Exported: {time.strftime('%Y-%m-%d %H:%M:%S')}",
            f"Attempts: {stats.total} (running {stats.running}, completed {stats.completed}, "
            f"failed {stats.failed}, stalled {stats.stalled}, cancelled {stats.cancelled})",
        ]
        if stats.average_duration is not None:
            lines.append(f"Average duration: {stats.average_duration:.1f}s")
        lines.append("")

        for entry in self.records():
            span = f"{format_duration(entry.chapter_start)}-{format_duration(entry.chapter_end)}"
            line = f"[{entry.outcome}] {entry.book_title or entry.book_id} {span} ({entry.priority})"
            if entry.duration is not None:
                line += f" {entry.duration:.1f}s"
            line += f" sentences={entry.sentence_count}"
            if entry.error:
                line += f" error={entry.error}"
            lines.append(line)
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        return {
            "stats": asdict(self.stats()),
            "attempts": [asdict(entry) for entry in self.records()],
        }

    def export_json(self, path: Path) -> None:
        write_json(path, self.to_dict())

    def flush(self) -> None:
        """Forget finished attempts; running ones are kept."""
        with self._lock:
            self._records = {k: v for k, v in self._records.items() if v.outcome == "running"}
