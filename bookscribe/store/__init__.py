"""
bookscribe.store - Persistent chapter and sentence store.

SQLite-backed record of transcribed chapters and their sentences, read by
caption display and written by the scheduler.
"""

from __future__ import annotations

from bookscribe.store.database import ChapterStore

__all__ = ["ChapterStore"]
