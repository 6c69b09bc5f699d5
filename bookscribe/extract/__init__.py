"""
bookscribe.extract - Bounded audio extraction.

Cuts a chapter's [start, end) range out of a book's source file with FFmpeg
as 16kHz mono WAV for speech recognition.
"""

from __future__ import annotations
