"""
bookscribe.transcribe - Chapter transcription engine.

Extracts a chapter's audio, runs it through the configured speech-to-text
capability and yields finalized, time-stamped sentences.
"""

from __future__ import annotations
