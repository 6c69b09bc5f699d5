"""
Bookscribe - chapter transcription pipeline for audiobooks.

Turns chapters of audiobook audio into time-stamped sentences in the
background: playback trigger → scheduler → transcription engine → chapter
store, with captions read back in sync with playback.
"""

__version__ = "0.1.0"
