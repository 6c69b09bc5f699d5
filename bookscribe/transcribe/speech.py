"""
bookscribe.transcribe.speech - Speech-to-text capability.

A recognizer answers whether it can transcribe a locale and turns a bounded
audio file into a stream of finalized, time-stamped words. faster-whisper is
the real backend; UnavailableRecognizer stands in when no backend is
configured so the rest of the pipeline never branches on platform support.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from pathlib import Path
from typing import Any, NamedTuple

from bookscribe.config import BookscribeConfig
from bookscribe.exceptions import (
    AvailabilityError,
    DependencyError,
    TranscriptionCancelled,
    TranscriptionError,
)

logger = logging.getLogger(__name__)


class WordSpan(NamedTuple):
    """A finalized text span with offsets relative to the start of the audio file."""

    text: str
    start: float
    end: float


def locale_language(locale: str) -> str:
    """``en_US`` / ``en-US`` -> ``en``."""
    return locale.replace("_", "-").split("-")[0].lower()


class SpeechRecognizer(ABC):
    """Interface every speech-to-text backend implements."""

    name: str = "base"

    @abstractmethod
    def is_available(self, locale: str) -> bool:
        """Whether transcription for ``locale`` can run right now."""

    @abstractmethod
    def install(self, locale: str) -> None:
        """One-time model/locale installation, run outside the scheduler."""

    @abstractmethod
    def transcribe(
        self,
        audio_path: Path,
        locale: str,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[WordSpan]:
        """Yield finalized words in order.

        Raises:
            TranscriptionCancelled: If ``cancel_event`` is set mid-stream
            TranscriptionError: If the backend fails
        """


class UnavailableRecognizer(SpeechRecognizer):
    """Recognizer used when no speech backend is configured."""

    name = "none"

    def is_available(self, locale: str) -> bool:
        return False

    def install(self, locale: str) -> None:
        raise AvailabilityError("No speech backend configured")

    def transcribe(
        self,
        audio_path: Path,
        locale: str,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[WordSpan]:
        raise AvailabilityError("No speech backend configured")


class FasterWhisperRecognizer(SpeechRecognizer):
    """Speech recognition with faster-whisper word timestamps."""

    name = "faster"

    def __init__(self, model: str = "small", device: str = "auto", compute_type: str = "auto") -> None:
        self.model_name = model
        self.device = device
        self.compute_type = compute_type
        self._model: Any = None
        self._lock = threading.Lock()

    def _load_model(self) -> Any:
        with self._lock:
            if self._model is None:
                try:
                    from faster_whisper import WhisperModel
                except ImportError as e:
                    raise DependencyError(
                        "faster-whisper",
                        "faster-whisper not installed",
                        "Install with: pip install faster-whisper",
                    ) from e
                logger.info("Loading whisper model %s", self.model_name)
                self._model = WhisperModel(
                    self.model_name,
                    device=self.device,
                    compute_type=self.compute_type,
                )
            return self._model

    def is_available(self, locale: str) -> bool:
        try:
            model = self._load_model()
        except DependencyError as e:
            logger.warning("Speech backend unavailable: %s", e)
            return False
        except Exception as e:
            logger.warning("Failed to load whisper model %s: %s", self.model_name, e)
            return False

        supported = getattr(model, "supported_languages", None)
        if supported is None:
            return True
        return locale_language(locale) in supported

    def install(self, locale: str) -> None:
        try:
            from faster_whisper import download_model
        except ImportError as e:
            raise DependencyError(
                "faster-whisper",
                "faster-whisper not installed",
                "Install with: pip install faster-whisper",
            ) from e
        logger.info("Downloading whisper model %s", self.model_name)
        download_model(self.model_name)
        if not self.is_available(locale):
            raise AvailabilityError(f"Locale {locale} not supported by whisper model {self.model_name}")

    def transcribe(
        self,
        audio_path: Path,
        locale: str,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[WordSpan]:
        model = self._load_model()
        try:
            segments, _info = model.transcribe(
                str(audio_path),
                language=locale_language(locale),
                word_timestamps=True,
            )
            # Segments are decoded lazily; each iteration is a suspension point.
            for segment in segments:
                if cancel_event is not None and cancel_event.is_set():
                    raise TranscriptionCancelled(f"Transcription of {audio_path.name} cancelled")
                if segment.words:
                    for word in segment.words:
                        yield WordSpan(word.word, word.start, word.end)
                elif segment.text.strip():
                    yield WordSpan(segment.text, segment.start, segment.end)
        except (TranscriptionCancelled, AvailabilityError):
            raise
        except Exception as e:
            raise TranscriptionError(f"Transcription failed: {e}") from e


def create_recognizer(config: BookscribeConfig) -> SpeechRecognizer:
    """Select the recognizer implementation for the configured backend."""
    if config.speech_backend == "faster":
        return FasterWhisperRecognizer(
            model=config.whisper_model,
            device=config.whisper_device,
            compute_type=config.whisper_compute_type,
        )
    return UnavailableRecognizer()
