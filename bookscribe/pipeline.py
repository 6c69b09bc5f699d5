"""
bookscribe.pipeline - Explicit wiring of the transcription pipeline.

Builds the store, engine, scheduler, history and trigger once from a config
and hands them out together. Nothing here is global; callers own the
Pipeline and close it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from bookscribe.config import BookscribeConfig
from bookscribe.history import TranscriptionHistory
from bookscribe.scheduler import TranscriptionScheduler
from bookscribe.store import ChapterStore
from bookscribe.transcribe.engine import SegmentExtractor, TranscriptionEngine
from bookscribe.transcribe.speech import SpeechRecognizer, create_recognizer
from bookscribe.trigger import PlaybackState, PlaybackTrigger

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    config: BookscribeConfig
    store: ChapterStore
    engine: TranscriptionEngine
    scheduler: TranscriptionScheduler
    history: TranscriptionHistory
    trigger: PlaybackTrigger

    def close(self) -> None:
        """Stop background work and close the store."""
        try:
            self.trigger.close()
            self.scheduler.shutdown()
        finally:
            self.store.close()
        logger.debug("Pipeline closed")

    def __enter__(self) -> Pipeline:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def build_pipeline(
    config: BookscribeConfig,
    recognizer: SpeechRecognizer | None = None,
    playback: PlaybackState | None = None,
    extractor: SegmentExtractor | None = None,
) -> Pipeline:
    """Construct and start the pipeline.

    Args:
        config: Resolved configuration
        recognizer: Speech capability; chosen from ``config.speech_backend``
            when omitted
        playback: Live playback state for the trigger, if a player is attached
        extractor: Audio segment extractor override
    """
    store = ChapterStore(config.database_path, busy_timeout=config.store_busy_timeout)
    if recognizer is None:
        recognizer = create_recognizer(config)
    if extractor is None:
        engine = TranscriptionEngine(recognizer, locale=config.locale)
    else:
        engine = TranscriptionEngine(recognizer, locale=config.locale, extractor=extractor)

    scheduler = TranscriptionScheduler(store, engine, config)
    history = TranscriptionHistory()
    scheduler.add_listener(history.record)
    trigger = PlaybackTrigger(scheduler, store, playback, config)
    scheduler.start()

    logger.debug("Pipeline ready (backend=%s, db=%s)", recognizer.name, config.database_path)
    return Pipeline(
        config=config,
        store=store,
        engine=engine,
        scheduler=scheduler,
        history=history,
        trigger=trigger,
    )
