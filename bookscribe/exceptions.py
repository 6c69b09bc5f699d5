"""
bookscribe.exceptions - Custom exception classes.

All Bookscribe-specific exceptions inherit from BookscribeError. The
scheduler is the only component that decides whether an error is retried.
"""


class BookscribeError(Exception):
    """Base exception for all Bookscribe errors."""

    pass


class ConfigError(BookscribeError):
    """Configuration loading or validation error."""

    pass


class ExtractionError(BookscribeError):
    """Bounded audio segment could not be produced. Retryable."""

    pass


class AvailabilityError(BookscribeError):
    """Speech capability or locale unavailable. Never retried."""

    pass


class TranscriptionError(BookscribeError):
    """Speech-to-text call failed mid-run. Retryable."""

    pass


class StallError(BookscribeError):
    """No transcription progress within the watchdog window. Retryable."""

    pass


class StoreError(BookscribeError):
    """Chapter store read or write failed."""

    pass


class TranscriptionCancelled(BookscribeError):
    """A running attempt observed its cancellation signal and stopped."""

    pass


class DependencyError(BookscribeError):
    """Required dependency missing or misconfigured."""

    def __init__(self, dependency: str, message: str, install_hint: str | None = None):
        self.dependency = dependency
        self.message = message
        self.install_hint = install_hint
        super().__init__(f"{dependency}: {message}")
