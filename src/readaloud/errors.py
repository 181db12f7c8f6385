"""
Custom exception hierarchy for readaloud.
"""

from __future__ import annotations


class ReadAloudError(Exception):
    """Base class for readaloud exceptions."""


class AudioDeviceError(ReadAloudError):
    """Raised when audio playback fails."""


class SegmentationEmpty(ReadAloudError):
    """Raised when a document produced no speakable text."""


class InvalidSegmentIndex(ReadAloudError, IndexError):
    """Raised when a command targets an index outside the segment range."""


class NoVoiceAvailable(ReadAloudError):
    """Raised when no usable voice exists for the selected backend."""


class BackendError(ReadAloudError):
    """Base class for synthesis service failures."""

    def __init__(self, status: int | None = None, reason: str = "") -> None:
        super().__init__(status, reason)
        self.status = status
        self.reason = reason

    def __str__(self) -> str:
        if self.status is None:
            return self.reason or self.__class__.__name__
        if not self.reason:
            return f"status {self.status}"
        return f"status {self.status}: {self.reason}"


class BackendUnavailable(BackendError):
    """Raised when the synthesis service cannot be reached or fails upstream."""


class EmptyAudioError(BackendError):
    """Raised when the synthesis service returns zero bytes of audio."""


class DecodeError(ReadAloudError):
    """Raised when synthesized audio bytes cannot be decoded."""


class StaleResult(ReadAloudError):
    """Raised internally when an async result no longer matches live playback state."""
