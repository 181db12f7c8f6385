"""
Shared types and interfaces for synthesis backends and audio output.

The scheduler only talks to these abstractions so the HTTP client, the
sounddevice output and the test fakes stay interchangeable.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Protocol


class Backend(str, Enum):
    KOKORO = "kokoro"
    PIPER = "piper"
    OPENAI = "openai"


@dataclass(frozen=True)
class PlaybackConfig:
    """Synthesis configuration; two configs are the same signature iff they compare equal."""

    backend: Backend
    voice: str
    speed: float = 1.0

    def with_voice(self, voice: str) -> PlaybackConfig:
        return replace(self, voice=voice)

    def with_speed(self, speed: float) -> PlaybackConfig:
        return replace(self, speed=float(speed))

    def with_backend(self, backend: Backend | str, voice: str | None = None) -> PlaybackConfig:
        return replace(self, backend=Backend(backend), voice=voice or self.voice)


@dataclass(frozen=True)
class DecodedAudio:
    """PCM16 audio ready to hand to an output device."""

    pcm: bytes
    sample_rate: int
    channels: int = 1

    @property
    def frame_count(self) -> int:
        return len(self.pcm) // (2 * self.channels)

    @property
    def duration(self) -> float:
        return self.frame_count / float(self.sample_rate)


class SynthesisBackend(abc.ABC):
    """Abstract base class for remote text-to-speech services."""

    @abc.abstractmethod
    def connect(self) -> None:
        """Open any connections or allocate resources."""

    @abc.abstractmethod
    def synthesize(self, text: str, config: PlaybackConfig) -> bytes:
        """Return encoded audio bytes for the provided text."""

    @abc.abstractmethod
    def list_voices(self, backend: Backend) -> list[str]:
        """Return the voice ids available on a backend."""

    def cancel(self, backend: Backend) -> None:
        """Best-effort hint that in-flight work for `backend` is no longer wanted."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release resources and close connections."""


class PlaybackSource(Protocol):
    """A started, stoppable playback of one decoded segment."""

    def stop(self) -> None: ...


class AudioOutput(Protocol):
    """Protocol describing how the scheduler starts audio."""

    def start(self, audio: DecodedAudio, on_ended: Callable[[], None]) -> PlaybackSource: ...


class PositionSink(Protocol):
    """Receives fire-and-forget position and status notifications."""

    def on_position_changed(self, index: int) -> None: ...

    def on_status_changed(self, text: str) -> None: ...

    def on_finished(self) -> None: ...
