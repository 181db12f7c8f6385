"""
Reading session: preferences, voice resolution and progress around one scheduler.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from .config import AppConfig
from .errors import NoVoiceAvailable, SegmentationEmpty
from .logging_utils import EventLogger
from .preferences import PreferenceStore, page_key
from .provider_base import AudioOutput, Backend, PlaybackConfig, PositionSink, SynthesisBackend
from .scheduler import STATUS_EMPTY, STATUS_NO_VOICE, PlaybackScheduler
from .segmenter import Segmentation
from .voice_catalog import fetch_voices, resolve_voice

logger = logging.getLogger(__name__)


@dataclass
class SessionSettings:
    keep_behind: int = 2
    prefetch_ahead: int = 2
    max_consecutive_failures: int = 3
    long_page_threshold: int = 20
    voice_cache_dir: Path | None = None

    @classmethod
    def from_app_config(cls, config: AppConfig) -> SessionSettings:
        return cls(
            keep_behind=config.keep_behind,
            prefetch_ahead=config.prefetch_ahead,
            max_consecutive_failures=config.max_consecutive_failures,
            long_page_threshold=config.long_page_threshold,
            voice_cache_dir=Path(config.state_dir).expanduser() if config.state_dir else None,
        )


class ReaderSession:
    def __init__(
        self,
        document_id: str,
        segmentation: Segmentation,
        client: SynthesisBackend,
        output: AudioOutput,
        *,
        store: PreferenceStore,
        sink: PositionSink | None = None,
        settings: SessionSettings | None = None,
        event_logger: EventLogger | None = None,
    ) -> None:
        self.document_id = document_id
        self.segmentation = segmentation
        self.client = client
        self.output = output
        self.store = store
        self.sink = sink
        self.settings = settings or SessionSettings()
        self.event_logger = event_logger.bind(page=page_key(document_id)) if event_logger else None
        self.scheduler: PlaybackScheduler | None = None
        self.voices: list[str] = []

    @property
    def is_long_page(self) -> bool:
        return len(self.segmentation) > self.settings.long_page_threshold

    async def start(
        self,
        *,
        backend: Backend | str | None = None,
        voice: str | None = None,
        speed: float | None = None,
        resume: bool = True,
    ) -> bool:
        """
        Resolve the playback configuration and build the scheduler.

        Explicit arguments win over stored preferences and are written back.
        Returns False (after reporting a status) when there is nothing to
        read or no usable voice.
        """

        if not len(self.segmentation):
            self._status(STATUS_EMPTY)
            return False

        prefs = self.store.get()
        chosen_backend = Backend(backend or prefs.backend)
        chosen_speed = float(speed if speed is not None else prefs.speed)

        self.voices = await self._load_voices(chosen_backend)
        chosen_voice = resolve_voice(voice or prefs.voice, self.voices)
        if chosen_voice is None:
            logger.error("No voice available for backend %s", chosen_backend.value)
            self._status(STATUS_NO_VOICE)
            return False

        config = PlaybackConfig(chosen_backend, chosen_voice, chosen_speed)
        self.scheduler = PlaybackScheduler(
            self.segmentation,
            self.client,
            self.output,
            config=config,
            sink=self.sink,
            keep_behind=self.settings.keep_behind,
            prefetch_ahead=self.settings.prefetch_ahead,
            max_consecutive_failures=self.settings.max_consecutive_failures,
            event_logger=self.event_logger,
        )

        if (prefs.backend, prefs.voice, prefs.speed) != (
            chosen_backend.value,
            chosen_voice,
            chosen_speed,
        ):
            self.store.update(backend=chosen_backend.value, voice=chosen_voice, speed=chosen_speed)

        if resume and self.is_long_page:
            saved = self.store.load_progress(self.document_id)
            if saved is not None and 0 <= saved < len(self.segmentation):
                logger.info("Resuming at segment %s", saved)
                self.scheduler.seek(saved)
        return True

    # ------------------------------------------------------------------ #
    # Playback commands

    def play(self, index: int | None = None) -> int:
        return self._require().play(index)

    def pause(self) -> None:
        self._require().pause()

    def stop(self) -> None:
        self._require().stop()

    def seek(self, index: int) -> int:
        return self._require().seek(index)

    def next_segment(self) -> int:
        return self._require().next_segment()

    def prev_segment(self) -> int:
        return self._require().prev_segment()

    def next_paragraph(self) -> int:
        return self._require().next_paragraph()

    def prev_paragraph(self) -> int:
        return self._require().prev_paragraph()

    # ------------------------------------------------------------------ #
    # Configuration commands

    def set_voice(self, voice: str) -> str:
        scheduler = self._require()
        resolved = resolve_voice(voice, self.voices) if self.voices else voice
        if resolved is None:
            raise NoVoiceAvailable(f"voice {voice!r} is not available")
        scheduler.set_voice(resolved)
        self.store.update(voice=resolved)
        return resolved

    def set_speed(self, speed: float) -> float:
        scheduler = self._require()
        scheduler.set_speed(speed)
        self.store.update(speed=float(speed))
        return float(speed)

    async def set_backend(self, backend: Backend | str) -> str:
        scheduler = self._require()
        target = Backend(backend)
        voices = await self._load_voices(target)
        resolved = resolve_voice(scheduler.config.voice, voices)
        if resolved is None:
            scheduler.stop()
            self._status(STATUS_NO_VOICE)
            raise NoVoiceAvailable(f"no voice available for backend {target.value}")
        self.voices = voices
        scheduler.set_backend(target, resolved)
        self.store.update(backend=target.value, voice=resolved)
        return resolved

    def rate_voice(self, stars: int) -> None:
        scheduler = self._require()
        self.store.rate_voice(scheduler.config.voice, stars)

    async def close(self) -> None:
        if self.scheduler is None:
            return
        if self.is_long_page:
            self.store.save_progress(self.document_id, self.scheduler.state.index)
        await self.scheduler.close()

    # ------------------------------------------------------------------ #
    # Internal helpers

    async def _load_voices(self, backend: Backend) -> list[str]:
        return await asyncio.to_thread(
            fetch_voices,
            self.client,
            backend,
            cache_dir=self.settings.voice_cache_dir,
        )

    def _require(self) -> PlaybackScheduler:
        if self.scheduler is not None:
            return self.scheduler
        if not len(self.segmentation):
            raise SegmentationEmpty(STATUS_EMPTY)
        raise NoVoiceAvailable(STATUS_NO_VOICE)

    def _status(self, text: str) -> None:
        if self.sink is not None:
            self.sink.on_status_changed(text)
