"""
Audio output implemented with sounddevice.

Each segment gets its own RawOutputStream fed from a callback. When the PCM
runs out the callback raises `CallbackStop`; the stream's finished callback
then hands completion back to the event loop. Stopping a source detaches its
completion handler before aborting the stream, so a late "finished" event can
never advance playback. Exceptions from PortAudio are mapped to
`AudioDeviceError`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

import sounddevice as sd

from .errors import AudioDeviceError
from .provider_base import DecodedAudio

logger = logging.getLogger(__name__)


class SoundDeviceSource:
    """One playing segment."""

    def __init__(
        self,
        audio: DecodedAudio,
        on_ended: Callable[[], None],
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._pcm = audio.pcm
        self._offset = 0
        self._on_ended: Optional[Callable[[], None]] = on_ended
        self._loop = loop
        self._stream: sd.RawOutputStream | None = None
        self._closed = False

    @property
    def active(self) -> bool:
        return self._on_ended is not None and not self._closed

    def attach(self, stream: sd.RawOutputStream) -> None:
        self._stream = stream

    def stop(self) -> None:
        """Stop immediately without signalling completion."""
        self._on_ended = None
        if self._stream is None or self._closed:
            return
        try:
            self._stream.abort()
        except sd.PortAudioError as exc:  # pragma: no cover - hardware dependent
            logger.debug("Audio stream abort failed: %s", exc)
        self._close_stream()

    def _fill(self, outdata, frames, time_info, status) -> None:
        if status:
            logger.debug("Audio callback status: %s", status)
        size = len(outdata)
        chunk = self._pcm[self._offset : self._offset + size]
        self._offset += len(chunk)
        outdata[: len(chunk)] = chunk
        if len(chunk) < size:
            outdata[len(chunk) :] = b"\x00" * (size - len(chunk))
            raise sd.CallbackStop

    def _finished_from_device(self) -> None:
        # Runs on the PortAudio thread.
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._finish)

    def _finish(self) -> None:
        self._close_stream()
        handler, self._on_ended = self._on_ended, None
        if handler is not None:
            handler()

    def _close_stream(self) -> None:
        if self._stream is None or self._closed:
            return
        self._closed = True
        try:
            self._stream.close()
        except sd.PortAudioError as exc:  # pragma: no cover - hardware dependent
            logger.debug("Audio stream close failed: %s", exc)


class SoundDeviceOutput:
    """Starts one sounddevice stream per segment on the default (or given) device."""

    def __init__(
        self,
        *,
        device: int | str | None = None,
        blocksize: int = 0,
        dtype: str = "int16",
    ) -> None:
        self._device = device
        self._blocksize = blocksize
        self._dtype = dtype

    def start(self, audio: DecodedAudio, on_ended: Callable[[], None]) -> SoundDeviceSource:
        if len(audio.pcm) % 2 != 0:
            raise AudioDeviceError("PCM16 payload length must be even (2 bytes per sample).")

        source = SoundDeviceSource(audio, on_ended, asyncio.get_running_loop())
        try:
            stream = sd.RawOutputStream(
                samplerate=audio.sample_rate,
                channels=audio.channels,
                dtype=self._dtype,
                blocksize=self._blocksize,
                device=self._device,
                callback=source._fill,
                finished_callback=source._finished_from_device,
            )
            source.attach(stream)
            stream.start()
        except sd.PortAudioError as exc:  # pragma: no cover - hardware dependent
            source.stop()
            logger.error("Failed to start audio stream: %s", exc)
            raise AudioDeviceError(str(exc)) from exc

        logger.debug(
            "Started audio stream (sample_rate=%s, channels=%s, seconds=%.2f)",
            audio.sample_rate,
            audio.channels,
            audio.duration,
        )
        return source
