from __future__ import annotations

import asyncio
import threading
from typing import Callable

import pytest

from readaloud.decoder import encode_wav
from readaloud.errors import AudioDeviceError, BackendError
from readaloud.provider_base import Backend, DecodedAudio, PlaybackConfig, SynthesisBackend
from readaloud.segmenter import Container, Segmentation, Thresholds, segment

TEST_RATE = 8_000


def wav_for(text: str, sample_rate: int = TEST_RATE) -> bytes:
    """WAV whose PCM payload is the UTF-8 text itself, so played audio maps back to text."""
    pcm = text.encode("utf-8")
    if len(pcm) % 2:
        pcm += b"\x00"
    return encode_wav(pcm, sample_rate)


def text_of(audio: DecodedAudio) -> str:
    return audio.pcm.rstrip(b"\x00").decode("utf-8")


def make_segmentation(*paragraphs: str, min_chars: int = 1, max_chars: int = 500) -> Segmentation:
    containers = [Container(paragraph) for paragraph in paragraphs]
    return segment(containers, Thresholds(min_chars=min_chars, max_chars=max_chars))


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class FakeClient(SynthesisBackend):
    """Synchronous synthesis backend; runs in worker threads like the real client."""

    def __init__(self, voices: dict[Backend, list[str]] | None = None) -> None:
        self.voices = voices if voices is not None else {
            Backend.KOKORO: ["af_heart", "af_bella"],
            Backend.PIPER: ["en_US-lessac-medium"],
            Backend.OPENAI: ["alloy"],
        }
        self.calls: list[tuple[str, PlaybackConfig]] = []
        self.cancels: list[Backend] = []
        self.fail_texts: set[str] = set()
        self.payloads: dict[str, bytes] = {}
        self.blockers: dict[str, threading.Event] = {}
        self.voice_error: BackendError | None = None
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def block(self, text: str) -> threading.Event:
        event = threading.Event()
        self.blockers[text] = event
        return event

    def release_all(self) -> None:
        for event in self.blockers.values():
            event.set()

    def connect(self) -> None:
        return None

    def synthesize(self, text: str, config: PlaybackConfig) -> bytes:
        with self._lock:
            self.calls.append((text, config))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            blocker = self.blockers.get(text)
            if blocker is not None:
                blocker.wait(5)
            if text in self.fail_texts:
                raise BackendError(500, f"cannot synthesize {text!r}")
            return self.payloads.get(text, wav_for(text))
        finally:
            with self._lock:
                self.active -= 1

    def list_voices(self, backend: Backend) -> list[str]:
        if self.voice_error is not None:
            raise self.voice_error
        return list(self.voices.get(Backend(backend), []))

    def cancel(self, backend: Backend) -> None:
        self.cancels.append(Backend(backend))

    def close(self) -> None:
        return None

    @property
    def texts(self) -> list[str]:
        return [text for text, _ in self.calls]


class FakeSource:
    def __init__(self, audio: DecodedAudio, on_ended: Callable[[], None]) -> None:
        self.audio = audio
        self.text = text_of(audio)
        self._on_ended: Callable[[], None] | None = on_ended
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True
        self._on_ended = None

    def finish(self) -> None:
        handler, self._on_ended = self._on_ended, None
        if handler is not None:
            handler()


class FakeOutput:
    """Records started sources; `auto_finish` completes each one on the next loop tick."""

    def __init__(self, *, auto_finish: bool = False) -> None:
        self.auto_finish = auto_finish
        self.sources: list[FakeSource] = []
        self.error: AudioDeviceError | None = None

    def start(self, audio: DecodedAudio, on_ended: Callable[[], None]) -> FakeSource:
        if self.error is not None:
            raise self.error
        source = FakeSource(audio, on_ended)
        self.sources.append(source)
        if self.auto_finish:
            asyncio.get_running_loop().call_soon(source.finish)
        return source

    @property
    def current(self) -> FakeSource:
        return self.sources[-1]

    @property
    def played(self) -> list[str]:
        return [source.text for source in self.sources]


class RecordingSink:
    def __init__(self) -> None:
        self.positions: list[int] = []
        self.statuses: list[str] = []
        self.finished = 0

    def on_position_changed(self, index: int) -> None:
        self.positions.append(index)

    def on_status_changed(self, text: str) -> None:
        self.statuses.append(text)

    def on_finished(self) -> None:
        self.finished += 1


@pytest.fixture
def fake_client():
    client = FakeClient()
    yield client
    client.release_all()


@pytest.fixture
def fake_output():
    return FakeOutput()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def kokoro_config():
    return PlaybackConfig(Backend.KOKORO, "af_heart")
