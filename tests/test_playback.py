from __future__ import annotations

import asyncio

import pytest

from readaloud import playback
from readaloud.errors import AudioDeviceError
from readaloud.playback import SoundDeviceOutput
from readaloud.provider_base import DecodedAudio


class DummyStream:
    instances: list["DummyStream"] = []

    def __init__(self, *args, **kwargs):
        self.kwargs = kwargs
        self.callback = kwargs["callback"]
        self.finished_callback = kwargs["finished_callback"]
        self.started = False
        self.aborted = False
        self.closed = False
        DummyStream.instances.append(self)

    def start(self):
        self.started = True

    def abort(self):
        self.aborted = True

    def close(self):
        self.closed = True


@pytest.fixture
def dummy_stream(monkeypatch):
    DummyStream.instances = []
    monkeypatch.setattr(playback.sd, "RawOutputStream", DummyStream)
    return DummyStream


def _audio(pcm: bytes = b"\x01\x00\x02\x00\x03\x00", sample_rate: int = 24_000) -> DecodedAudio:
    return DecodedAudio(pcm=pcm, sample_rate=sample_rate)


@pytest.mark.asyncio
async def test_start_opens_int16_stream(dummy_stream):
    source = SoundDeviceOutput(device=3).start(_audio(), lambda: None)

    stream = dummy_stream.instances[0]
    assert stream.started
    assert stream.kwargs["samplerate"] == 24_000
    assert stream.kwargs["channels"] == 1
    assert stream.kwargs["dtype"] == "int16"
    assert stream.kwargs["device"] == 3
    assert source.active


@pytest.mark.asyncio
async def test_callback_feeds_pcm_then_stops(dummy_stream):
    SoundDeviceOutput().start(_audio(), lambda: None)
    stream = dummy_stream.instances[0]

    first = bytearray(4)
    stream.callback(first, 2, None, None)
    assert bytes(first) == b"\x01\x00\x02\x00"

    second = bytearray(4)
    with pytest.raises(playback.sd.CallbackStop):
        stream.callback(second, 2, None, None)
    assert bytes(second) == b"\x03\x00\x00\x00"


@pytest.mark.asyncio
async def test_natural_completion_signals_once(dummy_stream):
    ended = []
    source = SoundDeviceOutput().start(_audio(), lambda: ended.append(True))
    stream = dummy_stream.instances[0]

    stream.finished_callback()
    stream.finished_callback()
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert ended == [True]
    assert stream.closed
    assert not source.active


@pytest.mark.asyncio
async def test_stop_detaches_completion_handler(dummy_stream):
    ended = []
    source = SoundDeviceOutput().start(_audio(), lambda: ended.append(True))
    stream = dummy_stream.instances[0]

    source.stop()
    stream.finished_callback()
    await asyncio.sleep(0)

    assert stream.aborted
    assert stream.closed
    assert ended == []


@pytest.mark.asyncio
async def test_port_audio_failure_maps_to_audio_device_error(monkeypatch):
    def failing_stream(*args, **kwargs):
        raise playback.sd.PortAudioError("Error querying device -1")

    monkeypatch.setattr(playback.sd, "RawOutputStream", failing_stream)

    with pytest.raises(AudioDeviceError):
        SoundDeviceOutput().start(_audio(), lambda: None)


@pytest.mark.asyncio
async def test_odd_pcm_length_is_rejected(dummy_stream):
    with pytest.raises(AudioDeviceError):
        SoundDeviceOutput().start(_audio(b"\x00\x00\x01"), lambda: None)
    assert dummy_stream.instances == []
