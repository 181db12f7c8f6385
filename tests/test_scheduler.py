from __future__ import annotations

import pytest

from readaloud.errors import AudioDeviceError, InvalidSegmentIndex, SegmentationEmpty
from readaloud.provider_base import Backend
from readaloud.scheduler import (
    STATUS_FINISHED,
    STATUS_LOADING,
    STATUS_NO_VOICE,
    STATUS_PAUSED,
    STATUS_STOPPED,
    PlaybackScheduler,
)
from readaloud.segmenter import Segmentation

from conftest import FakeOutput, make_segmentation, wait_for


def _scheduler(segments, client, output, sink, config, **kwargs) -> PlaybackScheduler:
    return PlaybackScheduler(segments, client, output, config=config, sink=sink, **kwargs)


def _errors(sink) -> list[str]:
    return [status for status in sink.statuses if status.startswith("Could not synthesize")]


SIX = make_segmentation("Zero. One. Two.", "Three. Four. Five.")


@pytest.mark.asyncio
async def test_plays_every_segment_then_finishes(fake_client, sink, kokoro_config):
    output = FakeOutput(auto_finish=True)
    segments = make_segmentation("Hello.", "World.")
    scheduler = _scheduler(segments, fake_client, output, sink, kokoro_config)

    assert scheduler.play(0) == 0
    await wait_for(lambda: sink.finished == 1)

    assert output.played == ["Hello.", "World."]
    assert sink.positions == [0, 1]
    assert sink.statuses[0] == STATUS_LOADING
    assert sink.statuses[-1] == STATUS_FINISHED
    assert fake_client.texts == ["Hello.", "World."]
    assert scheduler.state.index == 0
    assert not scheduler.state.playing
    assert scheduler.status == "idle"
    assert len(scheduler.metrics) == 2
    assert all(metric.playback_end is not None for metric in scheduler.metrics)
    await scheduler.close()


@pytest.mark.asyncio
async def test_segments_play_in_order(fake_client, sink, kokoro_config):
    output = FakeOutput(auto_finish=True)
    scheduler = _scheduler(SIX, fake_client, output, sink, kokoro_config, prefetch_ahead=3)

    scheduler.play()
    await wait_for(lambda: sink.finished == 1)

    assert output.played == SIX.texts
    assert sink.positions == list(range(6))
    assert fake_client.max_active == 1
    await scheduler.close()


@pytest.mark.asyncio
async def test_failed_segment_is_skipped_with_one_error(fake_client, sink, kokoro_config):
    output = FakeOutput(auto_finish=True)
    segments = make_segmentation("Alpha.", "Bravo.", "Charlie.")
    fake_client.fail_texts.add("Bravo.")
    scheduler = _scheduler(segments, fake_client, output, sink, kokoro_config)

    scheduler.play(0)
    await wait_for(lambda: sink.finished == 1)

    assert output.played == ["Alpha.", "Charlie."]
    errors = _errors(sink)
    assert len(errors) == 1
    assert errors[0].startswith("Could not synthesize segment 2")
    await scheduler.close()


@pytest.mark.asyncio
async def test_consecutive_failures_stop_playback(fake_client, sink, kokoro_config, fake_output):
    segments = make_segmentation("One.", "Two.", "Three.", "Four.")
    fake_client.fail_texts.update(segments.texts)
    scheduler = _scheduler(
        segments, fake_client, fake_output, sink, kokoro_config, max_consecutive_failures=2
    )

    scheduler.play(0)
    await wait_for(lambda: STATUS_NO_VOICE in sink.statuses)

    assert len(_errors(sink)) == 2
    assert not scheduler.state.playing
    assert fake_output.sources == []
    await scheduler.close()


@pytest.mark.asyncio
async def test_voice_change_restarts_current_segment(fake_client, sink, kokoro_config, fake_output):
    scheduler = _scheduler(SIX, fake_client, fake_output, sink, kokoro_config)

    scheduler.play(0)
    for expected in (1, 2, 3):
        await wait_for(lambda: len(fake_output.sources) == expected)
        if expected < 3:
            fake_output.current.finish()
    playing_two = fake_output.current
    assert playing_two.text == "Two."

    assert scheduler.set_voice("af_bella") is True
    assert playing_two.stopped
    await wait_for(lambda: len(fake_output.sources) == 4)

    assert fake_output.current.text == "Two."
    assert scheduler.state.index == 2
    assert ("Two.", "af_bella") in [(text, config.voice) for text, config in fake_client.calls]
    assert all(key.signature.voice == "af_bella" for key in scheduler.cache.keys())
    assert scheduler.set_voice("af_bella") is False
    await scheduler.close()


@pytest.mark.asyncio
async def test_seek_discards_stale_result(fake_client, sink, kokoro_config, fake_output):
    blocker = fake_client.block("Zero.")
    scheduler = _scheduler(SIX, fake_client, fake_output, sink, kokoro_config)

    scheduler.play(0)
    await wait_for(lambda: len(fake_client.calls) == 1)
    assert scheduler.status == "loading"

    assert scheduler.seek(4) == 4
    blocker.set()
    await wait_for(lambda: len(fake_output.sources) == 1)
    await wait_for(lambda: len(fake_client.calls) == 3)

    assert fake_output.played == ["Four."]
    assert fake_client.texts == ["Zero.", "Four.", "Five."]
    assert _errors(sink) == []
    assert STATUS_STOPPED not in sink.statuses
    await scheduler.close()


@pytest.mark.asyncio
async def test_completion_after_stop_does_not_advance(fake_client, sink, kokoro_config, fake_output):
    scheduler = _scheduler(SIX, fake_client, fake_output, sink, kokoro_config)

    scheduler.play(1)
    await wait_for(lambda: len(fake_output.sources) == 1)
    source = fake_output.current
    late_handler = source._on_ended

    scheduler.stop()
    late_handler()

    assert source.stopped
    assert sink.statuses[-1] == STATUS_STOPPED
    assert scheduler.state.index == 1
    assert not scheduler.state.playing
    assert len(fake_output.sources) == 1
    await scheduler.close()


@pytest.mark.asyncio
async def test_pause_then_play_restarts_segment_from_cache(fake_client, sink, kokoro_config, fake_output):
    scheduler = _scheduler(SIX, fake_client, fake_output, sink, kokoro_config)

    scheduler.play(0)
    await wait_for(lambda: len(fake_output.sources) == 1)
    scheduler.pause()
    assert scheduler.status == "paused"
    assert sink.statuses[-1] == STATUS_PAUSED

    calls_before = fake_client.texts.count("Zero.")
    scheduler.play()
    await wait_for(lambda: len(fake_output.sources) == 2)

    assert fake_output.current.text == "Zero."
    assert fake_client.texts.count("Zero.") == calls_before
    assert scheduler.status == "playing"
    await scheduler.close()


@pytest.mark.asyncio
async def test_cache_window_evicts_behind_current(fake_client, sink, kokoro_config, fake_output):
    scheduler = _scheduler(SIX, fake_client, fake_output, sink, kokoro_config, keep_behind=1)

    scheduler.play(0)
    for expected in (1, 2, 3, 4):
        await wait_for(lambda: len(fake_output.sources) == expected)
        if expected < 4:
            fake_output.current.finish()

    assert scheduler.state.index == 3
    assert min(key.index for key in scheduler.cache.keys()) >= 2
    await scheduler.close()


@pytest.mark.asyncio
async def test_idle_seek_only_repositions(fake_client, sink, kokoro_config, fake_output):
    scheduler = _scheduler(SIX, fake_client, fake_output, sink, kokoro_config)

    assert scheduler.seek(3) == 3

    assert sink.positions == [3]
    assert scheduler.state.index == 3
    assert fake_client.calls == []
    assert scheduler.status == "idle"
    await scheduler.close()


@pytest.mark.asyncio
async def test_segment_and_paragraph_navigation(fake_client, sink, kokoro_config, fake_output):
    segments = make_segmentation("A one. A two.", "B one. B two. B three.", "C one.")
    scheduler = _scheduler(segments, fake_client, fake_output, sink, kokoro_config)

    scheduler.seek(3)
    assert scheduler.prev_paragraph() == 2
    assert scheduler.prev_paragraph() == 0
    assert scheduler.prev_paragraph() == 0
    assert scheduler.next_paragraph() == 2
    assert scheduler.next_paragraph() == 5
    assert scheduler.next_paragraph() == 5
    assert scheduler.next_segment() == 5
    assert scheduler.prev_segment() == 4
    assert scheduler.state.index == 4
    assert fake_client.calls == []
    await scheduler.close()


@pytest.mark.asyncio
async def test_invalid_index_and_empty_document(fake_client, sink, kokoro_config, fake_output):
    scheduler = _scheduler(SIX, fake_client, fake_output, sink, kokoro_config)
    with pytest.raises(InvalidSegmentIndex):
        scheduler.play(6)
    with pytest.raises(IndexError):
        scheduler.seek(-1)

    empty = _scheduler(Segmentation(), fake_client, fake_output, sink, kokoro_config)
    with pytest.raises(SegmentationEmpty):
        empty.play()
    with pytest.raises(SegmentationEmpty):
        empty.next_paragraph()
    await scheduler.close()
    await empty.close()


@pytest.mark.asyncio
async def test_audio_device_error_stops_playback(fake_client, sink, kokoro_config, fake_output):
    fake_output.error = AudioDeviceError("no default output device")
    scheduler = _scheduler(SIX, fake_client, fake_output, sink, kokoro_config)

    scheduler.play(0)
    await wait_for(lambda: any(s.startswith("Audio device error") for s in sink.statuses))

    assert not scheduler.state.playing
    assert "no default output device" in sink.statuses[-1]
    await scheduler.close()


@pytest.mark.asyncio
async def test_speed_change_while_loading_sends_cancel_hint(fake_client, sink, kokoro_config, fake_output):
    blocker = fake_client.block("Zero.")
    scheduler = _scheduler(SIX, fake_client, fake_output, sink, kokoro_config, prefetch_ahead=0)

    scheduler.play(0)
    await wait_for(lambda: len(fake_client.calls) == 1)
    assert scheduler.set_speed(1.5) is True
    await wait_for(lambda: fake_client.cancels == [Backend.KOKORO])

    blocker.set()
    await wait_for(lambda: len(fake_output.sources) == 1)

    assert [config.speed for _, config in fake_client.calls] == [1.0, 1.5]
    assert scheduler.config.speed == 1.5
    with pytest.raises(ValueError):
        scheduler.set_speed(4.0)
    await scheduler.close()


@pytest.mark.asyncio
async def test_backend_change_while_idle_does_not_synthesize(fake_client, sink, kokoro_config, fake_output):
    scheduler = _scheduler(SIX, fake_client, fake_output, sink, kokoro_config)

    assert scheduler.set_backend(Backend.PIPER, "en_US-lessac-medium") is True

    assert scheduler.config.backend is Backend.PIPER
    assert scheduler.config.voice == "en_US-lessac-medium"
    assert fake_client.calls == []
    assert fake_client.cancels == []
    await scheduler.close()


@pytest.mark.asyncio
async def test_sink_exceptions_do_not_break_playback(fake_client, kokoro_config):
    class ExplodingSink:
        def on_position_changed(self, index):
            raise RuntimeError("ui went away")

        def on_status_changed(self, text):
            raise RuntimeError("ui went away")

        def on_finished(self):
            raise RuntimeError("ui went away")

    output = FakeOutput(auto_finish=True)
    scheduler = _scheduler(
        make_segmentation("Only one."), fake_client, output, ExplodingSink(), kokoro_config
    )

    scheduler.play(0)
    await wait_for(lambda: not scheduler.state.playing and len(output.sources) == 1)

    assert output.played == ["Only one."]
    await scheduler.close()
