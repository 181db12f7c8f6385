"""
Incremental playback scheduler.

The scheduler turns an ordered segmentation into continuous audio: it fetches
(or reuses) the decoded audio for the current segment, starts it, advances on
natural completion and keeps a small window of upcoming segments synthesizing
in the background.

Every command bumps a monotonic token. Continuations capture the token and the
configuration signature at issue time and re-check both before touching state
or starting audio, so a result that arrives after a seek, stop or voice change
is dropped silently.

Commands are plain methods that return immediately and must be called from
the event loop thread.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Optional

from .cache import DecodeCache
from .config import MAX_SPEED, MIN_SPEED
from .errors import (
    AudioDeviceError,
    BackendError,
    DecodeError,
    InvalidSegmentIndex,
    SegmentationEmpty,
    StaleResult,
)
from .logging_utils import EventLogger, create_event_logger
from .metrics import SegmentMetrics
from .provider_base import (
    AudioOutput,
    Backend,
    DecodedAudio,
    PlaybackConfig,
    PlaybackSource,
    PositionSink,
    SynthesisBackend,
)
from .segmenter import Segmentation

logger = logging.getLogger(__name__)

SEGMENT_FAILURES = (BackendError, DecodeError)

STATUS_LOADING = "Loading"
STATUS_PLAYING = "Playing"
STATUS_PAUSED = "Paused"
STATUS_STOPPED = "Stopped"
STATUS_FINISHED = "Finished"
STATUS_NO_VOICE = "No voice available"
STATUS_EMPTY = "Nothing to read on this page."
STATUS_AUDIO_ERROR = "Audio device error"


@dataclass
class PlaybackState:
    index: int = 0
    playing: bool = False
    token: int = 0


class PlaybackScheduler:
    def __init__(
        self,
        segments: Segmentation,
        client: SynthesisBackend,
        output: AudioOutput,
        *,
        config: PlaybackConfig,
        sink: PositionSink | None = None,
        keep_behind: int = 2,
        prefetch_ahead: int = 2,
        max_consecutive_failures: int = 3,
        cache: DecodeCache | None = None,
        event_logger: EventLogger | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if keep_behind < 0 or prefetch_ahead < 0:
            raise ValueError("keep_behind and prefetch_ahead must be non-negative.")
        if max_consecutive_failures <= 0:
            raise ValueError("max_consecutive_failures must be positive.")

        self.segments = segments
        self.client = client
        self.output = output
        self.config = config
        self.sink = sink
        self.keep_behind = keep_behind
        self.prefetch_ahead = prefetch_ahead
        self.max_consecutive_failures = max_consecutive_failures
        self.cache = cache or DecodeCache(client, segments.texts)
        self.event_logger = event_logger or create_event_logger(logger, "human")
        self.state = PlaybackState()
        self.metrics: list[SegmentMetrics] = []

        self._clock = clock or time.perf_counter
        self._source: Optional[PlaybackSource] = None
        self._source_metric: Optional[SegmentMetrics] = None
        self._paused = False
        self._consecutive_failures = 0
        self._last_status: str | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------ #
    # Derived state

    def __len__(self) -> int:
        return len(self.segments)

    @property
    def status(self) -> str:
        if self.state.playing:
            return "playing" if self._source is not None else "loading"
        return "paused" if self._paused else "idle"

    # ------------------------------------------------------------------ #
    # Commands

    def play(self, index: int | None = None) -> int:
        """Start (or restart) playback at `index`, defaulting to the current position."""
        self._require_segments()
        target = self.state.index if index is None else index
        self._check_index(target)
        if self.state.playing:
            self.cache.discard_pending()
        self._consecutive_failures = 0
        self._begin(target)
        return target

    def pause(self) -> None:
        self._halt(STATUS_PAUSED)
        self._paused = True

    def stop(self) -> None:
        self._halt(STATUS_STOPPED)

    def seek(self, index: int) -> int:
        """Move to `index`; audio only starts if playback is active."""
        self._require_segments()
        self._check_index(index)
        if self.state.playing:
            return self.play(index)

        self._next_token()
        self.state.index = index
        self._notify("on_position_changed", index)
        return index

    def next_segment(self) -> int:
        self._require_segments()
        target = min(self.state.index + 1, len(self.segments) - 1)
        if target != self.state.index:
            self.seek(target)
        return target

    def prev_segment(self) -> int:
        self._require_segments()
        target = max(self.state.index - 1, 0)
        if target != self.state.index:
            self.seek(target)
        return target

    def next_paragraph(self) -> int:
        """Jump to the first segment of the following container, if any."""
        self._require_segments()
        index = self.state.index
        container = self.segments.container_of(index)
        last = index
        while last + 1 < len(self.segments) and self.segments.container_of(last + 1) == container:
            last += 1
        if last + 1 >= len(self.segments):
            return index
        return self.seek(last + 1)

    def prev_paragraph(self) -> int:
        """Jump to the start of this container, or of the previous one when already there."""
        self._require_segments()
        index = self.state.index
        target = self._paragraph_start(index)
        if target == index and index > 0:
            target = self._paragraph_start(index - 1)
        if target == index:
            return index
        return self.seek(target)

    def change_config(self, new_config: PlaybackConfig) -> bool:
        """Switch signature; returns False when nothing changed."""
        if new_config == self.config:
            return False

        previous = self.config
        was_playing = self.state.playing
        had_running = self.cache.has_running

        self._stop_source()
        self.config = new_config
        self.cache.clear()
        self._next_token()
        self.event_logger.log(
            "config_change",
            backend=new_config.backend.value,
            voice=new_config.voice,
            speed=new_config.speed,
            restart=was_playing,
        )

        if had_running:
            self._spawn(self._send_cancel_hint(previous.backend))
        if was_playing:
            self._consecutive_failures = 0
            self._begin(self.state.index)
        return True

    def set_voice(self, voice: str) -> bool:
        if not voice:
            raise ValueError("voice must be a non-empty id.")
        return self.change_config(self.config.with_voice(voice))

    def set_speed(self, speed: float) -> bool:
        if not (MIN_SPEED <= float(speed) <= MAX_SPEED):
            raise ValueError(f"speed must be between {MIN_SPEED} and {MAX_SPEED}")
        return self.change_config(self.config.with_speed(speed))

    def set_backend(self, backend: Backend | str, voice: str | None = None) -> bool:
        return self.change_config(self.config.with_backend(backend, voice))

    async def close(self) -> None:
        """Stop playback and wait for background work to unwind."""
        self._stop_source()
        self._next_token()
        self.state.playing = False
        self.cache.close()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------ #
    # Playback pipeline

    def _begin(self, index: int) -> None:
        self._stop_source()
        token = self._next_token()
        self.state.index = index
        self.state.playing = True
        self._paused = False
        self._notify("on_position_changed", index)
        self._spawn(self._start_segment(index, token, self.config))

    async def _start_segment(self, index: int, token: int, signature: PlaybackConfig) -> None:
        request_start = self._clock()
        self.event_logger.log(
            "segment_request", index=index, token=token, text=self.segments.texts[index]
        )
        future = self.cache.get_or_fetch(signature, index)
        # Queued after the foreground request, so the gate serves it first.
        self._prefetch(index, signature)
        if not future.done():
            self._set_status(STATUS_LOADING)

        try:
            audio = await self._resolve(future, token, signature)
        except StaleResult:
            self.event_logger.log("stale_result", level="debug", index=index, token=token)
            return
        except SEGMENT_FAILURES as exc:
            self._handle_failure(index, exc)
            return

        self._start_source(index, token, audio, request_start, self._clock())

    async def _resolve(
        self,
        future: asyncio.Future[DecodedAudio],
        token: int,
        signature: PlaybackConfig,
    ) -> DecodedAudio:
        try:
            audio = await asyncio.shield(future)
        except asyncio.CancelledError:
            if not future.cancelled():
                raise
            raise StaleResult("request was discarded") from None
        except SEGMENT_FAILURES:
            if not self._is_current(token, signature):
                raise StaleResult("failure for a superseded request") from None
            raise

        if not self._is_current(token, signature):
            raise StaleResult("playback moved on")
        return audio

    def _start_source(
        self,
        index: int,
        token: int,
        audio: DecodedAudio,
        request_start: float,
        audio_ready: float,
    ) -> None:
        try:
            source = self.output.start(
                audio, functools.partial(self._on_source_ended, index, token)
            )
        except AudioDeviceError as exc:
            logger.error("Playback failure for segment %s: %s", index, exc)
            self._halt(f"{STATUS_AUDIO_ERROR}: {exc}")
            return

        self._source = source
        self._consecutive_failures = 0
        metric = SegmentMetrics(
            segment_index=index,
            char_len=len(self.segments.texts[index]),
            request_start=request_start,
            audio_ready=audio_ready,
            playback_start=self._clock(),
        )
        self.metrics.append(metric)
        self._source_metric = metric

        evicted = self.cache.evict_before(index - self.keep_behind)
        if evicted:
            self.event_logger.log("cache_evict", level="debug", below=index - self.keep_behind, count=evicted)
        self._set_status(STATUS_PLAYING)
        self.event_logger.log(
            "segment_start",
            index=index,
            token=token,
            ready_ms=round(metric.ready_latency_ms, 1),
            seconds=round(audio.duration, 2),
        )

    def _on_source_ended(self, index: int, token: int) -> None:
        if token != self.state.token or not self.state.playing:
            return
        self._source = None
        self._close_metric()
        self.event_logger.log("segment_complete", index=index)
        self._advance(index)

    def _advance(self, index: int) -> None:
        following = index + 1
        if following < len(self.segments):
            self._begin(following)
        else:
            self._finish()

    def _finish(self) -> None:
        self._next_token()
        self.state.playing = False
        self.state.index = 0
        self._paused = False
        self._source = None
        self.event_logger.log("finished", segments=len(self.segments))
        self._set_status(STATUS_FINISHED)
        self._notify("on_finished")

    def _handle_failure(self, index: int, exc: Exception) -> None:
        self._consecutive_failures += 1
        logger.warning("Skipping segment %s after synthesis failure: %s", index, exc)
        self.event_logger.log(
            "segment_failed",
            level="warning",
            index=index,
            error=exc.__class__.__name__,
            reason=str(exc),
            consecutive=self._consecutive_failures,
        )
        self._report(f"Could not synthesize segment {index + 1}: {exc}")

        if self._consecutive_failures >= self.max_consecutive_failures:
            logger.error(
                "%s consecutive segment failures; stopping playback.",
                self._consecutive_failures,
            )
            self._halt(STATUS_NO_VOICE)
            return
        self._advance(index)

    def _prefetch(self, index: int, signature: PlaybackConfig) -> None:
        last = min(len(self.segments) - 1, index + self.prefetch_ahead)
        for ahead in range(index + 1, last + 1):
            if self.cache.has(signature, ahead) or self.cache.is_in_flight(signature, ahead):
                continue
            future = self.cache.get_or_fetch(signature, ahead)
            future.add_done_callback(functools.partial(self._on_prefetch_done, ahead))
            self.event_logger.log("prefetch", level="debug", index=ahead)

    def _on_prefetch_done(self, index: int, future: asyncio.Future[DecodedAudio]) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.debug("Prefetch of segment %s failed: %s", index, exc)

    async def _send_cancel_hint(self, backend: Backend) -> None:
        await asyncio.to_thread(self.client.cancel, backend)

    # ------------------------------------------------------------------ #
    # Internal helpers

    def _halt(self, status: str) -> None:
        self._stop_source()
        self._next_token()
        self.state.playing = False
        self._paused = False
        discarded = self.cache.discard_pending()
        if discarded:
            logger.debug("Discarded %s queued synthesis requests", discarded)
        self._set_status(status)

    def _stop_source(self) -> None:
        source, self._source = self._source, None
        if source is not None:
            source.stop()
            self._close_metric()

    def _close_metric(self) -> None:
        if self._source_metric is not None:
            self._source_metric.playback_end = self._clock()
            self._source_metric = None

    def _next_token(self) -> int:
        self.state.token += 1
        return self.state.token

    def _is_current(self, token: int, signature: PlaybackConfig) -> bool:
        return token == self.state.token and signature == self.config and self.state.playing

    def _paragraph_start(self, index: int) -> int:
        container = self.segments.container_of(index)
        while index > 0 and self.segments.container_of(index - 1) == container:
            index -= 1
        return index

    def _require_segments(self) -> None:
        if not len(self.segments):
            raise SegmentationEmpty(STATUS_EMPTY)

    def _check_index(self, index: int) -> None:
        if not 0 <= index < len(self.segments):
            raise InvalidSegmentIndex(
                f"segment index {index} outside 0..{len(self.segments) - 1}"
            )

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Scheduler task failed: %s", exc, exc_info=exc)

    def _set_status(self, text: str) -> None:
        if text == self._last_status:
            return
        self._report(text)

    def _report(self, text: str) -> None:
        self._last_status = text
        self._notify("on_status_changed", text)

    def _notify(self, method: str, *args: Any) -> None:
        if self.sink is None:
            return
        try:
            getattr(self.sink, method)(*args)
        except Exception:
            logger.exception("Position sink %s raised", method)
