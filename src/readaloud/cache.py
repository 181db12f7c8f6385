"""
Decode cache keyed by (configuration signature, segment index).

The cache sits in front of the single-flight gate: a hit returns immediately,
a key already in flight shares the pending task, and a miss queues one
synthesis call, decodes the result and stores it. Entries only live for the
current signature and inside a sliding window behind the playback position.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Callable, Iterable, NamedTuple, Sequence

from .decoder import decode_audio
from .gate import SingleFlightGate
from .provider_base import DecodedAudio, PlaybackConfig, SynthesisBackend

logger = logging.getLogger(__name__)


class CacheKey(NamedTuple):
    signature: PlaybackConfig
    index: int


class DecodeCache:
    def __init__(
        self,
        client: SynthesisBackend,
        texts: Sequence[str],
        *,
        gate: SingleFlightGate | None = None,
        decoder: Callable[[bytes], DecodedAudio] = decode_audio,
    ) -> None:
        self.client = client
        self.texts = list(texts)
        self.gate = gate or SingleFlightGate()
        self._decoder = decoder
        self._entries: dict[CacheKey, DecodedAudio] = {}
        self._in_flight: dict[CacheKey, asyncio.Task[DecodedAudio]] = {}
        self._queued: set[CacheKey] = set()
        self._running: set[CacheKey] = set()
        self._generation = 0
        self._floor = 0

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[CacheKey]:
        return list(self._entries)

    def has(self, signature: PlaybackConfig, index: int) -> bool:
        return CacheKey(signature, index) in self._entries

    def is_in_flight(self, signature: PlaybackConfig, index: int) -> bool:
        return CacheKey(signature, index) in self._in_flight

    @property
    def has_running(self) -> bool:
        """True while a synthesis call is on the wire."""
        return bool(self._running)

    def get_or_fetch(self, signature: PlaybackConfig, index: int) -> asyncio.Future[DecodedAudio]:
        """Return a future resolving to the decoded audio for `(signature, index)`."""
        loop = asyncio.get_running_loop()
        key = CacheKey(signature, index)

        cached = self._entries.get(key)
        if cached is not None:
            future: asyncio.Future[DecodedAudio] = loop.create_future()
            future.set_result(cached)
            return future

        pending = self._in_flight.get(key)
        if pending is not None:
            logger.debug("Coalescing request for segment %s", index)
            return pending

        logger.debug("Requesting segment %s (gate pending=%s)", index, self.gate.pending)
        task = loop.create_task(self._fetch(key, self._generation))
        self._in_flight[key] = task
        self._queued.add(key)
        task.add_done_callback(functools.partial(self._on_fetch_done, key))
        return task

    def evict_before(self, index: int) -> int:
        """Drop entries below `index` for every signature; returns the number evicted."""
        self._floor = max(0, index)
        stale = [key for key in self._entries if key.index < index]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug("Evicted %s cache entries below index %s", len(stale), index)
        return len(stale)

    def clear(self) -> None:
        """Invalidate everything; used when the configuration signature changes."""
        self._generation += 1
        self._entries.clear()
        self._cancel(key for key in self._in_flight if key in self._queued)
        self._in_flight.clear()

    def discard_pending(self) -> int:
        """Cancel requests still waiting for the gate."""
        queued = [key for key in self._in_flight if key in self._queued]
        self._cancel(queued)
        for key in queued:
            self._in_flight.pop(key, None)
        return len(queued)

    def close(self) -> None:
        self._cancel(list(self._in_flight))
        self._in_flight.clear()
        self._entries.clear()

    # ------------------------------------------------------------------ #
    # Internal helpers

    def _cancel(self, keys: Iterable[CacheKey]) -> None:
        for key in list(keys):
            task = self._in_flight.get(key)
            if task is not None and not task.done():
                task.cancel()

    async def _fetch(self, key: CacheKey, generation: int) -> DecodedAudio:
        payload = await self.gate.run(self._synthesize, key)
        audio = await asyncio.to_thread(self._decoder, payload)
        if generation == self._generation and key.index >= self._floor:
            self._entries[key] = audio
        else:
            logger.debug("Discarding result for segment %s from a stale cache window", key.index)
        return audio

    async def _synthesize(self, key: CacheKey) -> bytes:
        self._queued.discard(key)
        self._running.add(key)
        try:
            return await asyncio.to_thread(
                self.client.synthesize, self.texts[key.index], key.signature
            )
        finally:
            self._running.discard(key)

    def _on_fetch_done(self, key: CacheKey, task: asyncio.Task[DecodedAudio]) -> None:
        self._queued.discard(key)
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Fetch for segment %s failed: %s", key.index, task.exception())
