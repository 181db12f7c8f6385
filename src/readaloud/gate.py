"""
Single-flight gate serializing synthesis calls.

The synthesis service degrades under concurrent load, so every call in a
session goes through one gate and runs alone. Waiters are served in arrival
order; a call that raises only fails its own waiter.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlightGate:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._pending = 0

    @property
    def pending(self) -> int:
        """Number of calls queued or running."""
        return self._pending

    async def run(self, fn: Callable[..., Awaitable[T]], *args: object) -> T:
        self._pending += 1
        try:
            async with self._lock:
                logger.debug("Gate running call (pending=%s)", self._pending)
                return await fn(*args)
        finally:
            self._pending -= 1
