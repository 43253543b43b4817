"""Bounded execution of synchronous classification work.

    request -> asyncio.Semaphore(max_concurrent) -> ThreadPoolExecutor -> DigitClassifier.classify

With the default ``max_concurrent=1`` no two classifications overlap, so the
classifier's retained output always belongs to the latest request. A request
that cannot get a slot within ``queue_timeout`` seconds raises ``TimeoutError``
and the API answers 503.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from digitread.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PoolStats:
    active: int
    queued: int


class InferencePool:
    """Runs classification calls off the event loop, at most N at a time."""

    def __init__(self, settings: Settings) -> None:
        self._timeout = settings.queue_timeout
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="digit-inference",
        )
        self._lock = threading.Lock()
        self._active = 0
        self._queued = 0

    def stats(self) -> PoolStats:
        with self._lock:
            return PoolStats(active=self._active, queued=self._queued)

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        with self._lock:
            self._queued += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._timeout)
        except TimeoutError:
            logger.warning("No inference slot free after %.1fs", self._timeout)
            raise
        finally:
            with self._lock:
                self._queued -= 1

        with self._lock:
            self._active += 1
        try:
            yield
        finally:
            with self._lock:
                self._active -= 1
            self._semaphore.release()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Call ``func(*args)`` on a worker thread once a slot is free.

        Raises:
            TimeoutError: If no slot frees up within the queue timeout.
        """
        async with self._slot():
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)

    def shutdown(self) -> None:
        """Wait for running calls and stop the worker threads."""
        self._executor.shutdown(wait=True)
