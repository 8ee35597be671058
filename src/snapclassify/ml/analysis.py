"""Analyzing queue for captures.

A capture is decoded, normalized, and run through the model on a worker
thread so the event loop stays free for health polling. By default only one
capture is analyzed at a time (``max_concurrent=1``); further captures wait
for the slot and are turned away with 503 once ``queue_timeout`` runs out,
so a new capture cannot start while one is still "Analyzing...".
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from snapclassify.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AnalysisQueue:
    """Bounds how many captures are analyzed at once and how long others wait."""

    def __init__(self, settings: Settings) -> None:
        self._slots = asyncio.Semaphore(settings.max_concurrent)
        self._wait_timeout = settings.queue_timeout
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="snapclassify-analyze",
        )
        self._analyzing = 0
        self._waiting = 0
        self._counts_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Analyze one capture with ``func(*args)`` on the worker thread.

        Raises:
            TimeoutError: If no slot frees up within ``queue_timeout`` seconds.
        """
        with self._counts_lock:
            self._waiting += 1
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self._wait_timeout)
        except TimeoutError:
            logger.warning("Capture rejected: still analyzing after %.1fs", self._wait_timeout)
            raise
        finally:
            with self._counts_lock:
                self._waiting -= 1

        with self._counts_lock:
            self._analyzing += 1
        try:
            return await asyncio.get_running_loop().run_in_executor(self._executor, func, *args)
        finally:
            self._slots.release()
            with self._counts_lock:
                self._analyzing -= 1

    @property
    def analyzing(self) -> int:
        """Captures currently being analyzed."""
        with self._counts_lock:
            return self._analyzing

    @property
    def waiting(self) -> int:
        """Captures waiting for a free slot."""
        with self._counts_lock:
            return self._waiting

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
