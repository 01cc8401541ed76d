"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> classifier call

ONNX sessions are synchronous, so every ``predict``/``classify`` call is
pushed onto the pool. One Identify takes a slot for the primary call and,
when the primary is not confident, a second one for the secondary call; the
slot is released in between, so a fallback queues like any new request.
Waiting for a slot times out after ``SEMAPHORE_TIMEOUT_SECONDS`` and the
caller reports the run as failed (503 over HTTP).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


class InferencePool:
    """Bounds concurrent classifier calls and runs them off the event loop."""

    def __init__(self, max_concurrent: int) -> None:
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent,
            thread_name_prefix="imageid-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run one classifier call on the pool, holding a slot only for that call.

        Raises:
            TimeoutError: If no slot frees up within ``SEMAPHORE_TIMEOUT_SECONDS``.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(
                self._semaphore.acquire(),
                timeout=SEMAPHORE_TIMEOUT_SECONDS,
            )
        except TimeoutError:
            logger.warning("Inference pool saturated; rejecting request")
            raise
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Classifier calls executing right now (primary and fallback alike)."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Classifier calls waiting for a free slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
