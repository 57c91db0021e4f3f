# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Token bucket rate limiter shared by concurrent webhook deliveries.

The bucket holds up to ``capacity`` permits and starts full, so the first
``capacity`` requests go out immediately. A background task adds one permit
every ``interval`` seconds; refills that arrive while the bucket is full are
discarded. Steady-state throughput is therefore one request per interval
regardless of how many deliveries are waiting.

Example:
    Gating requests::

        async with RateLimiter(capacity=5, interval=1.0) as limiter:
            await limiter.acquire()
            await post(...)
"""

from __future__ import annotations

import asyncio
import contextlib

from .logger import get_logger

DEFAULT_CAPACITY = 5
DEFAULT_REFILL_INTERVAL = 1.0

logger = get_logger("rate_limit")


class RateLimiter:
    """Fixed-rate token bucket for asyncio tasks.

    Permits live in a bounded ``asyncio.Queue``: ``acquire()`` takes one
    (suspending while the bucket is empty) and the refill task puts one back
    per tick unless the queue is already full.

    Attributes:
        capacity: Maximum number of permits held at once.
        interval: Seconds between refill ticks.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, interval: float = DEFAULT_REFILL_INTERVAL):
        """Create a full bucket.

        Args:
            capacity: Burst size. Must be at least 1.
            interval: Refill period in seconds. Must be positive.

        Raises:
            ValueError: If capacity or interval is out of range.
        """
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.capacity = int(capacity)
        self.interval = float(interval)
        self._tokens: asyncio.Queue[None] = asyncio.Queue(maxsize=self.capacity)
        for _ in range(self.capacity):
            self._tokens.put_nowait(None)
        self._refill_task: asyncio.Task | None = None
        self._closed = False

    @property
    def available(self) -> int:
        """Number of permits currently in the bucket."""
        return self._tokens.qsize()

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the refill schedule on the running event loop.

        Calling it again while the schedule runs has no effect.
        """
        if self._closed or self._refill_task is not None:
            return
        self._refill_task = asyncio.create_task(self._refill_loop(), name="rate-limit-refill")

    async def acquire(self) -> None:
        """Wait for a permit and consume it."""
        if self._refill_task is None:
            self.start()
        await self._tokens.get()

    async def close(self) -> None:
        """Stop the refill schedule. Safe to call more than once."""
        self._closed = True
        task, self._refill_task = self._refill_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.debug("Rate limiter refill stopped")

    async def _refill_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self._tokens.put_nowait(None)
            except asyncio.QueueFull:
                pass  # bucket full, refill discarded

    async def __aenter__(self) -> RateLimiter:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
