# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Input pipeline: echo stdin and fan out webhook deliveries.

The :class:`Pipeline` reads its input one line at a time, echoes every line
to the output stream and turns the input into delivery tasks:

- line mode: every line is dispatched as soon as it is read;
- batch mode (default): lines are collected into one buffer that is split
  with :func:`~discord_pipe.splitter.split_message` at end of input, each
  chunk becoming its own delivery.

Deliveries run concurrently as asyncio tasks and share one rate limiter.
Before returning, the pipeline always waits for every dispatched task, then
stops the rate limiter. A cancellation event (set by the SIGINT/SIGTERM
handler) stops further reads; whatever was already read is still delivered
and :class:`PipelineCancelled` is raised once everything has drained.

States::

    READING -> DRAINING (cancelled) | FLUSHING (end of input)
            -> AWAITING_OUTSTANDING -> CLOSED | CANCELLED

Example:
    Running the pipeline on stdin::

        config = PipeConfig(webhook_url=url)
        pipeline = Pipeline(config)
        await pipeline.run(sys.stdin, sys.stdout, cancel_event)
        pipeline.report_metrics()
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import Enum
from typing import IO

import aiohttp

from .config_loader import PipeConfig
from .delivery import WebhookSender
from .logger import get_logger
from .metrics import MetricsSnapshot, PipeMetrics
from .rate_limit import RateLimiter
from .retry import RetryPolicy
from .splitter import split_message


class PipelineState(str, Enum):
    """Lifecycle of a pipeline run."""

    IDLE = "idle"
    READING = "reading"
    DRAINING = "draining"
    FLUSHING = "flushing"
    AWAITING_OUTSTANDING = "awaiting_outstanding"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class PipelineCancelled(RuntimeError):
    """Raised by :meth:`Pipeline.run` when input was interrupted."""

    def __init__(self, message: str = "processing interrupted"):
        super().__init__(message)


def _strip_terminator(line: str) -> str:
    if line.endswith("\n"):
        line = line[:-1]
    if line.endswith("\r"):
        line = line[:-1]
    return line


def _shared_with_sender(sender, name: str, given):
    owned = getattr(sender, name, None)
    if owned is not None and given is not None and owned is not given:
        raise ValueError(f"{name} differs from the one used by the sender")
    return owned or given


class Pipeline:
    """Orchestrates one run from input to drained deliveries.

    Attributes:
        config: Settings for this run.
        metrics: Counters shared with the sender.
        rate_limiter: Token bucket shared by all deliveries.
        state: Current PipelineState.
        logger: Logger for diagnostic output.
    """

    def __init__(
        self,
        config: PipeConfig,
        *,
        sender: WebhookSender | None = None,
        rate_limiter: RateLimiter | None = None,
        metrics: PipeMetrics | None = None,
        splitter: Callable[[str], list[str]] = split_message,
        logger=None,
    ):
        """Prepare a pipeline.

        Args:
            config: Settings for this run.
            sender: Delivery worker. If None, a WebhookSender with its own
                aiohttp session is built when the run starts.
            rate_limiter: Shared limiter. Taken from ``sender`` or created.
                Must be the sender's own limiter when both are given.
            metrics: Shared metrics. Taken from ``sender`` or created.
            splitter: Batch-mode chunking function.
            logger: Custom logger instance. If None, uses default logger.

        Raises:
            ValueError: If ``rate_limiter`` or ``metrics`` is not the one
                ``sender`` already uses.
        """
        self.config = config
        self.logger = logger or get_logger("pipeline")
        self.rate_limiter = _shared_with_sender(sender, "rate_limiter", rate_limiter) or RateLimiter()
        self.metrics = _shared_with_sender(sender, "metrics", metrics) or PipeMetrics()
        self.state = PipelineState.IDLE
        self._sender = sender
        self._session: aiohttp.ClientSession | None = None
        self._splitter = splitter
        self._tasks: set[asyncio.Task] = set()
        self._dispatched = 0

    @property
    def outstanding(self) -> int:
        """Number of delivery tasks still running."""
        return len(self._tasks)

    @property
    def dispatched(self) -> int:
        """Number of delivery tasks started so far."""
        return self._dispatched

    async def run(self, stream: IO[str], output: IO[str], cancel_event: asyncio.Event | None = None) -> None:
        """Process ``stream`` until end of input or cancellation.

        Args:
            stream: Text input read line by line.
            output: Stream receiving the echoed lines.
            cancel_event: Set to stop reading. Checked before and after every
                read; a line returned after it fired is neither echoed nor
                sent.

        Raises:
            PipelineCancelled: The cancel event fired; all dispatched
                deliveries have completed.
            OSError: Reading the input failed (after draining).
        """
        if cancel_event is None:
            cancel_event = asyncio.Event()
        send_enabled = bool(self.config.webhook_url)
        if send_enabled and self._sender is None:
            self._sender = self._build_sender()
        self.rate_limiter.start()

        self.state = PipelineState.READING
        batch: list[str] = []
        cancelled = False
        try:
            while True:
                if cancel_event.is_set():
                    cancelled = True
                    self.logger.info("Processing interrupted")
                    break
                raw = await asyncio.to_thread(stream.readline)
                if cancel_event.is_set():
                    # signal arrived while blocked in readline; drop that line
                    cancelled = True
                    self.logger.info("Processing interrupted")
                    break
                if not raw:
                    break
                line = _strip_terminator(raw)
                output.write(line + "\n")
                output.flush()

                if self.config.one_line:
                    if send_enabled:
                        self._dispatch(line)
                else:
                    batch.append(line + "\n")

            self.state = PipelineState.DRAINING if cancelled else PipelineState.FLUSHING
            if send_enabled and not self.config.one_line:
                for chunk in self._splitter("".join(batch)):
                    self._dispatch(chunk)
        finally:
            await self._await_outstanding()
            await self._close()

        if cancelled:
            self.state = PipelineState.CANCELLED
            raise PipelineCancelled()
        self.state = PipelineState.CLOSED

    def report_metrics(self) -> MetricsSnapshot:
        """Log and return the aggregate delivery counts."""
        stats = self.metrics.get_stats()
        self.logger.info(
            "Metrics messages_sent=%d errors=%d bytes_sent=%d",
            stats.messages_sent,
            stats.errors,
            stats.bytes_sent,
        )
        return stats

    def _build_sender(self) -> WebhookSender:
        self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.config.timeout))
        return WebhookSender(
            self.config.webhook_url,
            session=self._session,
            rate_limiter=self.rate_limiter,
            metrics=self.metrics,
            retry_policy=RetryPolicy(max_retries=self.config.max_retries),
        )

    def _dispatch(self, content: str) -> None:
        self._dispatched += 1
        task = asyncio.create_task(
            self._sender.send_with_retry(content),
            name=f"delivery-{self._dispatched}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            self.logger.warning("Delivery task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("Delivery task %s crashed: %r", task.get_name(), exc)

    async def _await_outstanding(self) -> None:
        self.state = PipelineState.AWAITING_OUTSTANDING
        if self._tasks:
            self.logger.debug("Waiting for %d outstanding deliveries", len(self._tasks))
        while self._tasks:
            await asyncio.wait(set(self._tasks))

    async def _close(self) -> None:
        await self.rate_limiter.close()
        if self._session is not None:
            await self._session.close()
            self._session = None
