# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Webhook delivery with rate limiting and retry.

Each message is delivered by its own call to
:meth:`WebhookSender.send_with_retry`. Every attempt takes a permit from the
shared :class:`~discord_pipe.rate_limit.RateLimiter`, posts
``{"content": ...}`` with terminal escape sequences stripped, and treats a
transport error or an HTTP status >= 400 as a failure. Failed attempts are
retried with linear backoff until the :class:`~discord_pipe.retry.RetryPolicy`
runs out; the outcome is recorded in :class:`~discord_pipe.metrics.PipeMetrics`.

Failures never escape ``send_with_retry``: one message giving up does not
affect any other delivery running alongside it.

Example:
    Sending one message::

        async with aiohttp.ClientSession() as session:
            sender = WebhookSender(url, session=session)
            delivered = await sender.send_with_retry("build finished")
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Awaitable, Callable

import aiohttp

from .logger import get_logger
from .metrics import PipeMetrics
from .rate_limit import RateLimiter
from .retry import RetryPolicy

ATTEMPT_TIMEOUT = 10.0

# CSI/OSC sequences and two-character escapes, 7-bit and 8-bit introducers
_ANSI_RE = re.compile(
    r"[\u001B\u009B][\[\]()#;?]*"
    r"(?:(?:(?:[a-zA-Z\d]*(?:;[a-zA-Z\d]*)*)?\u0007)"
    r"|(?:(?:\d{1,4}(?:;\d{0,4})*)?[\dA-PRZcf-ntqry=><~]))"
)
# lone surrogates, e.g. undecodable input bytes kept by surrogateescape
_SURROGATE_RE = re.compile("[\ud800-\udfff]")


class DeliveryError(RuntimeError):
    """Raised when a single delivery attempt fails.

    Attributes:
        status: HTTP status of a rejected request, None for transport errors.
    """

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class PayloadError(DeliveryError):
    """Raised when the message body cannot be serialised. Never retried."""


def strip_ansi(text: str) -> str:
    """Remove ANSI colour and terminal control sequences from ``text``."""
    return _ANSI_RE.sub("", text)


def payload_size(content: str) -> int:
    """Size in bytes of ``content`` as it was read from the input."""
    try:
        return len(content.encode("utf-8", "surrogateescape"))
    except UnicodeEncodeError:
        return len(content.encode("utf-8", "surrogatepass"))


def build_payload(content: str) -> bytes:
    """Serialise ``content`` as the webhook's JSON body.

    Escape sequences are stripped and every lone surrogate (one per
    undecodable input byte) becomes U+FFFD, so any input line produces a
    valid UTF-8 document.

    Args:
        content: Message text.

    Returns:
        UTF-8 encoded ``{"content": ...}`` document.

    Raises:
        PayloadError: If ``content`` cannot be serialised at all.
    """
    try:
        text = _SURROGATE_RE.sub("\ufffd", strip_ansi(content))
        return json.dumps({"content": text}, ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise PayloadError(f"cannot serialise message: {exc}") from exc


class WebhookSender:
    """Deliver messages to one webhook URL.

    Attributes:
        webhook_url: Destination endpoint.
        session: aiohttp session used for every request.
        rate_limiter: Token bucket shared with all concurrent deliveries.
        metrics: Counters updated once per message outcome.
        retry_policy: Attempt count and backoff schedule.
        attempt_timeout: Seconds allowed for one request.
        logger: Logger for diagnostic output.
    """

    def __init__(
        self,
        webhook_url: str,
        *,
        session: aiohttp.ClientSession,
        rate_limiter: RateLimiter | None = None,
        metrics: PipeMetrics | None = None,
        retry_policy: RetryPolicy | None = None,
        attempt_timeout: float = ATTEMPT_TIMEOUT,
        logger=None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Create a sender.

        Args:
            webhook_url: Destination endpoint.
            session: Open aiohttp session. The caller owns and closes it.
            rate_limiter: Shared limiter. A private one is created if None.
            metrics: Shared metrics. A private collector is created if None.
            retry_policy: Retry schedule. Defaults to 3 retries, 1s unit.
            attempt_timeout: Per-attempt timeout in seconds, independent of
                the session's own timeout.
            logger: Custom logger instance. If None, uses default logger.
            sleep: Coroutine used for backoff waits.
        """
        self.webhook_url = webhook_url
        self.session = session
        self.rate_limiter = rate_limiter or RateLimiter()
        self.metrics = metrics or PipeMetrics()
        self.retry_policy = retry_policy or RetryPolicy()
        self.attempt_timeout = attempt_timeout
        self.logger = logger or get_logger("delivery")
        self._sleep = sleep

    async def send_once(self, content: str) -> None:
        """Make one delivery attempt.

        Args:
            content: Message text.

        Raises:
            PayloadError: The body could not be built.
            DeliveryError: Transport failure, timeout or HTTP status >= 400.
        """
        await self.rate_limiter.acquire()

        data = build_payload(content)
        timeout = aiohttp.ClientTimeout(total=self.attempt_timeout)
        try:
            async with self.session.post(
                self.webhook_url,
                data=data,
                headers={"Content-Type": "application/json"},
                timeout=timeout,
            ) as resp:
                if resp.status >= 400:
                    raise DeliveryError(f"webhook rejected message: HTTP {resp.status}", status=resp.status)
                self.logger.debug("Message sent successfully (status=%d)", resp.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise DeliveryError(f"HTTP request error: {exc!r}") from exc

    async def send_with_retry(self, content: str) -> bool:
        """Deliver ``content``, retrying failed attempts with backoff.

        Empty content counts as delivered without touching the network or
        the metrics.

        Args:
            content: Message text.

        Returns:
            True if an attempt succeeded, False if the message was given up.
        """
        if not content:
            return True

        policy = self.retry_policy
        last_error: DeliveryError | None = None
        for attempt in range(policy.max_attempts):
            try:
                await self.send_once(content)
            except PayloadError as exc:
                self.logger.error("Message cannot be sent: %s", exc)
                last_error = exc
                break
            except DeliveryError as exc:
                last_error = exc
                self.logger.debug(
                    "Send attempt failed (attempt %d/%d): %s",
                    attempt + 1,
                    policy.max_attempts,
                    exc,
                )
                if policy.should_retry(attempt):
                    await self._sleep(policy.calculate_delay(attempt))
                continue
            self.metrics.inc_sent(payload_size(content))
            return True

        self.metrics.inc_error()
        self.logger.error(
            "Failed to send message after %d attempt(s): %s",
            attempt + 1,
            last_error,
        )
        return False
