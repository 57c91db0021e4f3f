# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus counters for webhook deliveries.

All metrics use the ``discord_pipe_`` prefix and live on a private
registry, so several pipelines in one process never collide.

Metrics exposed:
    - ``discord_pipe_messages_sent_total``: messages delivered.
    - ``discord_pipe_errors_total``: messages dropped after retries ran out.
    - ``discord_pipe_bytes_sent_total``: UTF-8 bytes of delivered messages.

Example:
    Reading the counters at the end of a run::

        metrics = PipeMetrics()
        metrics.inc_sent(12)
        metrics.get_stats()
        # MetricsSnapshot(messages_sent=1, errors=0, bytes_sent=12)
"""

from __future__ import annotations

import threading
from typing import NamedTuple

from prometheus_client import CollectorRegistry, Counter, generate_latest, write_to_textfile


class MetricsSnapshot(NamedTuple):
    """Counter values read together under the metrics lock."""

    messages_sent: int
    errors: int
    bytes_sent: int


class PipeMetrics:
    """Prometheus metrics collector for a pipeline run.

    Counter updates and snapshot reads are serialised by a lock so that a
    snapshot never observes a sent message without its bytes.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        sent: Counter of delivered messages.
        errors: Counter of messages that exhausted their retries.
        bytes_sent: Counter of delivered payload bytes.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. If not provided,
                a new registry is created.
        """
        self.registry = registry or CollectorRegistry()
        self._lock = threading.Lock()
        self.sent = Counter(
            "discord_pipe_messages_sent",
            "Total messages delivered to the webhook",
            registry=self.registry,
        )
        self.errors = Counter(
            "discord_pipe_errors",
            "Total messages that failed after all retries",
            registry=self.registry,
        )
        self.bytes_sent = Counter(
            "discord_pipe_bytes_sent",
            "Total bytes of delivered message content",
            registry=self.registry,
        )

    def inc_sent(self, nbytes: int) -> None:
        """Record one delivered message of ``nbytes`` bytes."""
        with self._lock:
            self.sent.inc()
            self.bytes_sent.inc(max(0, nbytes))

    def inc_error(self) -> None:
        """Record one message given up after retries."""
        with self._lock:
            self.errors.inc()

    def get_stats(self) -> MetricsSnapshot:
        """Return the current counter values.

        Returns:
            MetricsSnapshot with messages_sent, errors and bytes_sent.
        """
        with self._lock:
            return MetricsSnapshot(
                messages_sent=self._value("discord_pipe_messages_sent_total"),
                errors=self._value("discord_pipe_errors_total"),
                bytes_sent=self._value("discord_pipe_bytes_sent_total"),
            )

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)

    def write_textfile(self, path: str) -> None:
        """Write the metrics to ``path`` for a node-exporter textfile collector.

        Args:
            path: Destination file. Written atomically via a temp file.
        """
        write_to_textfile(path, self.registry)

    def _value(self, sample_name: str) -> int:
        return int(self.registry.get_sample_value(sample_name) or 0)
