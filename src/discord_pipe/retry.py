# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Retry schedule for webhook deliveries.

A message gets one initial attempt plus ``max_retries`` retries. The wait
before retry ``n`` (1-based) is ``n * backoff_unit`` seconds, so the default
schedule is 1s, 2s, 3s.
"""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_UNIT = 1.0


@dataclass(frozen=True)
class RetryPolicy:
    """Linear backoff retry policy.

    Attributes:
        max_retries: Retries after the first attempt (0 disables retry).
        backoff_unit: Seconds added to the wait for each failed attempt.
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_unit: float = DEFAULT_BACKOFF_UNIT

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_unit < 0:
            raise ValueError("backoff_unit must be >= 0")

    @property
    def max_attempts(self) -> int:
        """Total attempts including the first one."""
        return self.max_retries + 1

    def calculate_delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt ``attempt`` (0-indexed).

        Args:
            attempt: Index of the attempt that just failed.

        Returns:
            Delay before the next attempt.
        """
        return (attempt + 1) * self.backoff_unit

    def should_retry(self, attempt: int) -> bool:
        """Whether another attempt follows failed attempt ``attempt``."""
        return attempt < self.max_retries
