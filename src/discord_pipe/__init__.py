# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pipe standard input into a Discord webhook.

Features:
    - Echoes every input line to standard output (tee-style)
    - Batch mode (default) or line-by-line delivery
    - Message splitting at the 2000-character API limit
    - Client-side token bucket rate limiting (5 burst, 1/second)
    - Bounded retry with linear backoff per message
    - Graceful SIGINT/SIGTERM handling that drains in-flight deliveries
    - Prometheus counters for sent messages, errors and bytes

Example::

    $ make test 2>&1 | discord-pipe -u https://discord.com/api/webhooks/...

Programmatic use::

    from discord_pipe import Pipeline, PipeConfig

    config = PipeConfig(webhook_url="https://discord.com/api/webhooks/...")
    await Pipeline(config).run(sys.stdin, sys.stdout)
"""

from .config_loader import ConfigurationError, PipeConfig, load_config
from .pipeline import Pipeline, PipelineCancelled
from .splitter import MAX_MESSAGE_LENGTH, split_message

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "MAX_MESSAGE_LENGTH",
    "PipeConfig",
    "Pipeline",
    "PipelineCancelled",
    "load_config",
    "split_message",
]
