# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for discord-pipe.

Modules obtain loggers through :func:`get_logger`; handlers and levels are
configured once by the entry point with :func:`configure_logging`. Log
records always go to stderr because stdout carries the echoed input.

Example:
    Typical usage in a module::

        from discord_pipe.logger import get_logger

        logger = get_logger("delivery")
        logger.debug("Message sent")
"""

import logging
import sys

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "DiscordPipe") -> logging.Logger:
    """Retrieve a logger instance.

    This does not configure handlers or formatters; that responsibility lies
    with the application entry point.

    Args:
        name: The logger name. Defaults to "DiscordPipe".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(verbose: bool = False) -> None:
    """Configure the root logger for a command-line run.

    Quiet runs only report errors; verbose runs log everything down to
    per-attempt debug messages.

    Args:
        verbose: Enable DEBUG level instead of ERROR.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.ERROR,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stderr,
        force=True,  # Force reconfiguration to avoid duplicate handlers
    )
    # aiohttp is chatty at DEBUG and adds nothing about our deliveries
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
