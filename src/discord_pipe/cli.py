# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for discord-pipe.

Reads standard input, echoes it to standard output and posts it to a Discord
webhook.

Usage:
    some-command | discord-pipe -u https://discord.com/api/webhooks/...
    tail -f app.log | discord-pipe -1            # one message per line
    make 2>&1 | discord-pipe -c ~/.discord-pipe.ini -v

Exit status is 1 when the configuration cannot be loaded, when stdin is an
interactive terminal, when reading input fails, or when a verbose run is
interrupted by SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from typing import IO

import click
from rich.console import Console

from . import __version__
from .config_loader import ConfigurationError, load_config
from .logger import configure_logging, get_logger
from .pipeline import Pipeline, PipelineCancelled

err_console = Console(stderr=True)
logger = get_logger("cli")

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def run_async(coro):
    """Execute an async coroutine synchronously from CLI context.

    Args:
        coro: Async coroutine to execute.

    Returns:
        The coroutine's return value.
    """
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print a formatted error message to stderr.

    Args:
        message: Error message text to display.
    """
    err_console.print(f"[red]Error:[/red] {message}")


def is_piped(stream: IO) -> bool:
    """Return False when ``stream`` is an interactive terminal.

    Streams without a file descriptor (in-memory buffers) count as piped.
    """
    try:
        return not os.isatty(stream.fileno())
    except (AttributeError, OSError, ValueError):
        return True


def install_signal_handlers(loop: asyncio.AbstractEventLoop, cancel_event: asyncio.Event) -> list[int]:
    """Set ``cancel_event`` on SIGINT/SIGTERM.

    Args:
        loop: The running event loop.
        cancel_event: Event observed by the pipeline between lines.

    Returns:
        The signals that were actually installed.
    """

    def _on_signal() -> None:
        if not cancel_event.is_set():
            logger.info("Received shutdown signal")
            cancel_event.set()

    installed: list[int] = []
    for sig in SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(sig, _on_signal)
        except (NotImplementedError, RuntimeError, ValueError) as exc:
            logger.debug("Cannot install handler for %s: %s", sig, exc)
            continue
        installed.append(sig)
    return installed


async def run_pipeline(pipeline: Pipeline, stdin: IO[str], stdout: IO[str]) -> None:
    """Run ``pipeline`` with signal-driven cancellation.

    Raises:
        PipelineCancelled: A shutdown signal interrupted the input.
    """
    loop = asyncio.get_running_loop()
    cancel_event = asyncio.Event()
    installed = install_signal_handlers(loop, cancel_event)
    try:
        await pipeline.run(stdin, stdout, cancel_event)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


@click.command()
@click.version_option(__version__, prog_name="discord-pipe")
@click.option("-u", "--webhook-url", default=None, help="Discord webhook URL (overrides DISCORD_WEBHOOK_URL).")
@click.option("-1", "--one-line", "one_line", is_flag=True, help="Send message line-by-line.")
@click.option("-v", "--verbose", is_flag=True, help="Verbose mode: debug logging and final metrics.")
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    envvar="DISCORD_PIPE_CONFIG",
    default=None,
    help="INI config file with a [webhook] section (url or webhook_url, timeout, max_retries).",
)
@click.option(
    "--metrics-file",
    type=click.Path(dir_okay=False, writable=True),
    default=None,
    help="Write Prometheus metrics to this file when the run ends.",
)
def main(
    webhook_url: str | None,
    one_line: bool,
    verbose: bool,
    config_path: str | None,
    metrics_file: str | None,
) -> None:
    """Tee standard input to a Discord webhook."""
    configure_logging(verbose)

    try:
        config = load_config(
            webhook_url=webhook_url,
            config_path=config_path,
            one_line=one_line,
            verbose=verbose,
        )
    except ConfigurationError as exc:
        print_error(f"Failed to load configuration: {exc}")
        sys.exit(1)

    # undecodable bytes survive as surrogates and are echoed back unchanged
    stdin = click.get_text_stream("stdin", encoding="utf-8", errors="surrogateescape")
    if not is_piped(stdin):
        print_error("No piped input detected (stdin is a terminal)")
        sys.exit(1)
    stdout = click.get_text_stream("stdout", encoding="utf-8", errors="surrogateescape")

    pipeline = Pipeline(config)
    exit_code = 0
    try:
        run_async(run_pipeline(pipeline, stdin, stdout))
    except PipelineCancelled as exc:
        if config.verbose:
            logger.error("Processing error: %s", exc)
            exit_code = 1
    except (OSError, ValueError) as exc:
        logger.error("Failed to read input: %s", exc)
        exit_code = 1

    if config.verbose:
        pipeline.report_metrics()
    if metrics_file:
        try:
            pipeline.metrics.write_textfile(metrics_file)
        except OSError as exc:
            print_error(f"Cannot write metrics file {metrics_file}: {exc}")
            exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()
