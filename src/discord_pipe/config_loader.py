# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loading for discord-pipe.

Settings come from command-line flags, environment variables and an optional
INI file. For the webhook URL the first source that defines it wins:

    1. ``-u/--webhook-url`` flag
    2. ``DISCORD_WEBHOOK_URL`` environment variable
    3. ``url`` (or ``webhook_url``) in the ``[webhook]`` section of the config file

``timeout`` and ``max_retries`` from the file replace the defaults when they
are positive.

Example:
    Configuration file format (discord-pipe.ini)::

        [webhook]
        url = https://discord.com/api/webhooks/123/abc
        timeout = 15
        max_retries = 5

    Loading::

        config = load_config(config_path="discord-pipe.ini", verbose=True)
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .logger import get_logger
from .retry import DEFAULT_MAX_RETRIES

ENV_WEBHOOK_URL = "DISCORD_WEBHOOK_URL"
CONFIG_SECTION = "webhook"
DEFAULT_TIMEOUT = 30.0

logger = get_logger("config_loader")


class ConfigurationError(RuntimeError):
    """Raised when a configuration source is unreadable or invalid."""


class PipeConfig(BaseModel):
    """Immutable settings for one pipeline run.

    Attributes:
        webhook_url: Destination webhook. None means echo-only.
        one_line: Send every input line as its own message.
        verbose: Debug logging, metrics report, non-zero exit on interrupt.
        timeout: Overall HTTP client timeout in seconds.
        max_retries: Retries after the first failed attempt.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    webhook_url: Annotated[
        str | None,
        Field(default=None, description="Discord webhook URL")
    ]
    one_line: Annotated[
        bool,
        Field(default=False, description="Send messages line by line")
    ]
    verbose: Annotated[
        bool,
        Field(default=False, description="Verbose mode")
    ]
    timeout: Annotated[
        float,
        Field(default=DEFAULT_TIMEOUT, gt=0, description="HTTP client timeout in seconds")
    ]
    max_retries: Annotated[
        int,
        Field(default=DEFAULT_MAX_RETRIES, ge=0, description="Retries per message")
    ]


def read_config_file(path: str | Path) -> dict[str, object]:
    """Read the ``[webhook]`` section of an INI file.

    The URL may be given as ``url`` or ``webhook_url``; ``url`` wins when
    both are set. Missing keys are left out of the result; a missing
    section yields an empty dict.

    Args:
        path: Path to the INI file.

    Returns:
        Dict with any of ``url`` (str), ``timeout`` (float) and
        ``max_retries`` (int).

    Raises:
        ConfigurationError: If the file cannot be read or parsed, or a value
            has the wrong type.
    """
    parser = configparser.ConfigParser()
    try:
        with open(path, encoding="utf-8") as fh:
            parser.read_file(fh)
    except OSError as exc:
        raise ConfigurationError(f"failed to load config file {path}: {exc}") from exc
    except configparser.Error as exc:
        raise ConfigurationError(f"malformed config file {path}: {exc}") from exc

    if not parser.has_section(CONFIG_SECTION):
        logger.debug("Config file %s has no [%s] section", path, CONFIG_SECTION)
        return {}

    values: dict[str, object] = {}
    try:
        url = (
            parser.get(CONFIG_SECTION, "url", fallback="").strip()
            or parser.get(CONFIG_SECTION, "webhook_url", fallback="").strip()
        )
        if url:
            values["url"] = url
        if parser.has_option(CONFIG_SECTION, "timeout"):
            values["timeout"] = parser.getfloat(CONFIG_SECTION, "timeout")
        if parser.has_option(CONFIG_SECTION, "max_retries"):
            values["max_retries"] = parser.getint(CONFIG_SECTION, "max_retries")
    except ValueError as exc:
        raise ConfigurationError(f"invalid value in config file {path}: {exc}") from exc
    return values


def load_config(
    *,
    webhook_url: str | None = None,
    config_path: str | Path | None = None,
    one_line: bool = False,
    verbose: bool = False,
    environ: Mapping[str, str] | None = None,
) -> PipeConfig:
    """Merge flags, environment and config file into a PipeConfig.

    Args:
        webhook_url: URL given on the command line.
        config_path: Optional INI file.
        one_line: Line-by-line mode flag.
        verbose: Verbose mode flag.
        environ: Environment mapping, ``os.environ`` by default.

    Returns:
        Frozen PipeConfig.

    Raises:
        ConfigurationError: If the config file is unreadable or a value is
            out of range.
    """
    env = os.environ if environ is None else environ
    settings: dict[str, object] = {"one_line": one_line, "verbose": verbose}

    if webhook_url:
        settings["webhook_url"] = webhook_url
    elif env.get(ENV_WEBHOOK_URL):
        settings["webhook_url"] = env[ENV_WEBHOOK_URL]

    if config_path:
        file_values = read_config_file(config_path)
        if "webhook_url" not in settings and file_values.get("url"):
            settings["webhook_url"] = file_values["url"]
        timeout = file_values.get("timeout")
        if timeout is not None and timeout > 0:
            settings["timeout"] = timeout
        max_retries = file_values.get("max_retries")
        if max_retries is not None and max_retries > 0:
            settings["max_retries"] = max_retries

    try:
        config = PipeConfig(**settings)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid configuration: {exc}") from exc

    if not config.webhook_url:
        logger.warning("Discord Webhook URL not set!")
    return config
