# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Split text into chunks that fit the webhook message length limit.

Chunks are built from whole lines whenever possible. A line that cannot fit
in a chunk on its own is cut at the limit boundary, so no chunk is ever
longer than the limit.

Example:
    >>> split_message("hello\\nworld\\n")
    ['hello\\nworld\\n']
    >>> [len(c) for c in split_message("a" * 2001)]
    [2000, 2]
"""

from __future__ import annotations

MAX_MESSAGE_LENGTH = 2000


def _iter_lines(content: str):
    """Yield newline-terminated lines; an unterminated tail gets a newline."""
    parts = content.split("\n")
    for part in parts[:-1]:
        yield part + "\n"
    if parts[-1]:
        yield parts[-1] + "\n"


def split_message(content: str, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Partition ``content`` into chunks of at most ``limit`` characters.

    Content that already fits is returned untouched as a single chunk, which
    also covers the empty string. Longer content is split on line boundaries:
    lines accumulate until the next one would overflow the chunk. A line
    longer than ``limit`` (newline included) is force-split after flushing
    the pending chunk, and its remainder starts the next chunk.

    For newline-terminated content the chunks concatenate back to the
    original text. A final line without a newline is sent with one.

    Args:
        content: Text to split.
        limit: Maximum chunk length in characters.

    Returns:
        Ordered list of chunks, never empty.

    Raises:
        ValueError: If limit is not positive.
    """
    if limit < 1:
        raise ValueError("limit must be positive")
    if len(content) <= limit:
        return [content]

    chunks: list[str] = []
    current: list[str] = []
    current_len = 0

    for line in _iter_lines(content):
        while len(line) > limit:
            if current:
                chunks.append("".join(current))
                current, current_len = [], 0
            chunks.append(line[:limit])
            line = line[limit:]

        if current_len + len(line) > limit:
            chunks.append("".join(current))
            current, current_len = [], 0

        current.append(line)
        current_len += len(line)

    if current:
        chunks.append("".join(current))

    return chunks
