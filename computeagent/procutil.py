"""Small helpers for child processes and their pipes."""

from __future__ import annotations

import asyncio
import os
from typing import AsyncIterator

READ_CHUNK_SIZE = 4096


async def iter_lines(stream: asyncio.StreamReader) -> AsyncIterator[str]:
    """Yield decoded lines from a stream, including an unterminated last line.

    Reads in chunks so arbitrarily long lines never hit the reader limit.
    """
    buffer = b""
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        buffer += chunk
        *lines, buffer = buffer.split(b"\n")
        for line in lines:
            yield line.decode("utf-8", errors="replace")
    if buffer:
        yield buffer.decode("utf-8", errors="replace")


def process_alive(pid: int) -> bool:
    """Probe a pid with signal 0."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    return True
