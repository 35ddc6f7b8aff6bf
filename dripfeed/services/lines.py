# dripfeed/services/lines.py
from __future__ import annotations

import asyncio
import codecs
import logging
import re
from collections import deque
from typing import BinaryIO, Deque, Optional

from ..errors import FileReadError

logger = logging.getLogger("lines")

DEFAULT_CHUNK_SIZE = 64 * 1024

# \r\n, \n or a lone \r
_TERMINATOR = re.compile(r"\r\n|\n|\r")


# =============================================================================
# Line counter
# =============================================================================

def _count_newlines(path: str, chunk_size: int) -> int:
    total = 0
    with open(path, "rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            total += chunk.count(b"\n")
    return total


async def count_lines(path: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    """
    Count b"\\n" bytes in one streaming pass, `chunk_size` bytes at a time.

    A last line without a trailing newline is not counted, so the result can be
    one less than the number of lines LineSource yields.
    """
    try:
        return await asyncio.to_thread(_count_newlines, path, max(1, int(chunk_size)))
    except OSError as e:
        raise FileReadError(f"Failed to count lines in G-code file: {e}") from e


# =============================================================================
# Line source
# =============================================================================

class LineSource:
    """
    Lazy, ordered, single-use async iterator over the text lines of a file.

    Lines are yielded without their terminator. pause() holds back the next line
    until resume(); close() releases the file at once and ends iteration.
    """

    def __init__(self, path: str, chunk_size: int = DEFAULT_CHUNK_SIZE, encoding: str = "utf-8"):
        self.path = path
        self.chunk_size = max(1, int(chunk_size))
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._file: Optional[BinaryIO] = None
        self._pending: Deque[str] = deque()
        self._tail = ""
        self._eof = False
        self._started = False
        self._closed = False
        self._resumed = asyncio.Event()
        self._resumed.set()

    # --- flow control -----------------------------------------------------
    @property
    def paused(self) -> bool:
        return not self._resumed.is_set()

    @property
    def closed(self) -> bool:
        return self._closed

    def pause(self) -> None:
        self._resumed.clear()

    def resume(self) -> None:
        self._resumed.set()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._pending.clear()
        # wake anyone parked in __anext__ so they observe the close
        self._resumed.set()
        f, self._file = self._file, None
        if f is not None:
            try:
                await asyncio.to_thread(f.close)
            except OSError as e:
                logger.warning("Error closing %s: %s", self.path, e)

    # --- iteration --------------------------------------------------------
    def __aiter__(self) -> "LineSource":
        if self._started:
            raise RuntimeError("LineSource is not restartable")
        self._started = True
        return self

    async def __anext__(self) -> str:
        await self._resumed.wait()
        if self._closed:
            raise StopAsyncIteration
        while not self._pending:
            if self._eof:
                await self.close()
                raise StopAsyncIteration
            await self._fill()
            if self._closed:
                raise StopAsyncIteration
        return self._pending.popleft()

    async def __aenter__(self) -> "LineSource":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # --- internals --------------------------------------------------------
    async def _fill(self) -> None:
        try:
            if self._file is None:
                opening = asyncio.ensure_future(asyncio.to_thread(open, self.path, "rb"))
                try:
                    f = await asyncio.shield(opening)
                except asyncio.CancelledError:
                    opening.add_done_callback(_close_opened)
                    raise
                if self._closed:
                    f.close()
                    return
                self._file = f
            chunk = await asyncio.to_thread(self._file.read, self.chunk_size)
        except OSError as e:
            await self.close()
            raise FileReadError(f"Error reading {self.path}: {e}") from e

        if chunk:
            text = self._tail + self._decoder.decode(chunk)
        else:
            self._eof = True
            text = self._tail + self._decoder.decode(b"", final=True)
        self._split(text)

    def _split(self, text: str) -> None:
        pos = 0
        for m in _TERMINATOR.finditer(text):
            # a \r at the very end may still be the first half of \r\n
            if m.group() == "\r" and m.end() == len(text) and not self._eof:
                break
            self._pending.append(text[pos:m.start()])
            pos = m.end()
        self._tail = text[pos:]
        if self._eof and self._tail:
            self._pending.append(self._tail)
            self._tail = ""


def _close_opened(opening: asyncio.Future) -> None:
    """Close a file whose open finished after the reader was cancelled."""
    if opening.cancelled() or opening.exception() is not None:
        return
    opening.result().close()
