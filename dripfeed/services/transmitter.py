# dripfeed/services/transmitter.py
from __future__ import annotations

import asyncio
import logging
import os
import stat
from typing import Any, Optional

import serial

from ..errors import DripFeedError, InputError, WriteError
from ..models import (
    CompletionEvent,
    ErrorEvent,
    LineEvent,
    ProgressEvent,
    Session,
    SessionState,
)
from .lines import DEFAULT_CHUNK_SIZE, LineSource, count_lines
from .serial_channel import SerialChannel, SerialFactory, SerialSettings

logger = logging.getLogger("transmitter")


# =============================================================================
# Input validation
# =============================================================================

def check_address(address: Any, message: str = "Please select a COM port before starting.") -> str:
    if not isinstance(address, str) or not address.strip():
        raise InputError(message)
    return address.strip()


def check_speed(speed: Any) -> int:
    """Accept a positive int, or a string of digits as sent by HTML forms."""
    if isinstance(speed, bool):
        raise InputError("Invalid baud rate provided.")
    if isinstance(speed, str) and speed.strip().isdigit():
        speed = int(speed.strip())
    if not isinstance(speed, int) or speed <= 0:
        raise InputError("Invalid baud rate provided.")
    return speed


def check_file(path: Any) -> str:
    if not isinstance(path, str) or not path:
        raise InputError("G-code file is not accessible.")
    try:
        st = os.stat(path)
    except OSError:
        raise InputError("G-code file is not accessible.") from None
    if not stat.S_ISREG(st.st_mode) or not os.access(path, os.R_OK):
        raise InputError("G-code file is not accessible.")
    if st.st_size == 0:
        raise InputError("G-code file is empty.")
    return path


def validate_request(path: Any, address: Any, speed: Any) -> tuple:
    """
    Check session inputs without acquiring anything.
    The address is checked first, so a missing port never stats the file.
    Returns the normalized (path, address, speed).
    """
    address = check_address(address)
    speed = check_speed(speed)
    path = check_file(path)
    return path, address, speed


# =============================================================================
# Transmitter
# =============================================================================

class Transmitter:
    """
    Drives one session: validate, count, open, stream, close.

    Exactly one line is in flight at a time: the line source stays paused from
    the moment a line is taken until its write is acknowledged. Every session
    ends with exactly one terminal event (completion or error) on the sink.
    """

    def __init__(
        self,
        path: Any,
        address: Any,
        speed: Any,
        sink,
        settings: Optional[SerialSettings] = None,
        serial_factory: SerialFactory = serial.serial_for_url,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.session = Session(path=path, address=address, speed=speed)
        self.sink = sink
        self.settings = settings or SerialSettings()
        self.chunk_size = chunk_size
        self._factory = serial_factory
        self._channel: Optional[SerialChannel] = None
        self._source: Optional[LineSource] = None

    @property
    def state(self) -> SessionState:
        return self.session.state

    def _enter(self, state: SessionState) -> None:
        logger.debug("session %s: %s -> %s", self.session.id, self.session.state.value, state.value)
        self.session.state = state

    def _fail(self, message: str) -> None:
        if self.session.state.terminal:
            return
        self.session.error = message
        self._enter(SessionState.FAILED)
        self.sink.emit(ErrorEvent(message))

    # -------------------------------------------------------------------------
    # lifecycle
    # -------------------------------------------------------------------------
    async def run(self) -> Session:
        s = self.session
        try:
            self._enter(SessionState.VALIDATING)
            s.path, s.address, s.speed = validate_request(s.path, s.address, s.speed)

            self._enter(SessionState.COUNTING)
            total = await count_lines(s.path, self.chunk_size)
            if total == 0:
                raise InputError("G-code file is empty.")
            s.total_lines = total

            self._enter(SessionState.OPENING)
            self._channel = SerialChannel(s.address, s.speed, settings=self.settings, serial_factory=self._factory)
            try:
                await self._channel.open()
            except DripFeedError as e:
                raise type(e)(f"Failed to open port {s.address}: {e.message}") from e

            self._enter(SessionState.STREAMING)
            self._source = LineSource(s.path, chunk_size=self.chunk_size)
            await self._stream()
            # a failure reported after the last acknowledgment still fails the session
            errors = self._channel.errors
            if errors.done():
                raise errors.result()

            self._enter(SessionState.COMPLETING)
            logger.info("G-code file completed: %s (%d lines)", s.path, s.lines_sent)
            await self._release()
            self.sink.emit(CompletionEvent())
            self._enter(SessionState.COMPLETED)
        except DripFeedError as e:
            logger.error("Session %s failed: %s", s.id, e.message)
            self._fail(e.message)
        except asyncio.CancelledError:
            logger.warning("Session %s cancelled", s.id)
            self._fail("cancelled")
            raise
        except Exception as e:
            logger.exception("Session %s crashed", s.id)
            self._fail(str(e) or type(e).__name__)
            raise
        finally:
            await self._release()
        return s

    async def _stream(self) -> None:
        s = self.session
        source, channel = self._source, self._channel
        async for line in source:
            source.pause()
            if not channel.is_open:
                raise WriteError("Port is not writable.")
            await self._send(line)

            s.lines_sent += 1
            percent = s.lines_sent * 100 // s.total_lines
            self.sink.emit(ProgressEvent(percent))
            self.sink.emit(LineEvent(line))
            logger.debug("Sent to CNC: %s", line)
            source.resume()

    async def _send(self, line: str) -> None:
        """Write one line, racing the acknowledgment against out-of-band channel errors."""
        channel = self._channel
        write = asyncio.ensure_future(channel.write_line(line))
        try:
            done, _ = await asyncio.wait({write, channel.errors}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not write.done():
                # the worker thread finishes on its own; close() waits for it
                write.add_done_callback(_discard_result)
        if write in done:
            write.result()
            return
        raise channel.errors.result()

    async def _release(self) -> None:
        source, self._source = self._source, None
        if source is not None:
            await source.close()
        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.close()


def _discard_result(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()
