"""Shared fakes for the serial layer."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import List, Optional

import pytest
import serial


class FakeSerial:
    """Just enough of pyserial's Serial for the channel code paths."""

    def __init__(self, port, baudrate=9600, timeout=None, write_timeout=None, do_not_open=False, *, bench):
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.write_timeout = write_timeout
        self.is_open = False
        self.dtr = True
        self.rts = True
        self.bench = bench
        self._replies = deque(bench.replies)
        if not do_not_open:
            self.open()

    def open(self) -> None:
        if self.bench.open_delay:
            time.sleep(self.bench.open_delay)
        if self.bench.open_error:
            raise serial.SerialException(self.bench.open_error)
        self.is_open = True

    def close(self) -> None:
        self.bench.close_calls += 1
        if self.bench.close_error:
            raise OSError(self.bench.close_error)
        self.is_open = False

    def write(self, data) -> int:
        if not self.is_open:
            raise serial.PortNotOpenError()
        b = self.bench
        with b.guard:
            b.active += 1
            b.max_active = max(b.max_active, b.active)
        try:
            if b.unplug_after is not None and len(b.written) >= b.unplug_after:
                b.unplugged = True
            if b.unplugged:
                time.sleep(0.3)
                raise serial.SerialException("device disconnected")
            if b.write_delay:
                time.sleep(b.write_delay)
            if b.fail_write_at == len(b.written) + 1:
                raise serial.SerialException(b.write_error)
            b.written.append(bytes(data))
            return len(data)
        finally:
            with b.guard:
                b.active -= 1

    def flush(self) -> None:
        pass

    @property
    def in_waiting(self) -> int:
        if self.bench.unplugged:
            raise OSError(5, "Input/output error")
        return 0

    def read(self, size=1) -> bytes:
        return b""

    def readline(self) -> bytes:
        if self._replies:
            return self._replies.popleft()
        return b""


class SerialBench:
    """Factory handed to SerialChannel; records what happened across instances."""

    def __init__(self):
        self.open_error: Optional[str] = None
        self.open_delay = 0.0
        self.close_error: Optional[str] = None
        self.fail_write_at: Optional[int] = None
        self.write_error = "write failed"
        self.unplug_after: Optional[int] = None
        self.unplugged = False
        self.write_delay = 0.0
        self.replies: List[bytes] = []
        self.written: List[bytes] = []
        self.instances: List[FakeSerial] = []
        self.close_calls = 0
        self.active = 0
        self.max_active = 0
        self.guard = threading.Lock()

    def __call__(self, port, **kwargs) -> FakeSerial:
        ser = FakeSerial(port, bench=self, **kwargs)
        self.instances.append(ser)
        return ser

    @property
    def lines(self) -> List[str]:
        return [w.decode("utf-8").rstrip("\n") for w in self.written]

    @property
    def all_closed(self) -> bool:
        return all(not s.is_open for s in self.instances)


class RecordingSink:
    """Keeps every event plus how many writes had completed when it was emitted."""

    def __init__(self, bench: Optional[SerialBench] = None):
        self.bench = bench
        self.events: list = []
        self.writes_at: List[int] = []
        self.on_emit = None

    def emit(self, event) -> None:
        self.events.append(event)
        self.writes_at.append(len(self.bench.written) if self.bench else 0)
        if self.on_emit is not None:
            self.on_emit(event)

    def of(self, cls) -> list:
        return [e for e in self.events if isinstance(e, cls)]


@pytest.fixture
def bench() -> SerialBench:
    return SerialBench()


@pytest.fixture
def sink(bench) -> RecordingSink:
    return RecordingSink(bench)


@pytest.fixture
def make_sink():
    return RecordingSink


@pytest.fixture
def gcode_file(tmp_path):
    def _write(content, name="job.gcode"):
        p = tmp_path / name
        if isinstance(content, str):
            content = content.encode("utf-8")
        p.write_bytes(content)
        return str(p)
    return _write
