# dripfeed/services/serial_channel.py
from __future__ import annotations

import asyncio
import glob
import logging
import os
import threading
import time
from typing import Any, Callable, Dict, List, Literal, Optional

import serial  # pyserial
import serial.tools.list_ports
from pydantic import BaseModel

from ..errors import ChannelError, ConnectError, WriteError

logger = logging.getLogger("serial")


# =============================================================================
# Configuration model
# =============================================================================

class SerialSettings(BaseModel):
    # Serial behavior
    read_timeout_s: float = 0.1
    write_timeout_s: Optional[float] = 10.0
    reset_on_connect: bool = False         # toggle DTR/RTS to reset board
    startup_drain_s: float = 0.0           # drain boot banner after open
    poll_interval_s: float = 0.25          # out-of-band watcher period

    # Acknowledgment: "drain" = OS reports the bytes written,
    # "ok" = additionally wait for the firmware's ok line
    ack_mode: Literal["drain", "ok"] = "drain"
    ack_timeout_s: float = 30.0

    # Protocol parsing (Marlin/GRBL-like), only used with ack_mode "ok"
    ok_tokens: List[str] = ["ok"]
    error_tokens: List[str] = ["error", "Error:", "ALARM"]
    busy_tokens: List[str] = ["busy:", "wait"]


SerialFactory = Callable[..., Any]


# =============================================================================
# Port enumeration
# =============================================================================

def list_ports(prefix: str = "/dev/tty") -> List[Dict[str, str]]:
    """
    Return a LIST of serial ports (rich metadata) whose device path starts with `prefix`.
    """
    ports: List[Dict[str, str]] = []
    by_id_links = {}
    for link in glob.glob("/dev/serial/by-id/*"):
        by_id_links[os.path.realpath(link)] = link
    for p in serial.tools.list_ports.comports():
        if prefix and not p.device.startswith(prefix):
            continue
        ports.append({
            "path": p.device,
            "by_id": by_id_links.get(p.device, ""),
            "description": p.description or "",
            "manufacturer": getattr(p, "manufacturer", "") or "",
            "serial_number": getattr(p, "serial_number", "") or "",
            "hwid": p.hwid or "",
            "vid": f"{p.vid:04x}" if p.vid is not None else "",
            "pid": f"{p.pid:04x}" if p.pid is not None else "",
        })
    return ports


# =============================================================================
# Channel
# =============================================================================

class SerialChannel:
    """
    One serial connection: open, acknowledged write, idempotent close.

    Blocking pyserial calls run in worker threads guarded by per-direction locks,
    so the event loop never waits on the device. Failures detected outside a
    write (device unplugged...) resolve the `errors` future.
    """

    def __init__(
        self,
        address: str,
        speed: int,
        settings: Optional[SerialSettings] = None,
        serial_factory: SerialFactory = serial.serial_for_url,
    ):
        self.address = address
        self.speed = int(speed)
        self.settings = settings or SerialSettings()
        self._factory = serial_factory
        self._ser = None
        # writes and reads may overlap, as with pyserial.threaded; close waits for both
        self._write_lock = threading.Lock()
        self._read_lock = threading.Lock()
        self._writing = False
        self._watcher: Optional[asyncio.Task] = None
        self._errors: Optional[asyncio.Future] = None

    @property
    def is_open(self) -> bool:
        ser = self._ser
        return bool(ser is not None and ser.is_open)

    @property
    def errors(self) -> asyncio.Future:
        """Resolves with a ChannelError when the connection fails out of band."""
        if self._errors is None:
            self._errors = asyncio.get_running_loop().create_future()
        return self._errors

    # -------------------------------------------------------------------------
    # open / close
    # -------------------------------------------------------------------------
    async def open(self) -> None:
        if self._ser is not None:
            raise ConnectError(f"Port {self.address} already open")
        logger.info("Opening serial port %s @ %d", self.address, self.speed)
        opening = asyncio.ensure_future(asyncio.to_thread(self._open_blocking))
        try:
            ser = await asyncio.shield(opening)
        except asyncio.CancelledError:
            # the worker still finishes the open; close whatever it hands back
            opening.add_done_callback(self._close_abandoned)
            raise
        except (serial.SerialException, OSError, ValueError) as e:
            raise ConnectError(str(e)) from e
        self._ser = ser
        if self._errors is None:
            self._errors = asyncio.get_running_loop().create_future()
        self._watcher = asyncio.create_task(self._watch(), name=f"serial-watch:{self.address}")
        logger.info("Port opened at baud rate %d on %s", self.speed, self.address)

    def _open_blocking(self):
        s = self.settings
        ser = self._factory(
            self.address,
            baudrate=self.speed,
            timeout=s.read_timeout_s,
            write_timeout=s.write_timeout_s,
            do_not_open=True,
        )
        ser.open()
        try:
            if s.reset_on_connect:
                try:
                    ser.dtr = False
                    ser.rts = False
                    time.sleep(0.05)
                    ser.dtr = True
                    ser.rts = True
                except (serial.SerialException, OSError, ValueError):
                    logger.debug("DTR/RTS toggle not supported", exc_info=True)
            if s.startup_drain_s > 0:
                _drain_startup(ser, s.startup_drain_s)
        except BaseException:
            ser.close()
            raise
        return ser

    def _close_abandoned(self, opening: asyncio.Future) -> None:
        if opening.cancelled() or opening.exception() is not None:
            return
        try:
            opening.result().close()
            logger.info("Port %s closed after cancelled open.", self.address)
        except (serial.SerialException, OSError) as e:
            logger.warning("Error closing port %s: %s", self.address, e)

    async def close(self) -> None:
        """Close the port if open. Safe to call any number of times; never raises."""
        watcher, self._watcher = self._watcher, None
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass
        ser, self._ser = self._ser, None
        if ser is None:
            return
        try:
            await asyncio.to_thread(self._close_blocking, ser)
            logger.info("Port %s closed.", self.address)
        except Exception as e:
            logger.warning("Error closing port %s: %s", self.address, e)

    def _close_blocking(self, ser) -> None:
        with self._write_lock, self._read_lock:
            if ser.is_open:
                ser.close()

    # -------------------------------------------------------------------------
    # write
    # -------------------------------------------------------------------------
    async def write(self, data: bytes) -> List[str]:
        """
        Write `data` and return once the transport acknowledged it.
        Returns controller replies collected in ack_mode "ok" (empty otherwise).
        """
        ser = self._ser
        if ser is None or not ser.is_open:
            raise WriteError("Port is not writable.")
        if self._writing:
            raise WriteError("write already in flight")
        self._writing = True
        try:
            return await asyncio.to_thread(self._write_blocking, ser, data)
        except serial.SerialTimeoutException as e:
            raise WriteError(f"Write timeout on {self.address}") from e
        except (serial.SerialException, OSError) as e:
            raise WriteError(str(e)) from e
        finally:
            self._writing = False

    async def write_line(self, text: str) -> List[str]:
        return await self.write((text + "\n").encode("utf-8"))

    def _write_blocking(self, ser, data: bytes) -> List[str]:
        with self._write_lock:
            ser.write(data)
            ser.flush()
            if self.settings.ack_mode == "ok":
                with self._read_lock:
                    return self._read_until_ok_or_error(ser)
        return []

    def _read_until_ok_or_error(self, ser) -> List[str]:
        """
        Read lines until OK or Error appears. Busy/info lines are collected and ignored.
        """
        s = self.settings
        lines: List[str] = []
        deadline = time.monotonic() + s.ack_timeout_s
        ok_tokens = [t.lower() for t in s.ok_tokens]
        error_tokens = [t.lower() for t in s.error_tokens]
        busy_tokens = [t.lower() for t in s.busy_tokens]

        while True:
            if time.monotonic() > deadline:
                raise WriteError("Timeout waiting for firmware response (no 'ok' or 'error').")

            raw = ser.readline()
            if not raw:
                continue
            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue

            lines.append(text)
            low = text.lower()
            if any(tok in low for tok in error_tokens):
                raise WriteError(f"Firmware reported error: {text}")
            if any(tok in low for tok in busy_tokens):
                continue
            if any(tok in low for tok in ok_tokens):
                return lines

    # -------------------------------------------------------------------------
    # out-of-band watcher
    # -------------------------------------------------------------------------
    async def _watch(self) -> None:
        interval = max(0.01, self.settings.poll_interval_s)
        while True:
            await asyncio.sleep(interval)
            ser = self._ser
            if ser is None:
                return
            try:
                await asyncio.to_thread(self._poll_blocking, ser)
            except (serial.SerialException, OSError) as e:
                logger.error("Serial port error on %s: %s", self.address, e)
                if not self.errors.done():
                    self.errors.set_result(ChannelError(str(e) or "serial port error"))
                return

    def _poll_blocking(self, ser) -> None:
        # an ok-mode write is reading replies; it sees failures itself
        if not self._read_lock.acquire(blocking=False):
            return
        try:
            if not ser.is_open:
                return
            pending = ser.in_waiting
            if pending and self.settings.ack_mode == "drain":
                data = ser.read(pending)
                logger.debug("%s << %r", self.address, data)
        finally:
            self._read_lock.release()


def _drain_startup(ser, seconds: float) -> None:
    """
    Drain banner / residual input for a short period.
    """
    end = time.monotonic() + max(0.0, seconds)
    prev_to = ser.timeout
    try:
        ser.timeout = 0.1
        while time.monotonic() < end:
            data = ser.read(ser.in_waiting or 1)
            if not data:
                time.sleep(0.02)
    finally:
        ser.timeout = prev_to
