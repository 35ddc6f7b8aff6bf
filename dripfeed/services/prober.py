# dripfeed/services/prober.py
from __future__ import annotations

import logging
from typing import Any, Optional

import serial

from ..errors import ConnectError, InputError
from ..models import ResultEvent
from .serial_channel import SerialChannel, SerialFactory, SerialSettings
from .transmitter import check_address, check_speed

logger = logging.getLogger("prober")


async def probe(
    address: Any,
    speed: Any,
    sink,
    settings: Optional[SerialSettings] = None,
    serial_factory: SerialFactory = serial.serial_for_url,
) -> ResultEvent:
    """
    Open `address` at `speed` and close it straight away.
    Emits exactly one ResultEvent to `sink` and returns it.
    """
    try:
        address = check_address(address, "COM port is undefined. Please select a valid COM port.")
        speed = check_speed(speed)
    except InputError as e:
        logger.info("Probe rejected: %s", e.message)
        result = ResultEvent(success=False, message=e.message)
        sink.emit(result)
        return result

    logger.info("Testing COM port: %s at baud rate: %d", address, speed)
    channel = SerialChannel(address, speed, settings=settings, serial_factory=serial_factory)
    try:
        await channel.open()
    except ConnectError as e:
        logger.info("Failed to open port %s at baud rate %d: %s", address, speed, e.message)
        result = ResultEvent(success=False, speed=speed, address=address, message=e.message)
    else:
        logger.info("Successfully opened port %s at baud rate %d", address, speed)
        result = ResultEvent(success=True, speed=speed, address=address)
    finally:
        await channel.close()

    sink.emit(result)
    return result
