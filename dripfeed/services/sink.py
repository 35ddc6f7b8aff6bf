# dripfeed/services/sink.py
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

logger = logging.getLogger("sink")


class EventSink:
    """
    Bounded per-session event channel.

    emit() never blocks the producer: when the queue is full the oldest queued
    event is dropped. Consumers read with get() or iterate events(), which stops
    after the first terminal event.
    """

    def __init__(self, maxsize: int = 256):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, int(maxsize)))
        self.dropped = 0

    def emit(self, event) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                stale = self._queue.get_nowait()
                self.dropped += 1
                logger.warning("Observer too slow; dropped %s event", stale.name)

    async def get(self):
        return await self._queue.get()

    def get_nowait(self) -> Optional[object]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def empty(self) -> bool:
        return self._queue.empty()

    async def events(self) -> AsyncIterator[object]:
        while True:
            event = await self._queue.get()
            yield event
            if event.terminal:
                return
