"""Outbound message queue.

Messages are buffered FIFO and drained by a single task. When the buffer is
empty the task sleeps for the configured send delay, which also spaces out
bursts towards the messaging transport.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import timedelta
from typing import Optional

from core.models import OutboundMessage
from core.ports import SenderPort

LOGGER = logging.getLogger(__name__)


class Outbox:
    def __init__(self, sender: SenderPort, buffer_size: int, send_delay: timedelta) -> None:
        self._sender = sender
        self._send_delay = send_delay.total_seconds()
        self._queue: asyncio.Queue[OutboundMessage] = asyncio.Queue(maxsize=buffer_size)
        self._overflow: deque[OutboundMessage] = deque()
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize() + len(self._overflow)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._serve(), name="outbox")

    def post(self, message: OutboundMessage) -> None:
        """Queue a message without suspending the caller.

        Used from inside lock scopes. Once the buffer is full, messages wait
        in an overflow line that keeps posting order.
        """

        if not self._overflow:
            try:
                self._queue.put_nowait(message)
                return
            except asyncio.QueueFull:
                LOGGER.warning("Outbound buffer full, deferring message to %s", message.chat_id)
        self._overflow.append(message)

    def _refill(self) -> None:
        while self._overflow and not self._queue.full():
            self._queue.put_nowait(self._overflow.popleft())

    async def _serve(self) -> None:
        try:
            while True:
                self._refill()
                try:
                    message = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    await asyncio.sleep(self._send_delay)
                    continue

                try:
                    await self._sender.send(message.chat_id, message.text)
                except Exception as exc:
                    LOGGER.warning("Failed to send message to %s: %s", message.chat_id, exc)
        except asyncio.CancelledError:
            LOGGER.info("Stopping accepting outbound messages")
            raise

    async def stop(self) -> None:
        if self._overflow:
            LOGGER.warning("Dropping %s deferred outbound messages", len(self._overflow))
            self._overflow.clear()
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
