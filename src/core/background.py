"""Bounded group of fire-and-forget store tasks.

Store writes are best-effort and must never stall polling or command
handling, so they run as background tasks with their own timeout. Tasks that
share an ordering key (one durable record) run one after another so a delete
cannot overtake an earlier write of the same record. On shutdown the group is
drained for a bounded time; whatever is still running afterwards is
cancelled and lost.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Optional

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 1000

# Share of the graceful shutdown budget spent draining; the rest closes the store.
DRAIN_SHARE = 0.6


def drain_budget(graceful_timeout: float) -> float:
    return graceful_timeout * DRAIN_SHARE


class BackgroundTasks:
    def __init__(
        self,
        timeout: float,
        drain_timeout: float,
        max_pending: int = DEFAULT_MAX_PENDING,
    ) -> None:
        self._timeout = timeout
        self._drain_timeout = drain_timeout
        self._max_pending = max_pending
        self._tasks: set[asyncio.Task] = set()
        self._tails: dict[str, asyncio.Task] = {}
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(
        self,
        coro: Awaitable[object],
        *,
        name: str,
        ordering_key: Optional[str] = None,
    ) -> Optional[asyncio.Task]:
        """Schedule coro in the background; None when the group refused it."""

        if self._closed or len(self._tasks) >= self._max_pending:
            LOGGER.warning(
                "Dropping background task %s (closed=%s, pending=%s)",
                name,
                self._closed,
                len(self._tasks),
            )
            close = getattr(coro, "close", None)
            if close is not None:
                close()
            return None

        previous = self._tails.get(ordering_key) if ordering_key else None
        task = asyncio.create_task(self._run(coro, name, previous), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if ordering_key:
            self._tails[ordering_key] = task
            task.add_done_callback(lambda t, k=ordering_key: self._forget_tail(k, t))
        return task

    def _forget_tail(self, ordering_key: str, task: asyncio.Task) -> None:
        if self._tails.get(ordering_key) is task:
            del self._tails[ordering_key]

    async def _run(self, coro: Awaitable[object], name: str, previous: Optional[asyncio.Task]) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        try:
            await asyncio.wait_for(coro, self._timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Background task %s timed out after %ss", name, self._timeout)
        except Exception as exc:
            LOGGER.warning("Background task %s failed: %s", name, exc)
        else:
            LOGGER.debug("Background task %s done", name)

    async def drain(self, timeout: Optional[float] = None) -> int:
        """Wait for outstanding tasks and return how many had to be abandoned."""

        if not self._tasks:
            return 0

        budget = self._drain_timeout if timeout is None else timeout
        _, pending = await asyncio.wait(set(self._tasks), timeout=budget)
        for task in pending:
            task.cancel()
        if pending:
            LOGGER.warning("Abandoned %s background store tasks after %ss", len(pending), budget)
        return len(pending)

    def close(self) -> None:
        self._closed = True

    async def shutdown(self) -> None:
        LOGGER.info("Draining %s background store tasks", len(self._tasks))
        self.close()
        await self.drain()
