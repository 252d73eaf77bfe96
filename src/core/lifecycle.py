"""Periodic cleanup and graceful shutdown."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional

from core.config import LifecycleConfig
from core.ports import Cleaner, Shutdowner

LOGGER = logging.getLogger(__name__)


class ShutdownFunc:
    """Adapter to use a plain coroutine function as a shutdown target."""

    def __init__(self, name: str, func: Callable[[], Awaitable[object]]) -> None:
        self.name = name
        self._func = func

    async def shutdown(self) -> None:
        await self._func()


def _target_name(target: object) -> str:
    return getattr(target, "name", None) or type(target).__name__


class Lifecycle:
    def __init__(
        self,
        config: LifecycleConfig,
        cleaners: Iterable[Cleaner] = (),
        shutdowners: Iterable[Shutdowner] = (),
    ) -> None:
        self._config = config
        self._cleaners = list(cleaners)
        self._shutdowners = list(shutdowners)
        self._cleaning: Optional[asyncio.Task] = None

    async def clean_once(self) -> None:
        for cleaner in self._cleaners:
            try:
                await cleaner.clean()
            except Exception:
                LOGGER.exception("Cleaner %s failed", _target_name(cleaner))

    async def run_cleaning(self) -> None:
        interval = self._config.cleanup_interval.total_seconds()
        try:
            while True:
                await asyncio.sleep(interval)
                await self.clean_once()
        except asyncio.CancelledError:
            LOGGER.info("Stopping cleansing")
            raise

    def start_cleaning(self) -> asyncio.Task:
        if self._cleaning is None or self._cleaning.done():
            self._cleaning = asyncio.create_task(self.run_cleaning(), name="cleansing")
        return self._cleaning

    async def stop_cleaning(self) -> None:
        if self._cleaning is None:
            return
        self._cleaning.cancel()
        try:
            await self._cleaning
        except asyncio.CancelledError:
            pass
        self._cleaning = None

    async def _shutdown_one(self, target: Shutdowner) -> None:
        try:
            await target.shutdown()
        except Exception as exc:
            LOGGER.error("Shutdown of %s failed: %s", _target_name(target), exc)

    async def shutdown(self) -> bool:
        """Shut every target down concurrently within the graceful timeout.

        Returns True when all targets finished in time. Errors and timeouts
        are only logged; the caller exits either way.
        """

        timeout = self._config.graceful_shutdown_timeout.total_seconds()
        LOGGER.info("Starting shut down, timeout %ss", timeout)
        await self.stop_cleaning()

        if not self._shutdowners:
            LOGGER.info("Ending shut down")
            return True

        tasks = [
            asyncio.create_task(self._shutdown_one(target), name=f"shutdown:{_target_name(target)}")
            for target in self._shutdowners
        ]
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            LOGGER.warning("%s did not finish within %ss", task.get_name(), timeout)
            task.cancel()

        LOGGER.info("Ending shut down")
        return not pending
