"""Periodic crawl engine.

One engine polls a fixed, ordered list of URLs for a single subscription and
emits parsed items on an ItemStream. Fetch and parse failures never stop the
loop; they are logged and the URL is retried on the next pass. Only stop()
ends the loop, and the stream is closed exactly once when it does.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional, Sequence

from core.config import DEFAULT_PAGE_DELAY
from core.errors import TransportError
from core.models import DiscoveredItem
from core.ports import FetcherPort, ParserPort

LOGGER = logging.getLogger(__name__)

_CLOSED = object()


class ItemStream:
    """Async iterator over the items emitted by one engine run."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, item: DiscoveredItem) -> None:
        if self._closed:
            raise RuntimeError("item stream is closed")
        self._queue.put_nowait(item)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "ItemStream":
        return self

    async def __anext__(self) -> DiscoveredItem:
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the marker so later iterations finish immediately too.
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item


class CrawlEngine:
    """Polls urls every interval and emits what the parser finds."""

    def __init__(
        self,
        urls: Sequence[str],
        parser: ParserPort,
        fetcher: FetcherPort,
        interval: timedelta,
        page_delay: timedelta = DEFAULT_PAGE_DELAY,
    ) -> None:
        self._urls = tuple(urls)
        self._parser = parser
        self._fetcher = fetcher
        self._interval = interval.total_seconds()
        self._page_delay = page_delay.total_seconds()
        self._task: Optional[asyncio.Task] = None
        self._poll_count = 0

    @property
    def urls(self) -> tuple[str, ...]:
        return self._urls

    @property
    def poll_count(self) -> int:
        """Number of completed crawl passes."""

        return self._poll_count

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> ItemStream:
        """Launch the polling loop and return its item stream."""

        if self.running:
            raise RuntimeError("crawl engine is already running")

        stream = ItemStream()
        name = f"crawl:{self._urls[0]}" if self._urls else "crawl"
        self._task = asyncio.create_task(self._run(stream), name=name)
        # A task cancelled before its first step never enters _run.
        self._task.add_done_callback(lambda _: stream.close())
        return stream

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait_closed(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _run(self, stream: ItemStream) -> None:
        try:
            # First pass runs immediately, without waiting for the interval.
            await self._crawl_pass(stream)
            while True:
                await asyncio.sleep(self._interval)
                await self._crawl_pass(stream)
        except asyncio.CancelledError:
            LOGGER.info("Stopping crawler after %s passes", self._poll_count)
            raise

    async def _crawl_pass(self, stream: ItemStream) -> None:
        last = len(self._urls) - 1
        for index, url in enumerate(self._urls):
            try:
                await self.crawl(url, stream)
            except TransportError as exc:
                LOGGER.warning("Failed to crawl resource %s: %s", url, exc)
            except Exception:
                LOGGER.exception("Failed to parse resource %s", url)

            if index < last:
                await asyncio.sleep(self._page_delay)

        self._poll_count += 1

    async def crawl(self, url: str, stream: ItemStream) -> None:
        """Fetch one URL, parse it and emit every item on stream."""

        body = await self._fetcher.fetch(url)

        def emit(identifier: str, observed_at: datetime) -> None:
            stream.put(DiscoveredItem(identifier=identifier, observed_at=observed_at))

        self._parser.parse(body, emit)
