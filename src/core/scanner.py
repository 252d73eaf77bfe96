"""Scan orchestrator.

Owns one crawl engine and one dedup cache per subscriber. Items coming out of
an engine are filtered through the subscriber's cache: the first sighting of
an identifier triggers a notification and is persisted to the store, every
sighting refreshes the day the identifier was last seen on.

A single shared/exclusive lock guards the subscription map together with all
caches. Subscription churn happens at human speed and a poll yields a few
dozen items, so a coarse lock is enough. Lock scopes only cover in-memory
mutation; store calls run in the background with their own timeout.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from core.background import BackgroundTasks
from core.config import ScannerConfig
from core.crawler import CrawlEngine, ItemStream
from core.dedup import Visited, eviction_cutoff, evict_expired, merge_loaded, observe, today
from core.errors import AlreadyExistsError, NotFoundError
from core.locks import RWLock
from core.models import SubscriberKey
from core.ports import FetcherPort, ParserPort, ResultHandler, StorePort
from core.record_keys import scan_record_key

LOGGER = logging.getLogger(__name__)


@dataclass
class Subscription:
    key: SubscriberKey
    engine: CrawlEngine
    visited: Visited = field(default_factory=dict)
    running: bool = False
    consumer: Optional[asyncio.Task] = None

    @property
    def urls(self) -> tuple[str, ...]:
        return self.engine.urls


class ScanOrchestrator:
    """Registers, starts and stops per-subscriber crawl engines."""

    def __init__(
        self,
        config: ScannerConfig,
        store: StorePort,
        fetcher: FetcherPort,
        parser: ParserPort,
        on_result: ResultHandler,
        tasks: BackgroundTasks,
    ) -> None:
        self._config = config
        self._store = store
        self._fetcher = fetcher
        self._parser = parser
        self._on_result = on_result
        self._tasks = tasks
        self._subscriptions: dict[SubscriberKey, Subscription] = {}
        self._lock = RWLock()

    async def register(self, key: SubscriberKey, urls: Sequence[str]) -> None:
        """Create a subscription with an empty cache; use start() to run it."""

        async with self._lock.exclusive():
            if key in self._subscriptions:
                LOGGER.info("@%s already registered in chat %s", key.username, key.chat_id)
                raise AlreadyExistsError(f"scanner for {key} already exists")

            engine = CrawlEngine(
                urls,
                parser=self._parser,
                fetcher=self._fetcher,
                interval=self._config.interval,
                page_delay=self._config.page_delay,
            )
            self._subscriptions[key] = Subscription(key=key, engine=engine)

        LOGGER.info("@%s subscribed in chat %s on scanning of %s", key.username, key.chat_id, list(urls))

    async def start(self, key: SubscriberKey) -> None:
        """Start the engine, warm the cache from the store, then consume results.

        Returns once the bounded cache load has finished; consumption keeps
        running in the background until the engine's stream closes.
        """

        async with self._lock.exclusive():
            subscription = self._subscriptions.get(key)
            if subscription is None:
                raise NotFoundError(f"scanner for {key} does not exist")
            stream = subscription.engine.start()
            subscription.running = True

        await self._load_visited(key, subscription)

        subscription.consumer = asyncio.create_task(
            self._consume(key, subscription, stream),
            name=f"consume:{key}",
        )

    async def _load_visited(self, key: SubscriberKey, subscription: Subscription) -> None:
        day = today(self._config.timezone)
        scan_key = scan_record_key(key)
        try:
            values = await asyncio.wait_for(
                self._store.get_set_members(scan_key),
                self._config.store_timeout.total_seconds(),
            )
        except asyncio.TimeoutError:
            LOGGER.warning("Timed out loading visited items for %s", scan_key)
            return
        except Exception as exc:
            LOGGER.warning("Failed to load visited items for %s: %s", scan_key, exc)
            return

        # Nothing to merge, no need to take the lock.
        if not values:
            return

        async with self._lock.exclusive():
            merged = merge_loaded(subscription.visited, values, day)
        LOGGER.info("Loaded %s visited items for %s", merged, scan_key)

    async def _consume(self, key: SubscriberKey, subscription: Subscription, stream: ItemStream) -> None:
        scan_key = scan_record_key(key)
        async for item in stream:
            async with self._lock.exclusive():
                # Items still buffered after unregister must not reach the store.
                if not subscription.running:
                    break

                if observe(subscription.visited, item.identifier, item.observed_at):
                    try:
                        self._on_result(key, item.identifier)
                    except Exception:
                        LOGGER.exception("Result handler failed for %s", key)
                    self._tasks.spawn(
                        self._store.add_set_members(scan_key, item.identifier),
                        name=f"redis:sadd {scan_key} {item.identifier}",
                        ordering_key=scan_key,
                    )
                else:
                    LOGGER.debug("%s already notified about %s", key, item.identifier)

        LOGGER.info("Stopped consuming results for %s", key)

    async def unregister(self, key: SubscriberKey) -> None:
        """Stop and remove the subscription, then drop its persisted cache."""

        async with self._lock.exclusive():
            subscription = self._subscriptions.pop(key, None)
            if subscription is None:
                LOGGER.info("@%s not registered in chat %s", key.username, key.chat_id)
                raise NotFoundError(f"scanner for {key} does not exist")
            subscription.engine.stop()
            subscription.running = False

        scan_key = scan_record_key(key)
        self._tasks.spawn(
            self._store.delete_key(scan_key),
            name=f"redis:del {scan_key}",
            ordering_key=scan_key,
        )
        LOGGER.info("@%s unsubscribed in chat %s from scanning", key.username, key.chat_id)

    async def exists(self, key: SubscriberKey) -> bool:
        async with self._lock.shared():
            return key in self._subscriptions

    async def urls(self, key: SubscriberKey) -> tuple[str, ...]:
        async with self._lock.shared():
            subscription = self._subscriptions.get(key)
            if subscription is None:
                raise NotFoundError(f"scanner for {key} does not exist")
            return subscription.urls

    async def poll_counts(self) -> dict[SubscriberKey, int]:
        async with self._lock.shared():
            return {key: sub.engine.poll_count for key, sub in self._subscriptions.items()}

    async def clean(self) -> None:
        """Evict cache entries last seen before today minus the retention window."""

        cutoff = eviction_cutoff(self._config.timezone, self._config.retention)
        LOGGER.info("Cleansing scanners, cutoff %s", cutoff.isoformat())

        async with self._lock.exclusive():
            for key, subscription in self._subscriptions.items():
                expired = evict_expired(subscription.visited, cutoff)
                if not expired:
                    continue
                scan_key = scan_record_key(key)
                LOGGER.info("Evicted %s visited items for %s", len(expired), key)
                self._tasks.spawn(
                    self._store.remove_set_members(scan_key, *expired),
                    name=f"redis:srem {scan_key}",
                    ordering_key=scan_key,
                )

    async def shutdown(self) -> None:
        """Stop every engine. Subscriptions stay registered."""

        LOGGER.info("Shutting down scanner service")
        async with self._lock.exclusive():
            engines = []
            for key, subscription in self._subscriptions.items():
                subscription.engine.stop()
                subscription.running = False
                engines.append(subscription.engine)
                LOGGER.info("Scanner for @%s stopped", key)

        await asyncio.gather(*(engine.wait_closed() for engine in engines))
