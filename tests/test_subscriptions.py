from __future__ import annotations

import asyncio
from datetime import timedelta, timezone

import pytest

from core.background import BackgroundTasks
from core.config import ScannerConfig
from core.dedup import today
from core.errors import AlreadyExistsError, NotFoundError, ScanBotError
from core.models import SubscriberKey
from core.outbox import Outbox
from core.scanner import ScanOrchestrator
from core.subscriptions import ListingNotifier, SubscriptionDelegates, build_page_urls
from fakes import FakeFetcher, FakeSender, FakeStore, WordParser

ALICE = SubscriberKey(username="alice", chat_id=1)
FILTER = "https://krisha.kz/arenda/kvartiry/almaty/?das[live.rooms]=2"


def test_build_page_urls_appends_page_parameter() -> None:
    assert build_page_urls("https://krisha.kz/arenda/?x=1", 2) == [
        "https://krisha.kz/arenda/?x=1&page=1",
        "https://krisha.kz/arenda/?x=1&page=2",
    ]
    assert build_page_urls("https://krisha.kz/arenda/", 1) == ["https://krisha.kz/arenda/?page=1"]


def test_build_page_urls_replaces_existing_page() -> None:
    assert build_page_urls("https://krisha.kz/arenda/?page=7&x=1", 1) == ["https://krisha.kz/arenda/?x=1&page=1"]


def _scanner(pages: dict) -> tuple[ScanOrchestrator, BackgroundTasks]:
    tasks = BackgroundTasks(timeout=1.0, drain_timeout=1.0)
    config = ScannerConfig(
        interval=timedelta(hours=1),
        timezone=timezone.utc,
        retention=timedelta(days=1),
        page_delay=timedelta(0),
        store_timeout=timedelta(seconds=1),
    )
    scanner = ScanOrchestrator(
        config=config,
        store=FakeStore(),
        fetcher=FakeFetcher(pages),
        parser=WordParser(today(timezone.utc)),
        on_result=lambda key, identifier: None,
        tasks=tasks,
    )
    return scanner, tasks


def test_subscribe_then_stop() -> None:
    async def scenario() -> None:
        scanner, tasks = _scanner({})
        delegates = SubscriptionDelegates(scanner, pages=2)

        assert await delegates.on_subscribe(ALICE, FILTER) == "@alice subscribed for notifications"
        assert len(await scanner.urls(ALICE)) == 2

        with pytest.raises(AlreadyExistsError, match="@alice already subscribed"):
            await delegates.on_subscribe(ALICE, FILTER)

        assert await delegates.on_stop(ALICE) == "Subscription stopped for @alice"
        assert not await scanner.exists(ALICE)

        with pytest.raises(NotFoundError, match="@alice not subscribed"):
            await delegates.on_stop(ALICE)

        await tasks.shutdown()

    asyncio.run(scenario())


class BrokenStartScanner:
    def __init__(self) -> None:
        self.unregistered: list[SubscriberKey] = []

    async def register(self, key, urls) -> None:
        return None

    async def start(self, key) -> None:
        raise RuntimeError("crawl engine is already running")

    async def unregister(self, key) -> None:
        self.unregistered.append(key)


def test_failed_start_rolls_back_registration() -> None:
    scanner = BrokenStartScanner()
    delegates = SubscriptionDelegates(scanner, pages=1)

    with pytest.raises(ScanBotError, match="failed to start scanning for @alice"):
        asyncio.run(delegates.on_subscribe(ALICE, FILTER))

    assert scanner.unregistered == [ALICE]


def test_listing_notifier_links_relative_paths() -> None:
    async def scenario() -> list[tuple[int, str]]:
        sender = FakeSender()
        outbox = Outbox(sender, buffer_size=10, send_delay=timedelta(milliseconds=1))
        notifier = ListingNotifier(outbox, "krisha.kz")

        notifier(ALICE, "/a/show/680123")
        notifier(ALICE, "https://krisha.kz/a/show/1")

        outbox.start()
        while len(sender.sent) < 2:
            await asyncio.sleep(0.001)
        await outbox.stop()
        return sender.sent

    assert asyncio.run(scenario()) == [
        (1, "@alice pls look at https://krisha.kz/a/show/680123"),
        (1, "@alice pls look at https://krisha.kz/a/show/1"),
    ]
