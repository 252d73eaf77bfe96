from __future__ import annotations

import asyncio
from datetime import timedelta, timezone

from core.background import BackgroundTasks
from core.config import BotConfig, ScannerConfig
from core.conversation import ConversationService, parse_command
from core.dedup import today
from core.errors import AlreadyExistsError, NotFoundError
from core.models import BotMembershipChanged, Command, ConversationState, MemberLeft, SubscriberKey
from core.outbox import Outbox
from core.scanner import ScanOrchestrator
from core.subscriptions import ListingNotifier, SubscriptionDelegates
from fakes import FakeFetcher, FakeSender, FakeStore, WordParser, wait_until

ALICE = SubscriberKey(username="alice", chat_id=1)
BOB = SubscriberKey(username="bob", chat_id=1)
CAROL = SubscriberKey(username="carol", chat_id=2)
FILTER = "https://krisha.kz/arenda/kvartiry/almaty/?das[live.rooms]=2"
WELCOME = "🖖 Greeting! I am krisha.kz notification bot!"


class FakeDelegates:
    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.subscribe_error: "Exception | None" = None
        self.stop_error: "Exception | None" = None

    async def on_subscribe(self, key: SubscriberKey, filter_url: str) -> str:
        self.calls.append(("subscribe", key, filter_url))
        if self.subscribe_error is not None:
            raise self.subscribe_error
        return f"@{key.username} subscribed for notifications"

    async def on_stop(self, key: SubscriberKey) -> str:
        self.calls.append(("stop", key))
        if self.stop_error is not None:
            raise self.stop_error
        return f"Subscription stopped for @{key.username}"

    async def on_kicked(self, key: SubscriberKey) -> None:
        self.calls.append(("kicked", key))


def _service(store: "FakeStore | None" = None, delegates: "FakeDelegates | None" = None, on_welcome=None):
    store = store or FakeStore()
    delegates = delegates or FakeDelegates()
    tasks = BackgroundTasks(timeout=1.0, drain_timeout=1.0)
    outbox = Outbox(FakeSender(), buffer_size=100, send_delay=timedelta(milliseconds=1))
    service = ConversationService(
        config=BotConfig(target_host="krisha.kz", store_timeout=timedelta(seconds=1)),
        store=store,
        outbox=outbox,
        tasks=tasks,
        on_subscribe=delegates.on_subscribe,
        on_stop=delegates.on_stop,
        on_kicked=delegates.on_kicked,
        welcome_text=WELCOME,
        on_welcome=on_welcome,
        bot_username="krisha_bot",
    )
    return service, store, delegates, tasks


def _command(key: SubscriberKey, text: str) -> Command:
    return Command(key=key, text=text)


def test_parse_command_handles_mentions_and_arguments() -> None:
    parsed = parse_command(f"/url@Krisha_Bot {FILTER}", "krisha_bot")
    assert parsed.name == "/url"
    assert parsed.argument == FILTER

    assert parse_command("/start@other_bot", "krisha_bot") is None
    assert parse_command("hello", "krisha_bot") is None
    assert parse_command("/START", "krisha_bot").name == "/start"


def test_start_subscribe_stop_flow() -> None:
    async def scenario() -> None:
        service, store, delegates, tasks = _service()
        record = "bot;usr:alice;chat:1"

        assert await service.handle(_command(ALICE, "/start")) == WELCOME
        assert await service.state_of(ALICE) is ConversationState.DEFAULT

        assert await service.handle(_command(ALICE, "/start")) == (
            "@alice, Please send a /url command with krisha.kz filter, except `page` parameter"
        )

        assert await service.handle(_command(ALICE, f"/url {FILTER}")) == "@alice subscribed for notifications"
        assert await service.state_of(ALICE) is ConversationState.SUBSCRIBED
        assert await service.url_of(ALICE) == FILTER
        assert await service.members(1) == frozenset({ALICE})
        await tasks.drain()
        assert store.hashes[record] == {"state": "\x01", "url": FILTER}

        assert await service.handle(_command(ALICE, "/start")) == "@alice already registered"

        assert await service.handle(_command(ALICE, "/stop")) == "Subscription stopped for @alice"
        assert await service.state_of(ALICE) is ConversationState.DEFAULT
        assert await service.url_of(ALICE) is None
        assert await service.members(1) == frozenset()
        await tasks.drain()
        assert record not in store.hashes

        assert delegates.calls == [("subscribe", ALICE, FILTER), ("stop", ALICE)]

    asyncio.run(scenario())


def test_invalid_filters_never_reach_the_delegate() -> None:
    async def scenario() -> None:
        service, _, delegates, _ = _service()
        await service.handle(_command(ALICE, "/start"))

        assert await service.handle(_command(ALICE, "/url not a url")) == "@alice, Please enter a valid url"
        assert await service.handle(_command(ALICE, "/url")) == "@alice, Please enter a valid url"
        assert await service.handle(_command(ALICE, "/url https://example.com/arenda/")) == (
            "@alice, Please enter a filter from krisha.kz"
        )

        assert delegates.calls == []
        assert await service.state_of(ALICE) is ConversationState.DEFAULT

    asyncio.run(scenario())


def test_failed_subscribe_keeps_state() -> None:
    async def scenario() -> None:
        delegates = FakeDelegates()
        delegates.subscribe_error = AlreadyExistsError("@alice already subscribed")
        service, _, _, _ = _service(delegates=delegates)
        await service.handle(_command(ALICE, "/start"))

        assert await service.handle(_command(ALICE, f"/url {FILTER}")) == "@alice already subscribed"
        assert await service.state_of(ALICE) is ConversationState.DEFAULT

    asyncio.run(scenario())


def test_stop_resets_state_even_when_delegate_fails() -> None:
    async def scenario() -> None:
        delegates = FakeDelegates()
        service, _, _, _ = _service(delegates=delegates)
        await service.handle(_command(ALICE, "/start"))
        await service.handle(_command(ALICE, f"/url {FILTER}"))

        delegates.stop_error = NotFoundError("@alice not subscribed")
        assert await service.handle(_command(ALICE, "/stop")) == "@alice not subscribed"
        assert await service.state_of(ALICE) is ConversationState.DEFAULT

    asyncio.run(scenario())


def test_plain_text_and_unknown_commands_are_ignored() -> None:
    async def scenario() -> None:
        service, _, delegates, _ = _service()

        assert await service.handle(_command(ALICE, "hello there")) is None
        assert await service.handle(_command(ALICE, "/help")) is None
        assert await service.handle(_command(ALICE, "/start@other_bot")) is None
        assert await service.state_of(ALICE) is None
        assert delegates.calls == []

    asyncio.run(scenario())


def test_member_left_stops_scanning() -> None:
    async def scenario() -> None:
        service, _, delegates, _ = _service()
        await service.handle(_command(ALICE, "/start"))
        await service.handle(_command(ALICE, f"/url {FILTER}"))

        assert await service.handle(MemberLeft(key=ALICE)) is None
        assert ("kicked", ALICE) in delegates.calls
        assert await service.state_of(ALICE) is ConversationState.DEFAULT

    asyncio.run(scenario())


def test_bot_blocked_in_private_chat() -> None:
    async def scenario() -> None:
        service, _, delegates, _ = _service()
        await service.handle(_command(CAROL, "/start"))
        await service.handle(_command(CAROL, f"/url {FILTER}"))

        await service.handle(BotMembershipChanged(key=CAROL, status="kicked"))
        assert delegates.calls[-1] == ("kicked", CAROL)
        assert await service.state_of(CAROL) is ConversationState.DEFAULT

        assert await service.handle(BotMembershipChanged(key=CAROL, status="member")) == WELCOME

    asyncio.run(scenario())


def test_bot_removed_from_chat_forgets_every_member() -> None:
    async def scenario() -> None:
        service, store, delegates, tasks = _service()
        for key in (ALICE, BOB, CAROL):
            await service.handle(_command(key, "/start"))
            await service.handle(_command(key, f"/url {FILTER}"))
        await tasks.drain()

        remover = SubscriberKey(username="admin", chat_id=1)
        await service.handle(BotMembershipChanged(key=remover, status="left"))
        await tasks.drain()

        kicked = {call[1] for call in delegates.calls if call[0] == "kicked"}
        assert kicked == {ALICE, BOB}
        assert await service.state_of(ALICE) is None
        assert await service.state_of(BOB) is None
        assert await service.members(1) == frozenset()
        assert await service.state_of(CAROL) is ConversationState.SUBSCRIBED
        assert set(store.hashes) == {"bot;usr:carol;chat:2"}

    asyncio.run(scenario())


def test_clean_forgets_idle_conversations() -> None:
    async def scenario() -> None:
        service, _, _, _ = _service()
        await service.handle(_command(ALICE, "/start"))
        await service.handle(_command(CAROL, "/start"))
        await service.handle(_command(CAROL, f"/url {FILTER}"))

        await service.clean()

        assert await service.state_of(ALICE) is None
        assert await service.state_of(CAROL) is ConversationState.SUBSCRIBED

    asyncio.run(scenario())


def test_load_restores_subscribed_records_only() -> None:
    async def scenario() -> None:
        store = FakeStore()
        store.hashes["bot;usr:alice;chat:1"] = {"state": "1", "url": FILTER}
        store.hashes["bot;usr:carol;chat:2"] = {"state": "\x01", "url": FILTER}
        store.hashes["bot;usr:bob;chat:1"] = {"state": "\x00", "url": FILTER}
        store.hashes["bot;usr:dave;chat:3"] = {"state": "1"}
        store.hashes["bot;usr:erin;chat:4"] = {"state": "9", "url": FILTER}
        store.hashes["bot;usr:frank;chat:x"] = {"state": "1", "url": FILTER}
        service, _, delegates, _ = _service(store=store)

        assert await service.load() == 2

        assert sorted(call[1].username for call in delegates.calls) == ["alice", "carol"]
        assert await service.state_of(ALICE) is ConversationState.SUBSCRIBED
        assert await service.url_of(CAROL) == FILTER
        assert await service.state_of(BOB) is None
        assert await service.handle(_command(ALICE, "/start")) == "@alice already registered"

    asyncio.run(scenario())


def test_load_survives_store_failure() -> None:
    async def scenario() -> None:
        store = FakeStore()
        store.hashes["bot;usr:alice;chat:1"] = {"state": "1", "url": FILTER}
        store.failing.add("scan")
        service, _, delegates, _ = _service(store=store)

        assert await service.load() == 0
        assert delegates.calls == []

    asyncio.run(scenario())


def test_listing_reaches_chat_end_to_end() -> None:
    async def scenario() -> None:
        store = FakeStore()
        sender = FakeSender()
        tasks = BackgroundTasks(timeout=1.0, drain_timeout=1.0)
        outbox = Outbox(sender, buffer_size=100, send_delay=timedelta(milliseconds=1))
        page = "https://krisha.kz/arenda/kvartiry/almaty/?das%5Blive.rooms%5D=2&page=1"
        scanner = ScanOrchestrator(
            config=ScannerConfig(
                interval=timedelta(hours=1),
                timezone=timezone.utc,
                retention=timedelta(days=1),
                page_delay=timedelta(0),
                store_timeout=timedelta(seconds=1),
            ),
            store=store,
            fetcher=FakeFetcher({page: b"/a/show/680123"}),
            parser=WordParser(today(timezone.utc)),
            on_result=ListingNotifier(outbox, "krisha.kz"),
            tasks=tasks,
        )
        delegates = SubscriptionDelegates(scanner, pages=1)
        service = ConversationService(
            config=BotConfig(target_host="krisha.kz"),
            store=store,
            outbox=outbox,
            tasks=tasks,
            on_subscribe=delegates.on_subscribe,
            on_stop=delegates.on_stop,
            on_kicked=delegates.on_kicked,
            welcome_text=WELCOME,
        )
        outbox.start()

        await service.handle(_command(ALICE, "/start"))
        await service.handle(_command(ALICE, f"/url {FILTER}"))
        await wait_until(lambda: len(sender.sent) == 3)
        assert sender.sent == [
            (1, WELCOME),
            (1, "@alice subscribed for notifications"),
            (1, "@alice pls look at https://krisha.kz/a/show/680123"),
        ]

        await service.handle(_command(ALICE, "/stop"))
        assert not await scanner.exists(ALICE)

        await scanner.shutdown()
        await service.shutdown()
        await tasks.shutdown()
        assert store.hashes == {}
        assert store.sets == {}

    asyncio.run(scenario())


class HeldDelegates(FakeDelegates):
    """Holds alice's subscribe until the test releases it."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def on_subscribe(self, key: SubscriberKey, filter_url: str) -> str:
        reply = await super().on_subscribe(key, filter_url)
        if key == ALICE:
            await self.release.wait()
        return reply


def test_slow_subscribe_does_not_block_readers_or_other_delegates() -> None:
    async def scenario() -> None:
        delegates = HeldDelegates()
        service, _, _, _ = _service(delegates=delegates)
        await service.handle(_command(ALICE, "/start"))
        await service.handle(_command(BOB, "/start"))

        alice = asyncio.create_task(service.handle(_command(ALICE, f"/url {FILTER}")))
        await wait_until(lambda: ("subscribe", ALICE, FILTER) in delegates.calls)

        assert await asyncio.wait_for(service.state_of(ALICE), 0.5) is ConversationState.DEFAULT

        bob = asyncio.create_task(service.handle(_command(BOB, f"/url {FILTER}")))
        await wait_until(lambda: ("subscribe", BOB, FILTER) in delegates.calls)
        # Bob's delegate ran next to alice's; only his state commit waits.
        assert not alice.done()

        delegates.release.set()
        assert await asyncio.wait_for(alice, 1.0) == "@alice subscribed for notifications"
        assert await asyncio.wait_for(bob, 1.0) == "@bob subscribed for notifications"
        assert await service.members(1) == frozenset({ALICE, BOB})

    asyncio.run(scenario())


def test_start_waits_for_a_slow_welcome() -> None:
    async def scenario() -> None:
        release = asyncio.Event()
        welcomed: list[SubscriberKey] = []

        async def on_welcome(key: SubscriberKey) -> None:
            welcomed.append(key)
            await release.wait()

        service, _, _, _ = _service(on_welcome=on_welcome)

        first = asyncio.create_task(service.handle(_command(ALICE, "/start")))
        await wait_until(lambda: welcomed == [ALICE])
        second = asyncio.create_task(service.handle(_command(ALICE, "/start")))
        await asyncio.sleep(0.05)
        assert not first.done()
        assert not second.done()

        release.set()
        assert await asyncio.wait_for(first, 1.0) == WELCOME
        assert await asyncio.wait_for(second, 1.0) == (
            "@alice, Please send a /url command with krisha.kz filter, except `page` parameter"
        )
        assert welcomed == [ALICE]

    asyncio.run(scenario())
