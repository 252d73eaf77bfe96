from __future__ import annotations

import asyncio
from datetime import timedelta

from core.models import OutboundMessage
from core.outbox import Outbox
from fakes import FakeSender, wait_until

DELAY = timedelta(milliseconds=1)


def test_messages_are_sent_in_order() -> None:
    async def scenario() -> list[tuple[int, str]]:
        sender = FakeSender()
        outbox = Outbox(sender, buffer_size=10, send_delay=DELAY)
        outbox.start()

        outbox.post(OutboundMessage(chat_id=1, text="first"))
        outbox.post(OutboundMessage(chat_id=2, text="second"))
        outbox.post(OutboundMessage(chat_id=1, text="third"))

        await wait_until(lambda: len(sender.sent) == 3)
        await outbox.stop()
        return sender.sent

    assert asyncio.run(scenario()) == [(1, "first"), (2, "second"), (1, "third")]


def test_send_failure_does_not_stop_delivery() -> None:
    async def scenario() -> list[tuple[int, str]]:
        sender = FakeSender(failures=1)
        outbox = Outbox(sender, buffer_size=10, send_delay=DELAY)
        outbox.start()

        outbox.post(OutboundMessage(chat_id=1, text="lost"))
        outbox.post(OutboundMessage(chat_id=1, text="delivered"))

        await wait_until(lambda: len(sender.sent) == 1)
        await outbox.stop()
        return sender.sent

    assert asyncio.run(scenario()) == [(1, "delivered")]


def test_post_never_blocks_on_full_buffer() -> None:
    async def scenario() -> None:
        sender = FakeSender()
        outbox = Outbox(sender, buffer_size=1, send_delay=DELAY)

        for index in range(3):
            outbox.post(OutboundMessage(chat_id=1, text=f"message {index}"))
        assert outbox.pending == 3

        outbox.start()
        await wait_until(lambda: len(sender.sent) == 3)
        await outbox.stop()

        assert [text for _, text in sender.sent] == ["message 0", "message 1", "message 2"]

    asyncio.run(scenario())


class GatedSender:
    """Holds every send until the test releases it."""

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.in_flight = asyncio.Event()
        self.release = asyncio.Event()

    async def send(self, chat_id: int, text: str) -> None:
        self.in_flight.set()
        await self.release.wait()
        self.sent.append(text)


def test_overflow_keeps_posting_order_while_sending() -> None:
    async def scenario() -> list[str]:
        sender = GatedSender()
        outbox = Outbox(sender, buffer_size=1, send_delay=DELAY)

        for text in ("n1", "n2", "n3"):
            outbox.post(OutboundMessage(chat_id=1, text=text))

        outbox.start()
        await sender.in_flight.wait()
        # n1 is being sent, so the buffer has room again; n4 must still queue behind n2 and n3.
        outbox.post(OutboundMessage(chat_id=1, text="n4"))
        assert outbox.pending == 3

        sender.release.set()
        await wait_until(lambda: len(sender.sent) == 4)
        await outbox.stop()
        return sender.sent

    assert asyncio.run(scenario()) == ["n1", "n2", "n3", "n4"]


def test_stop_drops_deferred_messages() -> None:
    async def scenario() -> int:
        outbox = Outbox(FakeSender(), buffer_size=1, send_delay=DELAY)
        outbox.post(OutboundMessage(chat_id=1, text="queued"))
        outbox.post(OutboundMessage(chat_id=1, text="deferred"))
        await outbox.stop()
        return outbox.pending

    assert asyncio.run(scenario()) == 1
