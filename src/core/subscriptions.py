"""Conversation delegates backed by the scan orchestrator.

These translate conversation events into orchestrator calls and orchestrator
errors into user-facing errors whose message is the reply text.
"""

from __future__ import annotations

import logging
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from core import replies
from core.errors import AlreadyExistsError, NotFoundError, ScanBotError
from core.models import OutboundMessage, SubscriberKey
from core.outbox import Outbox
from core.scanner import ScanOrchestrator

LOGGER = logging.getLogger(__name__)

PAGE_PARAM = "page"


def build_page_urls(filter_url: str, pages: int) -> list[str]:
    """Return one URL per page, with ``page=1..pages`` appended to the query."""

    parts = urlsplit(filter_url)
    query = [
        (name, value)
        for name, value in parse_qsl(parts.query, keep_blank_values=True)
        if name != PAGE_PARAM
    ]
    return [
        urlunsplit(parts._replace(query=urlencode(query + [(PAGE_PARAM, str(page))])))
        for page in range(1, pages + 1)
    ]


class SubscriptionDelegates:
    """OnSubscribe/OnStop/OnKicked handlers for the conversation service."""

    def __init__(self, scanner: ScanOrchestrator, pages: int) -> None:
        self._scanner = scanner
        self._pages = pages

    async def on_subscribe(self, key: SubscriberKey, filter_url: str) -> str:
        urls = build_page_urls(filter_url, self._pages)

        try:
            await self._scanner.register(key, urls)
        except AlreadyExistsError:
            raise AlreadyExistsError(replies.already_subscribed(key)) from None

        try:
            await self._scanner.start(key)
        except NotFoundError:
            raise NotFoundError(f"{replies.not_subscribed(key)}, failed to start scanning") from None
        except Exception as exc:
            LOGGER.exception("Failed to start scanning for %s", key)
            try:
                await self._scanner.unregister(key)
            except NotFoundError:
                pass
            raise ScanBotError(replies.start_failed(key)) from exc

        return replies.subscribed(key)

    async def on_stop(self, key: SubscriberKey) -> str:
        try:
            await self._scanner.unregister(key)
        except NotFoundError:
            raise NotFoundError(replies.not_subscribed(key)) from None
        return replies.stopped(key)

    async def on_kicked(self, key: SubscriberKey) -> None:
        await self._scanner.unregister(key)


class ListingNotifier:
    """Result handler that posts a link to every new listing."""

    def __init__(self, outbox: Outbox, target_host: str) -> None:
        self._outbox = outbox
        self._target_host = target_host

    def link(self, identifier: str) -> str:
        if identifier.startswith("/"):
            return f"https://{self._target_host}{identifier}"
        return identifier

    def __call__(self, key: SubscriberKey, identifier: str) -> None:
        self._outbox.post(OutboundMessage(chat_id=key.chat_id, text=replies.listing(key, self.link(identifier))))
