"""Ports (interfaces) used by the core.

Ports define the minimal contracts for the durable store, the page fetcher,
the parser and the messaging transport so that the core can be reused with
different backends. Conversation delegates are a closed set of named
callback contracts, one per event.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Protocol, Sequence

from core.models import SubscriberKey

ItemHandler = Callable[[str, datetime], None]


class StorePort(Protocol):
    """Key/hash/set operations of the durable store."""

    async def set_hash_field(self, key: str, field: str, value: str) -> None:
        ...

    async def get_all_hash_fields(self, key: str) -> dict[str, str]:
        ...

    async def delete_key(self, key: str) -> None:
        ...

    async def add_set_members(self, key: str, *values: str) -> None:
        ...

    async def remove_set_members(self, key: str, *values: str) -> None:
        ...

    async def get_set_members(self, key: str) -> Sequence[str]:
        ...

    async def scan_keys(
        self, cursor: int, pattern: str, count: int, type_: Optional[str] = None
    ) -> tuple[list[str], int]:
        ...


class FetcherPort(Protocol):
    """Loads raw page bytes; raises TransportError on any failure."""

    async def fetch(self, url: str) -> bytes:
        ...


class ParserPort(Protocol):
    """Turns raw page bytes into item identifiers with their observation day."""

    def parse(self, body: bytes, handler: ItemHandler) -> None:
        ...


class SenderPort(Protocol):
    """Delivers one outbound chat message."""

    async def send(self, chat_id: int, text: str) -> None:
        ...


class WelcomeHandler(Protocol):
    async def __call__(self, key: SubscriberKey) -> None:
        ...


class SubscribeHandler(Protocol):
    """Starts scanning filter_url for key and returns the reply text."""

    async def __call__(self, key: SubscriberKey, filter_url: str) -> str:
        ...


class StopHandler(Protocol):
    """Stops scanning for key and returns the reply text."""

    async def __call__(self, key: SubscriberKey) -> str:
        ...


class KickedHandler(Protocol):
    async def __call__(self, key: SubscriberKey) -> None:
        ...


class ResultHandler(Protocol):
    """Receives every identifier seen for the first time for key."""

    def __call__(self, key: SubscriberKey, identifier: str) -> None:
        ...


class Cleaner(Protocol):
    async def clean(self) -> None:
        ...


class Shutdowner(Protocol):
    async def shutdown(self) -> None:
        ...
