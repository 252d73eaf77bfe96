"""Conversation state machine.

Every (username, chat) pair is either absent, in DEFAULT or in SUBSCRIBED
state. Commands move a key between states; subscribing and stopping are
delegated to handlers that drive the scan orchestrator.

Two locking shapes are used:

- read-then-write: the shared lock is held while validating and calling a
  slow delegate, which yields the intended mutation; the exclusive lock is
  then taken only to apply it. Two commands for the same key may interleave
  in the gap between both phases.
- full-exclusive: the exclusive lock is held across the delegate call and the
  mutation, for /start and for removing the bot from a chat.

State is mirrored to the ``bot;usr:<u>;chat:<c>`` hash in the background;
memory stays authoritative.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Union
from urllib.parse import urlsplit

from core import replies
from core.background import BackgroundTasks
from core.config import BotConfig
from core.errors import AlreadyExistsError, DecodeError, PersistenceError, ScanBotError, ValidationError
from core.locks import RWLock
from core.models import (
    BotMembershipChanged,
    Command,
    ConversationState,
    MemberLeft,
    OutboundMessage,
    SubscriberKey,
)
from core.outbox import Outbox
from core.ports import KickedHandler, StopHandler, StorePort, SubscribeHandler, WelcomeHandler
from core.record_keys import (
    BOT_PREFIX,
    BOT_RECORD_PATTERN,
    STATE_FIELD,
    URL_FIELD,
    bot_record_key,
    decode_state,
    encode_state,
    parse_record_key,
)

LOGGER = logging.getLogger(__name__)

InboundEvent = Union[Command, MemberLeft, BotMembershipChanged]

SCAN_COUNT = 10
SCAN_TYPE = "hash"


@dataclass(frozen=True)
class ParsedCommand:
    name: str
    argument: str


def parse_command(text: str, bot_username: str = "") -> Optional[ParsedCommand]:
    """Split ``/name[@bot] argument``; None for plain text or other bots."""

    text = text.strip()
    if not text.startswith("/"):
        return None

    head, _, argument = text.partition(" ")
    name, _, target = head.partition("@")
    if target and target.lower() != bot_username.lower():
        return None
    return ParsedCommand(name=name.lower(), argument=argument.strip())


def validate_filter_url(raw: str, key: SubscriberKey, target_host: str) -> str:
    """Return the filter URL or raise ValidationError with the reply text."""

    try:
        parts = urlsplit(raw)
        hostname = parts.hostname
    except ValueError:
        raise ValidationError(replies.invalid_url(key)) from None

    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValidationError(replies.invalid_url(key))
    if hostname != target_host:
        raise ValidationError(replies.foreign_host(key, target_host))

    LOGGER.info("@%s requested scan of %s", key.username, raw)
    return raw


async def _ignore_welcome(key: SubscriberKey) -> None:
    return None


class ConversationService:
    def __init__(
        self,
        config: BotConfig,
        store: StorePort,
        outbox: Outbox,
        tasks: BackgroundTasks,
        on_subscribe: SubscribeHandler,
        on_stop: StopHandler,
        on_kicked: KickedHandler,
        welcome_text: str,
        on_welcome: Optional[WelcomeHandler] = None,
        bot_username: str = "",
    ) -> None:
        self._config = config
        self._store = store
        self._outbox = outbox
        self._tasks = tasks
        self._on_subscribe = on_subscribe
        self._on_stop = on_stop
        self._on_kicked = on_kicked
        self._on_welcome = on_welcome or _ignore_welcome
        self._welcome_text = welcome_text
        self._bot_username = bot_username

        self._states: dict[SubscriberKey, ConversationState] = {}
        self._urls: dict[SubscriberKey, str] = {}
        self._chats: dict[int, set[SubscriberKey]] = {}
        self._lock = RWLock()

    # -- queries -----------------------------------------------------------

    async def state_of(self, key: SubscriberKey) -> Optional[ConversationState]:
        async with self._lock.shared():
            return self._states.get(key)

    async def url_of(self, key: SubscriberKey) -> Optional[str]:
        async with self._lock.shared():
            return self._urls.get(key)

    async def members(self, chat_id: int) -> frozenset[SubscriberKey]:
        async with self._lock.shared():
            return frozenset(self._chats.get(chat_id, ()))

    # -- inbound events ----------------------------------------------------

    async def handle(self, event: InboundEvent) -> Optional[str]:
        """Process one inbound event and queue the reply, if any."""

        try:
            if isinstance(event, Command):
                reply = await self.handle_command(event.key, event.text)
            elif isinstance(event, MemberLeft):
                reply = await self.handle_kicked(event.key)
            elif isinstance(event, BotMembershipChanged):
                reply = await self.handle_bot_status(event.key, event.status)
            else:
                raise TypeError(f"Unsupported event {event!r}")
        except ScanBotError as exc:
            reply = str(exc)

        if reply:
            self._outbox.post(OutboundMessage(chat_id=event.key.chat_id, text=reply))
        return reply

    async def handle_command(self, key: SubscriberKey, text: str) -> Optional[str]:
        command = parse_command(text, self._bot_username)
        if command is None:
            return None

        if command.name == "/start":
            return await self._handle_start(key)
        if command.name == "/stop":
            return await self._handle_stop(key)
        if command.name == "/url":
            return await self._handle_url(key, command.argument)
        return None

    async def _handle_start(self, key: SubscriberKey) -> str:
        async with self._lock.exclusive():
            state = self._states.get(key)

            if state is None:
                self._apply_state(key, ConversationState.DEFAULT)
                try:
                    await self._on_welcome(key)
                except ScanBotError as exc:
                    LOGGER.warning("Welcome handler failed for %s: %s", key, exc)
                return self._welcome_text

            if state is ConversationState.SUBSCRIBED:
                raise AlreadyExistsError(replies.already_registered(key))

            return replies.send_filter(key, self._config.target_host)

    async def _handle_url(self, key: SubscriberKey, argument: str) -> str:
        async with self._lock.shared():
            filter_url = validate_filter_url(argument, key, self._config.target_host)
            reply = await self._on_subscribe(key, filter_url)

        async with self._lock.exclusive():
            self._apply_state(key, ConversationState.SUBSCRIBED, url=filter_url)
        return reply

    async def _handle_stop(self, key: SubscriberKey) -> str:
        error: Optional[ScanBotError] = None
        reply = ""
        async with self._lock.shared():
            try:
                reply = await self._on_stop(key)
            except ScanBotError as exc:
                error = exc

        # Local state is reset even when the delegate failed.
        async with self._lock.exclusive():
            if key in self._states:
                self._apply_state(key, ConversationState.DEFAULT)

        if error is not None:
            raise error
        return reply

    async def handle_kicked(self, key: SubscriberKey) -> None:
        """The user left the chat or blocked the bot: stop and reset to DEFAULT."""

        async with self._lock.shared():
            await self._kick(key)

        async with self._lock.exclusive():
            self._apply_state(key, ConversationState.DEFAULT)

    async def handle_bot_status(self, key: SubscriberKey, status: str) -> Optional[str]:
        LOGGER.info("Bot membership in chat %s changed to %s", key.chat_id, status)

        if status == "kicked":
            await self.handle_kicked(key)
            return None
        if status == "left":
            await self._handle_removed_from_chat(key.chat_id)
            return None
        if status == "member":
            return self._welcome_text
        return None

    async def _handle_removed_from_chat(self, chat_id: int) -> None:
        async with self._lock.exclusive():
            keys = list(self._chats.get(chat_id, ()))
            await asyncio.gather(*(self._kick(key) for key in keys))
            for key in keys:
                self._delete_state(key)
        LOGGER.info("Removed %s subscribers of chat %s", len(keys), chat_id)

    async def _kick(self, key: SubscriberKey) -> None:
        # The bot can no longer talk to this user here, so the outcome is only logged.
        try:
            await self._on_kicked(key)
        except ScanBotError as exc:
            LOGGER.info("Kick handler for %s: %s", key, exc)
        except Exception:
            LOGGER.exception("Kick handler failed for %s", key)

    # -- mutation (exclusive lock held) --------------------------------------

    def _apply_state(self, key: SubscriberKey, state: ConversationState, url: Optional[str] = None) -> None:
        record = bot_record_key(key)
        self._states[key] = state

        if state is ConversationState.SUBSCRIBED:
            if url is not None:
                self._urls[key] = url
            self._chats.setdefault(key.chat_id, set()).add(key)
            self._tasks.spawn(
                self._persist(record, state, self._urls.get(key)),
                name=f"redis:hset {record}",
                ordering_key=record,
            )
            return

        self._urls.pop(key, None)
        self._remove_member(key)
        self._tasks.spawn(
            self._store.delete_key(record),
            name=f"redis:del {record}",
            ordering_key=record,
        )

    def _delete_state(self, key: SubscriberKey) -> None:
        record = bot_record_key(key)
        self._states.pop(key, None)
        self._urls.pop(key, None)
        self._remove_member(key)
        self._tasks.spawn(
            self._store.delete_key(record),
            name=f"redis:del {record}",
            ordering_key=record,
        )

    def _remove_member(self, key: SubscriberKey) -> None:
        members = self._chats.get(key.chat_id)
        if members is None:
            return
        members.discard(key)
        if not members:
            del self._chats[key.chat_id]

    async def _persist(self, record: str, state: ConversationState, url: Optional[str]) -> None:
        await self._store.set_hash_field(record, STATE_FIELD, encode_state(state))
        if url is not None:
            await self._store.set_hash_field(record, URL_FIELD, url)

    # -- recovery ------------------------------------------------------------

    async def load(self) -> int:
        """Replay persisted conversation records and re-subscribe each key.

        Recovery order is whatever the store's scan yields. A record that
        cannot be read, decoded or re-subscribed is logged and skipped.
        """

        restored = 0
        async for key in self._iter_record_keys():
            try:
                state, url = await self._load_record(key)
            except (DecodeError, PersistenceError) as exc:
                LOGGER.warning("Failed to load data for %s: %s", key, exc)
                continue

            if state is not ConversationState.SUBSCRIBED:
                LOGGER.info("Skipping %s in %s state", key, state.name)
                continue

            try:
                await self._on_subscribe(key, url)
            except ScanBotError as exc:
                LOGGER.warning("Failed to restore subscription for %s: %s", key, exc)
                continue

            async with self._lock.exclusive():
                self._states[key] = state
                self._urls[key] = url
                self._chats.setdefault(key.chat_id, set()).add(key)
            restored += 1

        LOGGER.info("Restored %s subscriptions from the store", restored)
        return restored

    async def _iter_record_keys(self) -> AsyncIterator[SubscriberKey]:
        timeout = self._config.store_timeout.total_seconds()
        cursor = 0
        while True:
            try:
                raw_keys, cursor = await asyncio.wait_for(
                    self._store.scan_keys(cursor, BOT_RECORD_PATTERN, SCAN_COUNT, SCAN_TYPE),
                    timeout,
                )
            except Exception as exc:
                LOGGER.warning(
                    "Failed to redis:scan %s match %s count %s type %s: %r",
                    cursor,
                    BOT_RECORD_PATTERN,
                    SCAN_COUNT,
                    SCAN_TYPE,
                    exc,
                )
                return

            for raw_key in raw_keys:
                try:
                    yield parse_record_key(raw_key, BOT_PREFIX)
                except DecodeError as exc:
                    LOGGER.warning("Failed to parse %s: %s", raw_key, exc)

            if cursor == 0:
                return

    async def _load_record(self, key: SubscriberKey) -> tuple[ConversationState, str]:
        record = bot_record_key(key)
        try:
            values = await asyncio.wait_for(
                self._store.get_all_hash_fields(record),
                self._config.store_timeout.total_seconds(),
            )
        except asyncio.TimeoutError:
            raise PersistenceError(f"timed out on redis:hgetall {record}") from None
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"failed redis:hgetall {record}, error {exc}") from exc

        if STATE_FIELD not in values or URL_FIELD not in values:
            raise DecodeError(f"failed to parse key {record} values {values}")

        state = decode_state(values[STATE_FIELD])
        url = values[URL_FIELD]
        parts = urlsplit(url)
        if not parts.scheme or not parts.netloc:
            raise DecodeError(f"failed to parse key {record} url {url!r}")
        return state, url

    # -- lifecycle -----------------------------------------------------------

    async def clean(self) -> None:
        """Forget keys sitting in DEFAULT state; their records are already gone."""

        async with self._lock.exclusive():
            idle = [key for key, state in self._states.items() if state is ConversationState.DEFAULT]
            for key in idle:
                del self._states[key]
                self._urls.pop(key, None)
                self._remove_member(key)
        if idle:
            LOGGER.info("Cleansed %s idle conversations", len(idle))

    async def shutdown(self) -> None:
        LOGGER.info("Shutting down bot service")
        await self._outbox.stop()
