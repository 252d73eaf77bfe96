"""Application entry point for the krisha.kz subscription bot."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from dotenv import load_dotenv
from telethon import events
from telethon.tl.types import UpdateBotStopped

import settings
from adapters.http_fetcher import AiohttpFetcher
from adapters.krisha_parser import KrishaParser
from adapters.redis_store import RedisStore
from adapters.telegram_commands import register_bot_commands
from adapters.telegram_mapper import map_bot_stopped, map_chat_action, map_new_message
from adapters.telegram_sender import TelegramSender
from client import build_client
from core import replies
from core.background import BackgroundTasks, drain_budget
from core.config import BotConfig, LifecycleConfig, ScannerConfig
from core.conversation import SCAN_COUNT, SCAN_TYPE, ConversationService
from core.errors import DecodeError, PersistenceError
from core.lifecycle import Lifecycle, ShutdownFunc
from core.outbox import Outbox
from core.record_keys import BOT_PREFIX, BOT_RECORD_PATTERN, STATE_FIELD, URL_FIELD, decode_state, parse_record_key
from core.scanner import ScanOrchestrator
from core.subscriptions import ListingNotifier, SubscriptionDelegates

NAME = "KRISHA BOT"
FONT = "tarty-1"


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    formatter = _RedactingFormatter(_collect_redaction_values(config), fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/krisha_bot.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        file_handler = RotatingFileHandler(
            path,
            maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
            backupCount=int(file_cfg.get("backup_count", 5)),
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


def _scanner_config() -> ScannerConfig:
    return ScannerConfig(
        interval=settings.SCAN_INTERVAL,
        timezone=settings.TIMEZONE,
        retention=settings.RETENTION,
        visited_buf_size=settings.VISITED_BUF_SIZE,
        page_delay=settings.PAGE_DELAY,
        store_timeout=settings.STORE_TIMEOUT,
    )


def _bot_config() -> BotConfig:
    return BotConfig(
        target_host=settings.TARGET_HOST,
        pages=settings.SCAN_PAGES,
        send_buffer=settings.SEND_BUFFER,
        send_delay=settings.SEND_DELAY,
        store_timeout=settings.STORE_TIMEOUT,
    )


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers.
            signal.signal(signum, lambda *_: loop.call_soon_threadsafe(stop.set))


async def _serve() -> None:
    logger = logging.getLogger(__name__)
    logger.info("Starting krisha bot")

    store = RedisStore.from_url(settings.REDIS_URL)
    store_timeout = settings.STORE_TIMEOUT.total_seconds()
    tasks = BackgroundTasks(
        timeout=store_timeout,
        drain_timeout=drain_budget(settings.GRACEFUL_SHUTDOWN_TIMEOUT.total_seconds()),
    )
    fetcher = AiohttpFetcher()
    parser = KrishaParser(settings.TIMEZONE)

    client = build_client()
    await client.start(bot_token=settings.BOT_TOKEN)
    me = await client.get_me()
    logger.info("Authorized as @%s", me.username)
    await register_bot_commands(client)

    bot_config = _bot_config()
    outbox = Outbox(TelegramSender(client), bot_config.send_buffer, bot_config.send_delay)
    scanner = ScanOrchestrator(
        config=_scanner_config(),
        store=store,
        fetcher=fetcher,
        parser=parser,
        on_result=ListingNotifier(outbox, bot_config.target_host),
        tasks=tasks,
    )
    delegates = SubscriptionDelegates(scanner, bot_config.pages)
    conversation = ConversationService(
        config=bot_config,
        store=store,
        outbox=outbox,
        tasks=tasks,
        on_subscribe=delegates.on_subscribe,
        on_stop=delegates.on_stop,
        on_kicked=delegates.on_kicked,
        welcome_text=replies.welcome_text(bot_config.target_host, settings.TIMEZONE_NAME),
        bot_username=me.username or "",
    )

    async def close_store() -> None:
        # Pending writes drain before the connection pool goes away.
        await tasks.shutdown()
        await store.shutdown()

    lifecycle = Lifecycle(
        LifecycleConfig(
            cleanup_interval=settings.CLEANUP_INTERVAL,
            graceful_shutdown_timeout=settings.GRACEFUL_SHUTDOWN_TIMEOUT,
        ),
        cleaners=[conversation, scanner],
        shutdowners=[
            scanner,
            conversation,
            fetcher,
            ShutdownFunc("redis", close_store),
            ShutdownFunc("telegram", client.disconnect),
        ],
    )

    # Each handler maps the Telethon event to a core event and defers the rest
    # to the conversation service.
    @client.on(events.NewMessage(incoming=True))
    async def on_message(event) -> None:
        try:
            command = await map_new_message(event)
            if command is not None:
                await conversation.handle(command)
        except Exception:
            logger.exception("Error while processing message")

    @client.on(events.ChatAction())
    async def on_chat_action(event) -> None:
        try:
            mapped = await map_chat_action(event, me.id)
            if mapped is not None:
                await conversation.handle(mapped)
        except Exception:
            logger.exception("Error while processing chat action")

    @client.on(events.Raw(UpdateBotStopped))
    async def on_bot_stopped(update) -> None:
        try:
            await conversation.handle(await map_bot_stopped(client, update))
        except Exception:
            logger.exception("Error while processing bot status")

    outbox.start()
    lifecycle.start_cleaning()
    await conversation.load()

    stop = asyncio.Event()
    _install_signal_handlers(stop)
    logger.info("Client connected. Listening for incoming messages...")

    stop_waiter = asyncio.create_task(stop.wait(), name="signal")
    await asyncio.wait({stop_waiter, client.disconnected}, return_when=asyncio.FIRST_COMPLETED)
    stop_waiter.cancel()

    if await lifecycle.shutdown():
        logger.info("Shut down gracefully")
    else:
        logger.warning("Shut down with unfinished targets")


def _run() -> None:
    _print_banner()
    _configure_logging()
    asyncio.run(_serve())


async def _list_subscriptions() -> None:
    store = RedisStore.from_url(settings.REDIS_URL)
    cursor = 0
    found = 0
    try:
        while True:
            raw_keys, cursor = await store.scan_keys(cursor, BOT_RECORD_PATTERN, SCAN_COUNT, SCAN_TYPE)
            for raw_key in raw_keys:
                try:
                    key = parse_record_key(raw_key, BOT_PREFIX)
                    values = await store.get_all_hash_fields(raw_key)
                    state = decode_state(values.get(STATE_FIELD, ""))
                except (DecodeError, PersistenceError) as exc:
                    print(f"{raw_key} | unreadable: {exc}")
                    continue
                found += 1
                print(f"{found}. @{key.username} | chat {key.chat_id} | {state.name} | {values.get(URL_FIELD, '-')}")
            if cursor == 0:
                break
    finally:
        await store.shutdown()

    if not found:
        print("No persisted subscriptions.")


def _subscriptions() -> None:
    _print_banner()
    asyncio.run(_list_subscriptions())


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="krisha-bot")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the bot")
    subparsers.add_parser(
        "subscriptions",
        help="Lists conversation records persisted in Redis.",
    )

    args = parser.parse_args(argv)
    if args.command == "subscriptions":
        _subscriptions()
        return
    _run()


if __name__ == "__main__":
    main()
