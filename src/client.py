"""Telegram client factory for krisha-bot.

We explicitly manage the client's lifecycle (start/disconnect) so it is
obvious when the bot session is created and when it ends.
"""

from __future__ import annotations

import logging

from telethon import TelegramClient

import settings


def build_client() -> TelegramClient:
    """Create a Telethon client from environment variables.

    API_ID/API_HASH come from .env via python-dotenv to keep secrets out of
    the repo. The session name defaults to "krisha_bot".
    """

    # Fail fast on missing credentials to avoid an ambiguous login prompt.
    if not settings.API_ID or not settings.API_HASH:
        raise RuntimeError("Missing API_ID or API_HASH in environment")
    if not settings.BOT_TOKEN:
        raise RuntimeError("Missing BOT_TOKEN in environment")

    logging.getLogger(__name__).info("Initializing Telegram client")

    return TelegramClient(settings.SESSION_NAME, int(settings.API_ID), settings.API_HASH)
