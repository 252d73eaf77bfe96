"""Bot command menu registration.

Telegram shows these commands in the chat input menu. Registration is
cosmetic, so a failure is logged and startup continues.
"""

from __future__ import annotations

import logging

from telethon import functions, types
from telethon.errors import RPCError

LOGGER = logging.getLogger(__name__)

BOT_COMMANDS = (
    ("start", "start bot"),
    ("stop", "stop notifications"),
)


def build_set_commands_request() -> functions.bots.SetBotCommandsRequest:
    return functions.bots.SetBotCommandsRequest(
        scope=types.BotCommandScopeDefault(),
        lang_code="",
        commands=[types.BotCommand(command=name, description=text) for name, text in BOT_COMMANDS],
    )


async def register_bot_commands(client) -> bool:
    """Publish the command menu; return False when Telegram refused it."""

    try:
        await client(build_set_commands_request())
    except (RPCError, ConnectionError) as exc:
        LOGGER.warning("Failed to set bot commands: %s", exc)
        return False

    LOGGER.info("Registered %s bot commands", len(BOT_COMMANDS))
    return True
