"""Telegram-to-core event mapping adapter.

This keeps Telethon-specific details out of the conversation state machine.
Bot membership is reported as "member" when the bot is added to a chat or
unblocked, "left" when it is removed from a group and "kicked" when a user
blocks it in a private chat.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

from telethon.errors import RPCError

from core.models import BotMembershipChanged, Command, MemberLeft, SubscriberKey

LOGGER = logging.getLogger(__name__)

InboundEvent = Union[Command, MemberLeft, BotMembershipChanged]


def username_of(entity) -> str:
    username = getattr(entity, "username", None)
    if isinstance(username, str) and username:
        return username
    return ""


async def map_new_message(event) -> Optional[Command]:
    """Map a NewMessage event carrying a bot command."""

    text = event.raw_text or ""
    if not text.startswith("/"):
        return None

    sender = await event.get_sender()
    return Command(key=SubscriberKey(username=username_of(sender), chat_id=event.chat_id), text=text)


async def _actor_username(event) -> str:
    message = getattr(event, "action_message", None)
    if message is None:
        return ""
    return username_of(await message.get_sender())


async def map_chat_action(event, bot_id: int) -> Optional[InboundEvent]:
    """Map a ChatAction event to a member-left or bot membership event."""

    if event.user_left or event.user_kicked:
        if event.user_id == bot_id:
            key = SubscriberKey(username=await _actor_username(event), chat_id=event.chat_id)
            return BotMembershipChanged(key=key, status="left")

        user = await event.get_user()
        return MemberLeft(key=SubscriberKey(username=username_of(user), chat_id=event.chat_id))

    if event.user_added or event.user_joined:
        if bot_id in (event.user_ids or []):
            key = SubscriberKey(username=await _actor_username(event), chat_id=event.chat_id)
            return BotMembershipChanged(key=key, status="member")

    return None


async def map_bot_stopped(client, update) -> BotMembershipChanged:
    """Map an UpdateBotStopped (private chat blocked or unblocked)."""

    try:
        user = await client.get_entity(update.user_id)
    except (ValueError, RPCError) as exc:
        LOGGER.warning("Failed to resolve user %s: %s", update.user_id, exc)
        user = None

    status = "kicked" if update.stopped else "member"
    key = SubscriberKey(username=username_of(user), chat_id=update.user_id)
    return BotMembershipChanged(key=key, status=status)
