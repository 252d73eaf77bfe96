"""Telethon outbound message adapter.

Implements the core SenderPort with the bot's own Telegram client.
"""

from __future__ import annotations

from telethon.errors import RPCError

from core.errors import TransportError


class TelegramSender:
    def __init__(self, client) -> None:
        self._client = client

    async def send(self, chat_id: int, text: str) -> None:
        try:
            await self._client.send_message(chat_id, text)
        except (RPCError, ValueError, ConnectionError) as exc:
            raise TransportError(f"failed to send message to {chat_id}: {exc}") from exc
