"""Core domain models.

These types are shared across the core and adapters to avoid tight coupling
to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum


@dataclass(frozen=True)
class SubscriberKey:
    """Identity of one conversation/subscription context."""

    username: str
    chat_id: int

    def __str__(self) -> str:
        return f"usr:{self.username};chat:{self.chat_id}"


class ConversationState(IntEnum):
    DEFAULT = 0
    SUBSCRIBED = 1


@dataclass(frozen=True)
class DiscoveredItem:
    """One parsed listing with the day it was observed on."""

    identifier: str
    observed_at: datetime


@dataclass(frozen=True)
class Command:
    """Text command received from a chat member."""

    key: SubscriberKey
    text: str


@dataclass(frozen=True)
class MemberLeft:
    """A chat member (not the bot) left or was removed from a chat."""

    key: SubscriberKey


@dataclass(frozen=True)
class BotMembershipChanged:
    """The bot's own membership in a chat changed.

    status is one of "kicked", "left" or "member".
    """

    key: SubscriberKey
    status: str


@dataclass(frozen=True)
class OutboundMessage:
    chat_id: int
    text: str
