"""Helpers for the durable store key layout.

The layout must stay bit-exact so existing stores keep working:

- conversation record: ``bot;usr:<username>;chat:<chat_id>`` (hash with
  ``state`` and ``url`` fields)
- dedup record: ``scan;usr:<username>;chat:<chat_id>`` (set of item ids)
"""

from __future__ import annotations

from typing import Optional

from core.errors import DecodeError
from core.models import ConversationState, SubscriberKey

BOT_PREFIX = "bot"
SCAN_PREFIX = "scan"
BOT_RECORD_PATTERN = "bot;usr:*;chat:*"

STATE_FIELD = "state"
URL_FIELD = "url"


def bot_record_key(key: SubscriberKey) -> str:
    return f"{BOT_PREFIX};{key}"


def scan_record_key(key: SubscriberKey) -> str:
    return f"{SCAN_PREFIX};{key}"


def parse_subscriber_key(raw: str) -> SubscriberKey:
    """Parse ``usr:<username>;chat:<chat_id>`` into a SubscriberKey."""

    fields = raw.split(";")
    if len(fields) != 2:
        raise DecodeError(f"{raw!r} unsupported")

    usr_kv = fields[0].split(":")
    if len(usr_kv) != 2 or usr_kv[0] != "usr":
        raise DecodeError(f"{raw!r} unsupported")

    chat_kv = fields[1].split(":")
    if len(chat_kv) != 2 or chat_kv[0] != "chat":
        raise DecodeError(f"{raw!r} unsupported")
    try:
        chat_id = int(chat_kv[1])
    except ValueError:
        raise DecodeError(f"{raw!r} unsupported") from None

    return SubscriberKey(username=usr_kv[1], chat_id=chat_id)


def parse_record_key(raw: str, prefix: Optional[str] = None) -> SubscriberKey:
    """Parse a prefixed record key, optionally checking the prefix."""

    record_prefix, sep, rest = raw.partition(";")
    if not sep or (prefix is not None and record_prefix != prefix):
        raise DecodeError(f"{raw!r} unsupported")
    return parse_subscriber_key(rest)


def encode_state(state: ConversationState) -> str:
    """Encode a state as the single raw byte stored in the hash."""

    return chr(int(state))


def decode_state(raw: str) -> ConversationState:
    """Decode a stored state; the raw byte and ASCII digit forms are accepted."""

    if len(raw) != 1:
        raise DecodeError(f"state {raw!r} unsupported")
    value = int(raw) if raw.isdigit() else ord(raw)
    try:
        return ConversationState(value)
    except ValueError:
        raise DecodeError(f"state {raw!r} unsupported") from None
