"""Texts the bot sends to chats.

Every user-facing reply starts with or names the triggering user's handle so
it is clear who it is addressed to in group chats.
"""

from __future__ import annotations

from core.models import SubscriberKey


def welcome_text(target_host: str, timezone_name: str) -> str:
    return (
        f"🖖 Greeting! I am {target_host} notification bot!\n"
        f"🔎 Scanning in {timezone_name} time zone.\n"
        "\n"
        "🕹 Commands\n"
        "/start - start bot\n"
        "/stop - stop notifications\n"
        "/url <filter> - url with query parameters, except page"
    )


def send_filter(key: SubscriberKey, target_host: str) -> str:
    return f"@{key.username}, Please send a /url command with {target_host} filter, except `page` parameter"


def already_registered(key: SubscriberKey) -> str:
    return f"@{key.username} already registered"


def invalid_url(key: SubscriberKey) -> str:
    return f"@{key.username}, Please enter a valid url"


def foreign_host(key: SubscriberKey, target_host: str) -> str:
    return f"@{key.username}, Please enter a filter from {target_host}"


def subscribed(key: SubscriberKey) -> str:
    return f"@{key.username} subscribed for notifications"


def already_subscribed(key: SubscriberKey) -> str:
    return f"@{key.username} already subscribed"


def start_failed(key: SubscriberKey) -> str:
    return f"failed to start scanning for @{key.username}"


def not_subscribed(key: SubscriberKey) -> str:
    return f"@{key.username} not subscribed"


def stopped(key: SubscriberKey) -> str:
    return f"Subscription stopped for @{key.username}"


def listing(key: SubscriberKey, link: str) -> str:
    return f"@{key.username} pls look at {link}"
