"""Deduplication cache helpers (core domain).

A dedup cache maps an item identifier to the day it was last observed on.
Days are midnights in the configured timezone, so retention is computed in
whole days regardless of when a poll happened to run.
"""

from __future__ import annotations

from datetime import datetime, timedelta, tzinfo
from typing import Iterable, Optional

Visited = dict[str, datetime]


def day_start(moment: datetime, tz: tzinfo) -> datetime:
    """Truncate a moment to midnight in tz."""

    local = moment.astimezone(tz)
    return local.replace(hour=0, minute=0, second=0, microsecond=0)


def today(tz: tzinfo, now: Optional[datetime] = None) -> datetime:
    return day_start(now or datetime.now(tz), tz)


def eviction_cutoff(tz: tzinfo, retention: timedelta, now: Optional[datetime] = None) -> datetime:
    """Entries observed strictly before the returned moment are stale."""

    return today(tz, now) - retention


def merge_loaded(visited: Visited, identifiers: Iterable[str], day: datetime) -> int:
    """Merge persisted identifiers into a cache, all stamped with day."""

    merged = 0
    for identifier in identifiers:
        visited[identifier] = day
        merged += 1
    return merged


def observe(visited: Visited, identifier: str, day: datetime) -> bool:
    """Record an observation and return True when the identifier is new.

    The stored day is refreshed for known identifiers too, which restarts
    their retention clock.
    """

    is_new = identifier not in visited
    visited[identifier] = day
    return is_new


def evict_expired(visited: Visited, cutoff: datetime) -> list[str]:
    """Remove entries observed before cutoff and return their identifiers."""

    expired = [identifier for identifier, seen in visited.items() if seen < cutoff]
    for identifier in expired:
        del visited[identifier]
    return expired
