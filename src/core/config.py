"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta, tzinfo

DEFAULT_SCAN_INTERVAL = timedelta(minutes=5)
DEFAULT_RETENTION = timedelta(days=1)
DEFAULT_VISITED_BUF_SIZE = 100
DEFAULT_PAGE_DELAY = timedelta(seconds=30)
DEFAULT_STORE_TIMEOUT = timedelta(minutes=2)
DEFAULT_PAGES = 1
DEFAULT_SEND_BUFFER = 10
DEFAULT_SEND_DELAY = timedelta(seconds=5)
DEFAULT_GRACEFUL_SHUTDOWN_TIMEOUT = timedelta(seconds=15)
DEFAULT_CLEANUP_INTERVAL = timedelta(hours=1)
MIN_CLEANUP_INTERVAL = timedelta(minutes=1)


@dataclass(frozen=True)
class ScannerConfig:
    """Settings for the scan orchestrator and its crawl engines."""

    interval: timedelta
    timezone: tzinfo
    retention: timedelta
    visited_buf_size: int = DEFAULT_VISITED_BUF_SIZE
    page_delay: timedelta = DEFAULT_PAGE_DELAY
    store_timeout: timedelta = DEFAULT_STORE_TIMEOUT


@dataclass(frozen=True)
class BotConfig:
    """Settings for the conversation layer and the outbound queue."""

    target_host: str
    pages: int = DEFAULT_PAGES
    send_buffer: int = DEFAULT_SEND_BUFFER
    send_delay: timedelta = DEFAULT_SEND_DELAY
    store_timeout: timedelta = DEFAULT_STORE_TIMEOUT


@dataclass(frozen=True)
class LifecycleConfig:
    cleanup_interval: timedelta
    graceful_shutdown_timeout: timedelta = DEFAULT_GRACEFUL_SHUTDOWN_TIMEOUT


def at_least(value, minimum):
    """Return value unless it is below minimum, in which case minimum."""

    if value is None or value < minimum:
        return minimum
    return value
