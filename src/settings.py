"""Static configuration for krisha-bot.

Non-secret settings (scanner, bot, lifecycle, logging) live in a single JSON
file for quick edits without touching Python. Secrets come from the
environment, loaded from .env via python-dotenv.
"""

import json
import os
import re
from datetime import timedelta
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

from core.config import (
    DEFAULT_CLEANUP_INTERVAL,
    DEFAULT_GRACEFUL_SHUTDOWN_TIMEOUT,
    DEFAULT_PAGE_DELAY,
    DEFAULT_PAGES,
    DEFAULT_RETENTION,
    DEFAULT_SCAN_INTERVAL,
    DEFAULT_SEND_BUFFER,
    DEFAULT_SEND_DELAY,
    DEFAULT_STORE_TIMEOUT,
    DEFAULT_VISITED_BUF_SIZE,
    MIN_CLEANUP_INTERVAL,
    at_least,
)

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

CONFIG_PATH = os.environ.get("KRISHA_BOT_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400, None: 1}


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def parse_duration(raw, default: timedelta) -> timedelta:
    """Parse ``15``, ``15s``, ``500ms``, ``5m``, ``1h`` or ``1d``; default when unset or unparseable."""

    if raw is None:
        return default
    if isinstance(raw, (int, float)):
        return timedelta(seconds=raw)
    match = _DURATION_RE.match(str(raw))
    if not match:
        return default
    value, unit = match.groups()
    return timedelta(seconds=float(value) * _DURATION_UNITS[unit])


load_dotenv()

_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Secrets. BOT_TOKEN authorizes the bot; API_ID/API_HASH identify the app.
BOT_TOKEN = os.getenv("BOT_TOKEN", "")
API_ID = os.getenv("API_ID", "")
API_HASH = os.getenv("API_HASH", "")
SESSION_NAME = os.getenv("SESSION_NAME", "krisha_bot")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Scanner settings. Values below the defaults fall back to the defaults so a
# typo cannot hammer the target site.
_scanner = _CONFIG.get("scanner", {})
TIMEZONE_NAME = _scanner.get("timezone", "Asia/Almaty")
TIMEZONE = ZoneInfo(TIMEZONE_NAME)
SCAN_INTERVAL = at_least(parse_duration(_scanner.get("interval"), DEFAULT_SCAN_INTERVAL), DEFAULT_SCAN_INTERVAL)
RETENTION = at_least(parse_duration(_scanner.get("retention"), DEFAULT_RETENTION), DEFAULT_RETENTION)
VISITED_BUF_SIZE = at_least(int(_scanner.get("visited_buf_size", DEFAULT_VISITED_BUF_SIZE)), DEFAULT_VISITED_BUF_SIZE)
SCAN_PAGES = at_least(int(_scanner.get("pages", DEFAULT_PAGES)), DEFAULT_PAGES)
PAGE_DELAY = parse_duration(_scanner.get("page_delay"), DEFAULT_PAGE_DELAY)
STORE_TIMEOUT = parse_duration(_scanner.get("store_timeout"), DEFAULT_STORE_TIMEOUT)

# Bot settings: outbound buffering and the only site filters may point to.
_bot = _CONFIG.get("bot", {})
TARGET_HOST = _bot.get("target_host", "krisha.kz")
SEND_BUFFER = at_least(int(_bot.get("send_buffer", DEFAULT_SEND_BUFFER)), DEFAULT_SEND_BUFFER)
SEND_DELAY = at_least(parse_duration(_bot.get("send_delay"), DEFAULT_SEND_DELAY), DEFAULT_SEND_DELAY)

# Lifecycle: cache cleansing cadence and the graceful shutdown budget. The
# environment overrides the file for the shutdown timeout.
_lifecycle = _CONFIG.get("lifecycle", {})
CLEANUP_INTERVAL = at_least(
    parse_duration(_lifecycle.get("cleanup_interval"), DEFAULT_CLEANUP_INTERVAL),
    MIN_CLEANUP_INTERVAL,
)
GRACEFUL_SHUTDOWN_TIMEOUT = parse_duration(
    os.getenv("GRACEFUL_SHUTDOWN_TIMEOUT", _lifecycle.get("graceful_shutdown_timeout")),
    DEFAULT_GRACEFUL_SHUTDOWN_TIMEOUT,
)

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
