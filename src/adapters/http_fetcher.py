"""aiohttp page fetcher.

Implements the core FetcherPort. Transport failures and non-2xx answers are
reported as TransportError so the crawl engine can log and move on.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import aiohttp

from core.errors import TransportError

LOGGER = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:106.0) Gecko/20100101 Firefox/106.0",
    "Accept": "text/html",
}
DEFAULT_TIMEOUT = 30.0


class AiohttpFetcher:
    def __init__(self, session: Optional[aiohttp.ClientSession] = None, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def _get_session(self) -> aiohttp.ClientSession:
        # Created lazily so the session binds to the running loop.
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=DEFAULT_HEADERS, timeout=self._timeout)
        return self._session

    async def fetch(self, url: str) -> bytes:
        session = self._get_session()
        try:
            async with session.get(url) as response:
                if not 200 <= response.status < 300:
                    raise TransportError(f"Error: {response.status} - {response.reason}")
                body = await response.read()
        except aiohttp.ClientError as exc:
            raise TransportError(f"failed to fetch {url}: {exc}") from exc
        except asyncio.TimeoutError:
            raise TransportError(f"timed out fetching {url}") from None

        LOGGER.debug("Fetched %s (%s bytes)", url, len(body))
        return body

    async def shutdown(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
