"""Redis store adapter.

Implements the core StorePort on top of redis.asyncio. Responses are decoded
to str; the single-byte conversation state survives decoding unchanged.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from core.errors import PersistenceError

LOGGER = logging.getLogger(__name__)


@contextmanager
def _redis_errors(command: str, key: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        raise PersistenceError(f"failed redis:{command} {key}, error {exc}") from exc


class RedisStore:
    """Thin redis.asyncio wrapper that satisfies the StorePort contract."""

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(aioredis.from_url(url, decode_responses=True))

    async def set_hash_field(self, key: str, field: str, value: str) -> None:
        with _redis_errors("hset", key):
            await self._client.hset(key, field, value)
        LOGGER.debug("success redis:hset %s %s", key, field)

    async def get_all_hash_fields(self, key: str) -> dict[str, str]:
        with _redis_errors("hgetall", key):
            return await self._client.hgetall(key)

    async def delete_key(self, key: str) -> None:
        with _redis_errors("del", key):
            await self._client.delete(key)
        LOGGER.debug("success redis:del %s", key)

    async def add_set_members(self, key: str, *values: str) -> None:
        if not values:
            return
        with _redis_errors("sadd", key):
            await self._client.sadd(key, *values)
        LOGGER.debug("success redis:sadd %s %s", key, values)

    async def remove_set_members(self, key: str, *values: str) -> None:
        if not values:
            return
        with _redis_errors("srem", key):
            await self._client.srem(key, *values)
        LOGGER.debug("success redis:srem %s %s", key, values)

    async def get_set_members(self, key: str) -> list[str]:
        with _redis_errors("smembers", key):
            members = await self._client.smembers(key)
        return sorted(members)

    async def scan_keys(
        self, cursor: int, pattern: str, count: int, type_: Optional[str] = None
    ) -> tuple[list[str], int]:
        with _redis_errors("scan", pattern):
            next_cursor, keys = await self._client.scan(cursor=cursor, match=pattern, count=count, _type=type_)
        return list(keys), int(next_cursor)

    async def shutdown(self) -> None:
        LOGGER.info("Shutting down redis client")
        await self._client.aclose()
