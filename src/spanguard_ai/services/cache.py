"""
Analysis cache.

Explanations are stored as JSON under `<prefix><key>` with a TTL, in Redis
when it answers a ping and in a process-local dict otherwise. Cache failures
are logged and read as misses; they never fail an analysis.
"""

import fnmatch
import json
import logging
import os
import time
from typing import Any, AsyncIterator, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class InMemoryCache:
    """Dict-backed stand-in exposing the subset of the redis client we call."""

    def __init__(self):
        self._entries: dict[str, tuple[str, float]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= time.time():
            self._entries.pop(key, None)
            return None
        return value

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self._entries[key] = (value, time.time() + ttl)

    async def delete(self, *keys: str) -> int:
        return sum(self._entries.pop(k, None) is not None for k in keys)

    async def scan_iter(self, match: str) -> AsyncIterator[str]:
        for key in [k for k in self._entries if fnmatch.fnmatchcase(k, match)]:
            yield key

    async def aclose(self) -> None:
        self._entries.clear()


class CacheService:
    """Namespaced JSON cache in front of Redis."""

    def __init__(
        self,
        url: Optional[str] = None,
        prefix: str = "spanguard:ai:",
        default_ttl: Optional[int] = None,
    ):
        self.url = url or os.getenv("REDIS_URL", "redis://localhost:6379")
        self.prefix = prefix
        self.default_ttl = default_ttl or int(os.getenv("ANALYSIS_CACHE_TTL", "3600"))
        self._client = None

    @property
    def backend(self) -> str:
        if self._client is None:
            return "disconnected"
        return "memory" if isinstance(self._client, InMemoryCache) else "redis"

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def connect(self) -> None:
        client = redis.from_url(self.url, encoding="utf-8", decode_responses=True)
        try:
            await client.ping()
        except Exception as e:
            logger.warning(f"Redis at {self.url} unreachable ({e}), caching analyses in memory")
            self._client = InMemoryCache()
            return

        self._client = client
        logger.info(f"Analysis cache using Redis at {self.url}")

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def _ensure(self):
        if self._client is None:
            await self.connect()
        return self._client

    async def get(self, key: str) -> Optional[Any]:
        """Cached value for `key`, or None on a miss or a backend error."""
        client = await self._ensure()
        try:
            raw = await client.get(self._key(key))
        except Exception as e:
            logger.warning(f"Cache read of {key} failed: {e}")
            return None
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        client = await self._ensure()
        payload = json.dumps(value, default=str)
        try:
            await client.setex(self._key(key), ttl or self.default_ttl, payload)
        except Exception as e:
            logger.warning(f"Cache write of {key} failed: {e}")

    async def delete(self, key: str) -> None:
        if self._client is None:
            return
        try:
            await self._client.delete(self._key(key))
        except Exception as e:
            logger.warning(f"Cache delete of {key} failed: {e}")

    async def clear_prefix(self, prefix: str) -> int:
        """Drop every key under `prefix`; returns how many were removed."""
        if self._client is None:
            return 0
        try:
            doomed = [k async for k in self._client.scan_iter(match=self._key(prefix) + "*")]
            if doomed:
                await self._client.delete(*doomed)
        except Exception as e:
            logger.warning(f"Cache clear of {prefix}* failed: {e}")
            return 0
        return len(doomed)
