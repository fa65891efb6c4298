"""Read-through cache for queue snapshots, stats and clinic metadata.

The cache is advisory: it never holds authoritative state, and losing it
only costs a trip to the database.  Two backends share one async
interface:

* :class:`MemoryCache` keeps entries in a dict with a per-entry expiry.
  Expired entries are never returned (checked on read) and a background
  sweep purges them so memory stays bounded whatever the access pattern.
* :class:`RedisCache` stores JSON values with an expiry so several web
  processes share one cache.  Redis errors are logged and treated as a
  miss.

Values must be JSON-compatible so the two backends behave the same.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class CacheKeys:
    @staticmethod
    def queue(clinic_id: str) -> str:
        return f"queue:{clinic_id}"

    @staticmethod
    def stats(clinic_id: str) -> str:
        return f"stats:{clinic_id}"

    @staticmethod
    def clinic(clinic_id: str) -> str:
        return f"clinic:{clinic_id}"


class CacheTTL:
    """Default lifetimes in seconds."""

    QUEUE = 5.0
    STATS = 10.0
    CLINIC = 60.0


class MemoryCache:
    def __init__(self, sweep_interval: float = 60.0, clock=time.monotonic) -> None:
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._sweeper: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_forever())

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        self._entries.clear()

    async def get(self, key: str) -> Optional[Any]:
        item = self._entries.get(key)
        if item is None:
            return None
        value, expires_at = item
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl: float = 30.0) -> None:
        self._entries[key] = (value, self._clock() + ttl)

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def invalidate_pattern(self, prefix: str) -> int:
        """Remove every key starting with ``prefix`` (a trailing ``*`` is ignored)."""
        prefix = prefix.rstrip("*")
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    async def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        """Purge expired entries; returns how many were removed."""
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        return {"size": len(self._entries), "keys": list(self._entries)}

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            removed = self.sweep()
            if removed:
                logger.debug("Cache sweep removed %d expired entries", removed)


class RedisCache:
    def __init__(self, client: aioredis.Redis, namespace: str = "doctorq:") -> None:
        self._client = client
        self._namespace = namespace

    async def start(self) -> None:
        try:
            await self._client.ping()
        except RedisError as e:
            logger.warning("Redis cache unreachable, reads will fall through: %s", e)

    async def stop(self) -> None:
        await self._client.aclose()

    async def get(self, key: str) -> Optional[Any]:
        try:
            cached = await self._client.get(self._namespace + key)
        except RedisError as e:
            logger.warning("Redis get error for %s: %s", key, e)
            return None
        if cached is None:
            return None
        return json.loads(cached)

    async def set(self, key: str, value: Any, ttl: float = 30.0) -> None:
        try:
            await self._client.set(self._namespace + key, json.dumps(value), px=int(ttl * 1000))
        except RedisError as e:
            logger.warning("Redis set error for %s: %s", key, e)

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._client.delete(self._namespace + key))
        except RedisError as e:
            logger.warning("Redis delete error for %s: %s", key, e)
            return False

    async def invalidate_pattern(self, prefix: str) -> int:
        pattern = self._namespace + prefix.rstrip("*") + "*"
        removed = 0
        try:
            async for key in self._client.scan_iter(match=pattern):
                removed += await self._client.delete(key)
        except RedisError as e:
            logger.warning("Redis invalidate error for %s: %s", prefix, e)
        return removed

    async def clear(self) -> None:
        await self.invalidate_pattern("")


async def invalidate_clinic(cache, clinic_id: str) -> int:
    """Drop everything derived from a clinic's queue."""
    removed = await cache.invalidate_pattern(CacheKeys.queue(clinic_id))
    removed += await cache.invalidate_pattern(CacheKeys.stats(clinic_id))
    return removed
