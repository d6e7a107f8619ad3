"""Per-key request limits over one-minute windows, kept in Redis or in memory."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

EXPIRY_SECONDS = 70


class RateLimiterError(Exception):
    """Raised when the counting backend fails."""


def current_bucket() -> int:
    """The current minute since the Unix epoch."""
    return int(time.time() // 60)


class _Backend(Protocol):
    async def increment(self, key: str, bucket: int) -> int: ...


class InMemoryBackend:
    """Counters held in this process, one per key, reset when the minute changes."""

    def __init__(self) -> None:
        self._counters: dict[str, tuple[int, int]] = {}
        self._lock = asyncio.Lock()

    async def increment(self, key: str, bucket: int) -> int:
        """Count one request for ``key`` in ``bucket`` and return the new count."""
        async with self._lock:
            count, seen_bucket = self._counters.get(key, (0, bucket))
            count = count + 1 if seen_bucket == bucket else 1
            self._counters[key] = (count, bucket)
            return count


class RedisBackend:
    """Counters held in Redis under ``rate:<key>:<bucket>``, expiring after 70 s."""

    def __init__(self, client: Any) -> None:
        self._client = client

    async def increment(self, key: str, bucket: int) -> int:
        redis_key = f"rate:{key}:{bucket}"
        try:
            count = await self._client.incr(redis_key)
            await self._client.expire(redis_key, EXPIRY_SECONDS)
        except (RedisError, OSError) as exc:
            raise RateLimiterError(f"Redis error: {exc}") from exc
        return int(count)


async def _connect_redis(redis_url: str) -> RedisBackend | None:
    try:
        client = aioredis.from_url(redis_url)
    except ValueError:
        logger.warning("Invalid Redis URL, falling back to in-memory rate limiter")
        return None
    try:
        await client.ping()
    except (RedisError, OSError):
        logger.warning("Failed to connect to Redis, falling back to in-memory rate limiter")
        return None
    return RedisBackend(client)


class RateLimiter:
    """Allows at most ``limit_per_minute`` requests per key in each minute."""

    def __init__(self, backend: _Backend, limit_per_minute: int) -> None:
        if limit_per_minute < 0:
            raise ValueError("limit_per_minute must not be negative")
        self.backend = backend
        self.limit_per_minute = limit_per_minute

    @classmethod
    async def create(cls, redis_url: str | None, limit_per_minute: int) -> RateLimiter:
        """Use Redis when ``redis_url`` connects, otherwise count in memory."""
        if redis_url is not None:
            backend = await _connect_redis(redis_url)
            if backend is not None:
                return cls(backend, limit_per_minute)
        return cls(InMemoryBackend(), limit_per_minute)

    async def allow(self, key: str) -> bool:
        """Count a request for ``key``; true while the minute's limit holds."""
        count = await self.backend.increment(key, current_bucket())
        return count <= self.limit_per_minute