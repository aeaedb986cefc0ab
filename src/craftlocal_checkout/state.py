"""
Redis-backed state store with in-memory fallback.

Shared state such as processed webhook event ids must be visible to every
engine instance, so it lives in Redis. When no Redis URL is configured
(dev mode, tests) the store falls back to process-local memory. A configured
Redis that cannot be reached is an error, never a silent switch to memory.
"""
from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Optional

import redis.asyncio as aioredis

from craftlocal_checkout.exceptions import StateStoreUnavailable

logger = logging.getLogger(__name__)


class RedisStateStore:
    """
    Namespaced key-value store with TTL.

    Usage:
        store = RedisStateStore(namespace="webhooks", redis_url=settings.redis_url)
        if await store.set_if_absent("lock:evt_1", "1", ttl=30):
            ...
    """

    def __init__(self, namespace: str, redis_url: Optional[str] = None):
        self._namespace = namespace
        self._redis_url = redis_url if redis_url is not None else os.getenv("CRAFTLOCAL_REDIS_URL", "")
        self._client: Optional[aioredis.Redis] = None
        self._fallback_mode = not self._redis_url
        # key -> (value, expires_at monotonic or None)
        self._memory: dict[str, tuple[Any, Optional[float]]] = {}
        if self._fallback_mode:
            logger.info("No Redis URL for namespace %s, using in-memory fallback", namespace)

    def _key(self, key: str) -> str:
        return f"craftlocal:{self._namespace}:{key}"

    async def _get_redis(self) -> Optional[aioredis.Redis]:
        if self._fallback_mode:
            return None
        if self._client is not None:
            return self._client
        client = aioredis.from_url(self._redis_url, decode_responses=True)
        try:
            await client.ping()
        except aioredis.RedisError as e:
            await client.aclose()
            # Next call retries the connection
            logger.error(f"Redis unavailable for namespace {self._namespace}: {e}")
            raise StateStoreUnavailable(
                "Shared state store unavailable",
                details={"namespace": self._namespace},
            ) from e
        logger.info("Connected to Redis for state storage")
        self._client = client
        return client

    def _memory_get(self, key: str) -> Any:
        entry = self._memory.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._memory[key]
            return None
        return value

    def _memory_set(self, key: str, value: Any, ttl: Optional[int]) -> None:
        expires_at = time.monotonic() + ttl if ttl else None
        self._memory[key] = (value, expires_at)

    async def get(self, key: str) -> Optional[Any]:
        """Get a value by key. Returns None if not found."""
        r = await self._get_redis()
        if r is not None:
            raw = await r.get(self._key(key))
            return json.loads(raw) if raw is not None else None
        return self._memory_get(key)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set a value with optional TTL in seconds."""
        r = await self._get_redis()
        if r is not None:
            raw = json.dumps(value, default=str)
            if ttl:
                await r.setex(self._key(key), ttl, raw)
            else:
                await r.set(self._key(key), raw)
            return
        self._memory_set(key, value, ttl)

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Atomically set a key only if it does not exist. Returns True if set."""
        r = await self._get_redis()
        if r is not None:
            raw = json.dumps(value, default=str)
            return bool(await r.set(self._key(key), raw, nx=True, ex=ttl))
        if self._memory_get(key) is not None:
            return False
        self._memory_set(key, value, ttl)
        return True

    async def delete(self, key: str) -> None:
        """Delete a key."""
        r = await self._get_redis()
        if r is not None:
            await r.delete(self._key(key))
            return
        self._memory.pop(key, None)

    async def exists(self, key: str) -> bool:
        """Check if a key exists."""
        r = await self._get_redis()
        if r is not None:
            return bool(await r.exists(self._key(key)))
        return self._memory_get(key) is not None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
