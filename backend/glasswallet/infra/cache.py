import asyncio
import json
import logging
import time
from typing import Any, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger("glasswallet.cache")


class ResponseCache(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    async def invalidate_prefix(self, prefix: str) -> int: ...

    async def reset(self) -> None: ...

    async def close(self) -> None: ...


def build_cache_key(user_id: object, route: str, params: dict[str, Any] | None = None) -> str:
    normalized = "&".join(
        f"{key}={value}" for key, value in sorted((params or {}).items()) if value is not None
    )
    return f"{user_id}:{route}:{normalized}"


class InMemoryResponseCache:
    def __init__(self, *, prune_interval_seconds: float = 60.0) -> None:
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = asyncio.Lock()
        self._last_prune = 0.0
        self.prune_interval_seconds = prune_interval_seconds

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            now = time.monotonic()
            self._maybe_prune(now)
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= now:
                self._entries.pop(key, None)
                return None
            return value

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        async with self._lock:
            self._entries[key] = (time.monotonic() + ttl_seconds, value)

    async def invalidate_prefix(self, prefix: str) -> int:
        async with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                self._entries.pop(key, None)
            return len(doomed)

    async def reset(self) -> None:
        async with self._lock:
            self._entries.clear()

    async def close(self) -> None:
        return None

    def _maybe_prune(self, now: float) -> None:
        if now - self._last_prune < self.prune_interval_seconds:
            return
        for key in [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]:
            self._entries.pop(key, None)
        self._last_prune = now


class RedisResponseCache:
    """Shared cache; Redis outages degrade to cache misses."""

    def __init__(self, redis_url: str, redis_client: redis.Redis | None = None) -> None:
        self.redis = redis_client or redis.from_url(redis_url, encoding="utf-8", decode_responses=True)

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self.redis.get(self._key(key))
        except RedisError:
            logger.warning("response_cache_get_failed")
            return None
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        try:
            await self.redis.setex(self._key(key), ttl_seconds, json.dumps(value, default=str))
        except RedisError:
            logger.warning("response_cache_set_failed")

    async def invalidate_prefix(self, prefix: str) -> int:
        removed = 0
        try:
            cursor = 0
            while True:
                cursor, keys = await self.redis.scan(cursor=cursor, match=f"{self._key(prefix)}*", count=100)
                if keys:
                    removed += await self.redis.delete(*keys)
                if cursor == 0:
                    break
        except RedisError:
            logger.warning("response_cache_invalidate_failed", extra={"extra": {"prefix": prefix}})
        return removed

    async def reset(self) -> None:
        await self.invalidate_prefix("")

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except RedisError:
            logger.warning("response_cache_close_failed")

    def _key(self, key: str) -> str:
        return f"response-cache:{key}"


def create_response_cache(app_settings) -> ResponseCache:
    if getattr(app_settings, "redis_url", None):
        return RedisResponseCache(app_settings.redis_url)
    return InMemoryResponseCache()
