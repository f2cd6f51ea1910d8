import asyncio
import hashlib
import logging
import math
import secrets
import time
from dataclasses import dataclass
from ipaddress import ip_address, ip_network
from typing import Dict, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError
from starlette.requests import Request

logger = logging.getLogger("glasswallet.rate_limit")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class RateLimiter(Protocol):
    requests_per_minute: int

    async def hit(self, key: str) -> RateLimitDecision: ...

    async def allow(self, key: str) -> bool: ...

    async def reset(self) -> None: ...

    async def close(self) -> None: ...


class InMemoryRateLimiter:
    """Fixed-window counter per key, local to this process."""

    def __init__(
        self,
        requests_per_minute: int,
        cleanup_minutes: int = 10,
        *,
        window_seconds: int = 60,
    ) -> None:
        self.requests_per_minute = requests_per_minute
        self.cleanup_minutes = cleanup_minutes
        self.window_seconds = max(1, int(window_seconds))
        self._windows: Dict[str, tuple[int, int]] = {}
        self._last_prune: float = 0.0
        self._lock = asyncio.Lock()

    async def hit(self, key: str) -> RateLimitDecision:
        async with self._lock:
            now = time.time()
            self._maybe_prune(now)
            window_index = int(now // self.window_seconds)
            reset_seconds = max(1, math.ceil((window_index + 1) * self.window_seconds - now))
            current_index, count = self._windows.get(key, (window_index, 0))
            if current_index != window_index:
                count = 0
            if count >= self.requests_per_minute:
                self._windows[key] = (window_index, count)
                return RateLimitDecision(False, self.requests_per_minute, 0, reset_seconds)
            count += 1
            self._windows[key] = (window_index, count)
            return RateLimitDecision(
                True, self.requests_per_minute, self.requests_per_minute - count, reset_seconds
            )

    async def allow(self, key: str) -> bool:
        return (await self.hit(key)).allowed

    async def reset(self) -> None:
        self._windows.clear()
        self._last_prune = 0.0

    async def close(self) -> None:
        return None

    def _maybe_prune(self, now: float) -> None:
        if now - self._last_prune < 60:
            return
        oldest_index = int((now - self.cleanup_minutes * 60) // self.window_seconds)
        for key in list(self._windows.keys()):
            if self._windows[key][0] < oldest_index:
                self._windows.pop(key, None)
        self._last_prune = now


RATE_LIMIT_LUA = r'''
local limit = tonumber(ARGV[1])
local window_seconds = tonumber(ARGV[2])

local current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('EXPIRE', KEYS[1], window_seconds)
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], window_seconds)
  ttl = window_seconds
end
return {current, ttl}
'''


class RedisRateLimiter:
    """Fixed-window counter shared across instances; falls back to memory while Redis is down."""

    def __init__(
        self,
        redis_url: str,
        requests_per_minute: int,
        cleanup_minutes: int = 10,
        redis_client: redis.Redis | None = None,
        fail_open_seconds: int = 300,
        health_probe_seconds: float = 5.0,
        *,
        window_seconds: int = 60,
        namespace: str = "global",
    ) -> None:
        self.requests_per_minute = requests_per_minute
        self.redis = redis_client or redis.from_url(redis_url, encoding="utf-8", decode_responses=False)
        self.window_seconds = max(1, int(window_seconds))
        self.namespace = namespace
        self._script_sha: str | None = None

        self.fail_open_seconds = max(1, fail_open_seconds)
        self.health_probe_seconds = max(0.5, health_probe_seconds)
        self._fallback = InMemoryRateLimiter(
            requests_per_minute, cleanup_minutes=cleanup_minutes, window_seconds=window_seconds
        )
        self._fail_open_until: float = 0.0
        self._last_probe: float = 0.0
        self._fail_open_lock = asyncio.Lock()

    async def hit(self, key: str) -> RateLimitDecision:
        now = time.monotonic()
        if self._fail_open_until > now:
            return await self._hit_with_fail_open(key, now)
        try:
            count, ttl = await self._eval_script(self._key(key))
        except RedisError:
            await self._enter_fail_open(now)
            logger.warning("redis rate limiter unavailable; using in-memory fallback")
            return await self._hit_with_fail_open(key, now)
        count = int(count)
        reset_seconds = max(1, int(ttl))
        if count > self.requests_per_minute:
            return RateLimitDecision(False, self.requests_per_minute, 0, reset_seconds)
        return RateLimitDecision(True, self.requests_per_minute, self.requests_per_minute - count, reset_seconds)

    async def allow(self, key: str) -> bool:
        return (await self.hit(key)).allowed

    async def reset(self) -> None:
        try:
            cursor = 0
            while True:
                cursor, keys = await self.redis.scan(
                    cursor=cursor, match=f"rate-limit:{self.namespace}:*", count=100
                )
                if keys:
                    await self.redis.delete(*keys)
                if cursor == 0:
                    break
        except RedisError:
            logger.warning("redis rate limiter reset failed")
        await self._fallback.reset()

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except RedisError:
            logger.warning("redis rate limiter close failed")

    async def _enter_fail_open(self, now: float) -> None:
        async with self._fail_open_lock:
            if now < self._fail_open_until:
                return
            self._fail_open_until = now + self.fail_open_seconds
            self._last_probe = now
            await self._fallback.reset()

    async def _hit_with_fail_open(self, key: str, now: float) -> RateLimitDecision:
        if now - self._last_probe >= self.health_probe_seconds:
            self._last_probe = now
            try:
                await self.redis.ping()
            except RedisError:
                logger.debug("redis rate limiter still unavailable; continuing fallback")
            else:
                async with self._fail_open_lock:
                    self._fail_open_until = 0.0
                    await self._fallback.reset()
                logger.info("redis rate limiter recovered; resuming primary")
                return await self.hit(key)
        return await self._fallback.hit(key)

    def _key(self, key: str) -> str:
        window_index = int(time.time() // self.window_seconds)
        return f"rate-limit:{self.namespace}:{key}:{window_index}"

    async def _eval_script(self, window_key: str) -> list[int]:
        if not self._script_sha:
            self._script_sha = await self.redis.script_load(RATE_LIMIT_LUA)
        try:
            return await self.redis.evalsha(
                self._script_sha, 1, window_key, self.requests_per_minute, self.window_seconds
            )
        except ResponseError as exc:
            if "NOSCRIPT" not in str(exc):
                raise
        result = await self.redis.eval(
            RATE_LIMIT_LUA, 1, window_key, self.requests_per_minute, self.window_seconds
        )
        try:
            self._script_sha = await self.redis.script_load(RATE_LIMIT_LUA)
        except RedisError:
            logger.debug("rate_limit_script_reload_failed")
        return result


def create_rate_limiter(
    app_settings,
    requests_per_minute: int | None = None,
    *,
    window_seconds: int = 60,
    namespace: str = "global",
) -> RateLimiter:
    limit = requests_per_minute or app_settings.rate_limit_per_minute
    if getattr(app_settings, "redis_url", None):
        return RedisRateLimiter(
            app_settings.redis_url,
            limit,
            cleanup_minutes=app_settings.rate_limit_cleanup_minutes,
            fail_open_seconds=getattr(app_settings, "rate_limit_fail_open_seconds", 300),
            health_probe_seconds=getattr(app_settings, "rate_limit_redis_probe_seconds", 5.0),
            window_seconds=window_seconds,
            namespace=namespace,
        )
    return InMemoryRateLimiter(
        limit,
        cleanup_minutes=app_settings.rate_limit_cleanup_minutes,
        window_seconds=window_seconds,
    )


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def generate_api_key() -> str:
    return f"gw_{secrets.token_urlsafe(32)}"


def extract_api_key(request: Request) -> str | None:
    header_key = request.headers.get("X-API-Key")
    if header_key and header_key.strip():
        return header_key.strip()
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        return token or None
    return None


_MAX_HEADER_LEN = 2048
_MAX_FORWARDED_HOPS = 20


def get_client_ip(request: Request, trusted_cidrs: list[str]) -> str:
    """Resolve the real client IP address.

    Forwarded headers are only honoured when the direct peer is in *trusted_cidrs*;
    the left-most ``X-Forwarded-For`` entry wins.
    """
    source_ip = request.client.host if request.client else "unknown"
    if not trusted_cidrs or not _is_in_cidrs(source_ip, trusted_cidrs):
        return source_ip

    xff = request.headers.get("x-forwarded-for")
    if xff and len(xff) <= _MAX_HEADER_LEN:
        ips = [ip.strip() for ip in xff.split(",")]
        if ips and len(ips) <= _MAX_FORWARDED_HOPS:
            try:
                ip_address(ips[0])
                return ips[0]
            except ValueError:
                return source_ip
    return source_ip


def resolve_client_key(
    request: Request,
    trust_proxy_headers: bool,
    trusted_proxy_ips: list[str],
    trusted_proxy_cidrs: list[str],
) -> str:
    if not trust_proxy_headers:
        return request.client.host if request.client else "unknown"
    cidrs: list[str] = list(trusted_proxy_cidrs)
    for ip_str in trusted_proxy_ips:
        try:
            ip_obj = ip_address(ip_str)
            bits = 32 if ip_obj.version == 4 else 128
            cidrs.append(f"{ip_str}/{bits}")
        except ValueError:
            continue
    return get_client_ip(request, cidrs)


def _is_in_cidrs(client_host: str, cidrs: list[str]) -> bool:
    try:
        client_ip = ip_address(client_host)
    except ValueError:
        return False
    for cidr in cidrs:
        try:
            if client_ip in ip_network(cidr, strict=False):
                return True
        except ValueError:
            continue
    return False
