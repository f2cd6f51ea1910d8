import anyio
from fastapi.testclient import TestClient
from redis.exceptions import RedisError

from glasswallet.infra.metrics import Metrics
from glasswallet.infra.security import InMemoryRateLimiter, RedisRateLimiter, create_rate_limiter
from glasswallet.main import create_app
from glasswallet.services import build_app_services
from glasswallet.settings import settings


def test_in_memory_limiter_counts_down_and_blocks():
    limiter = InMemoryRateLimiter(requests_per_minute=2)

    async def _run():
        first = await limiter.hit("client-a")
        second = await limiter.hit("client-a")
        third = await limiter.hit("client-a")
        other = await limiter.hit("client-b")
        return first, second, third, other

    first, second, third, other = anyio.run(_run)

    assert (first.allowed, first.remaining) == (True, 1)
    assert (second.allowed, second.remaining) == (True, 0)
    assert third.allowed is False
    assert third.limit == 2
    assert 1 <= third.reset_seconds <= 60
    assert other.allowed is True


def test_in_memory_limiter_reset_clears_windows():
    limiter = InMemoryRateLimiter(requests_per_minute=1)

    async def _run():
        assert await limiter.allow("ip") is True
        assert await limiter.allow("ip") is False
        await limiter.reset()
        return await limiter.allow("ip")

    assert anyio.run(_run) is True


def test_create_rate_limiter_defaults_to_memory_without_redis():
    limiter = create_rate_limiter(settings.model_copy(update={"redis_url": None}), 7)

    assert isinstance(limiter, InMemoryRateLimiter)
    assert limiter.requests_per_minute == 7


def test_middleware_returns_429_with_retry_after():
    limited_settings = settings.model_copy(update={"rate_limit_per_minute": 2, "redis_url": None})
    services = build_app_services(limited_settings, metrics=Metrics(enabled=False))
    limited_app = create_app(limited_settings, services=services)
    client = TestClient(limited_app)

    statuses = [client.get("/does-not-exist").status_code for _ in range(2)]
    blocked = client.get("/does-not-exist")

    assert statuses == [404, 404]
    assert blocked.status_code == 429
    body = blocked.json()
    assert body["error"]["code"] == "RATE_LIMIT_EXCEEDED"
    assert body["error"]["details"]["limit"] == 2
    assert int(blocked.headers["Retry-After"]) >= 1
    assert client.get("/healthz").status_code == 200


class FakeRedis:
    def __init__(self) -> None:
        self.counts: dict[str, int] = {}
        self.down = False

    async def script_load(self, script: str) -> str:
        self._check()
        return "sha-1"

    async def evalsha(self, sha, numkeys, key, limit, window_seconds):
        self._check()
        self.counts[key] = self.counts.get(key, 0) + 1
        return [self.counts[key], window_seconds]

    async def ping(self) -> bool:
        self._check()
        return True

    async def scan(self, cursor=0, match=None, count=None):
        self._check()
        prefix = (match or "").rstrip("*")
        return 0, [key for key in self.counts if key.startswith(prefix)]

    async def delete(self, *keys) -> int:
        for key in keys:
            self.counts.pop(key, None)
        return len(keys)

    async def aclose(self) -> None:
        return None

    def _check(self) -> None:
        if self.down:
            raise RedisError("connection refused")


def test_redis_limiter_counts_per_namespace():
    fake = FakeRedis()
    limiter = RedisRateLimiter("redis://unused", 1, redis_client=fake, namespace="credit-pull")

    async def _run():
        first = await limiter.hit("user-1")
        second = await limiter.hit("user-1")
        await limiter.reset()
        return first, second, fake.counts

    first, second, counts = anyio.run(_run)

    assert first.allowed is True
    assert second.allowed is False
    assert counts == {}


def test_redis_limiter_fails_open_to_memory():
    fake = FakeRedis()
    fake.down = True
    limiter = RedisRateLimiter("redis://unused", 2, redis_client=fake, health_probe_seconds=60)

    async def _run():
        return [(await limiter.hit("ip")).allowed for _ in range(3)]

    assert anyio.run(_run) == [True, True, False]
