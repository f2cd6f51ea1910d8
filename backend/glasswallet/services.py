from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from glasswallet.domain.credit.providers import CreditProvider, build_credit_provider
from glasswallet.domain.outbox.service import OutboxAdapters
from glasswallet.domain.pixels.adapters import PixelAdapter, build_pixel_adapters
from glasswallet.infra.cache import ResponseCache, create_response_cache
from glasswallet.infra.metrics import Metrics, configure_metrics
from glasswallet.infra.security import RateLimiter, create_rate_limiter


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    app_settings: Any
    rate_limiter: RateLimiter
    response_cache: ResponseCache
    credit_provider: CreditProvider
    pixel_adapters: dict[str, PixelAdapter]
    metrics: Metrics
    webhook_transport: httpx.AsyncBaseTransport | None = None
    route_limiters: dict[str, RateLimiter] = field(default_factory=dict)

    def route_limiter(self, route: str, per_minute: int) -> RateLimiter:
        limiter = self.route_limiters.get(route)
        if limiter is None:
            limiter = create_rate_limiter(self.app_settings, per_minute, namespace=route)
            self.route_limiters[route] = limiter
        return limiter

    def outbox_adapters(self) -> OutboxAdapters:
        return OutboxAdapters(webhook_transport=self.webhook_transport, pixel_adapters=self.pixel_adapters)

    async def reset_limits(self) -> None:
        await self.rate_limiter.reset()
        for limiter in self.route_limiters.values():
            await limiter.reset()
        await self.response_cache.reset()

    async def close(self) -> None:
        await self.rate_limiter.close()
        for limiter in self.route_limiters.values():
            await limiter.close()
        await self.response_cache.close()


def build_app_services(
    app_settings,
    *,
    metrics: Metrics | None = None,
    outbound_transport: httpx.AsyncBaseTransport | None = None,
) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    return AppServices(
        app_settings=app_settings,
        rate_limiter=create_rate_limiter(app_settings),
        response_cache=create_response_cache(app_settings),
        credit_provider=build_credit_provider(app_settings, transport=outbound_transport),
        pixel_adapters=build_pixel_adapters(app_settings, transport=outbound_transport),
        metrics=metrics_client,
        webhook_transport=outbound_transport,
    )


def resolve_services(container_like: Any) -> AppServices | None:
    if isinstance(container_like, AppServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
