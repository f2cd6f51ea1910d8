import logging
from typing import Awaitable, Callable

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from glasswallet.domain.errors import AuthenticationError, RateLimitError
from glasswallet.domain.users.db_models import User
from glasswallet.domain.users.service import get_user_by_api_key
from glasswallet.infra.db import get_db_session
from glasswallet.infra.logging import update_log_context
from glasswallet.infra.security import extract_api_key, resolve_client_key
from glasswallet.services import AppServices, resolve_services

logger = logging.getLogger(__name__)

__all__ = ["get_db_session", "get_services", "get_current_user", "rate_limit"]


def get_services(request: Request) -> AppServices:
    services = resolve_services(request.app)
    if services is None:
        raise RuntimeError("app_services_not_configured")
    return services


async def get_current_user(request: Request, session: AsyncSession = Depends(get_db_session)) -> User:
    api_key = extract_api_key(request)
    if not api_key:
        raise AuthenticationError(message="API key required")
    user = await get_user_by_api_key(session, api_key)
    if user is None:
        raise AuthenticationError(message="Invalid API key")
    request.state.current_user_id = user.user_id
    update_log_context(user_id=str(user.user_id))
    return user


def rate_limit(route: str, per_minute: int) -> Callable[[Request], Awaitable[None]]:
    """Per-route fixed window keyed by the resolved client address."""

    async def _check(request: Request) -> None:
        services = get_services(request)
        app_settings = services.app_settings
        client = resolve_client_key(
            request,
            trust_proxy_headers=app_settings.trust_proxy_headers,
            trusted_proxy_ips=app_settings.trusted_proxy_ips,
            trusted_proxy_cidrs=app_settings.trusted_proxy_cidrs,
        )
        decision = await services.route_limiter(route, per_minute).hit(client)
        if decision.allowed:
            return
        logger.warning(
            "route_rate_limit_blocked",
            extra={"extra": {"route": route, "limit_per_minute": per_minute, "retry_after": decision.reset_seconds}},
        )
        raise RateLimitError(
            message=f"Too many requests. Limit is {per_minute} per minute",
            retry_after=decision.reset_seconds,
            details={"limit": per_minute, "retryAfter": decision.reset_seconds},
        )

    return _check
