"""Unauthenticated intake endpoints for embeddable widgets and partner webhooks.

Callers identify themselves with ``client_id`` and ``api_key`` in the body
(or query string for health). CORS for these paths is answered with ``*`` by
``IntegrationCorsMiddleware``.
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from glasswallet.api.envelope import success
from glasswallet.dependencies import get_db_session, get_services, rate_limit
from glasswallet.domain.integrations import service as integrations_service
from glasswallet.domain.integrations.schemas import BatchSubmission, WidgetSubmission
from glasswallet.infra.cache import build_cache_key
from glasswallet.infra.security import resolve_client_key
from glasswallet.services import AppServices

router = APIRouter(prefix="/integrate", tags=["integrations"])


def _intake_context(request: Request, services: AppServices) -> integrations_service.IntakeContext:
    app_settings = services.app_settings
    return integrations_service.IntakeContext(
        ip_address=resolve_client_key(
            request,
            trust_proxy_headers=app_settings.trust_proxy_headers,
            trusted_proxy_ips=app_settings.trusted_proxy_ips,
            trusted_proxy_cidrs=app_settings.trusted_proxy_cidrs,
        ),
        user_agent=request.headers.get("User-Agent", "unknown")[:255],
    )


async def _invalidate_tenant_cache(services: AppServices, user_id) -> None:
    await services.response_cache.invalidate_prefix(f"{user_id}:leads")
    await services.response_cache.invalidate_prefix(f"{user_id}:connections")


@router.post("/widget", dependencies=[Depends(rate_limit("integrate:widget", 60))])
async def widget_intake(
    payload: WidgetSubmission,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    user, result = await integrations_service.process_widget_submission(
        session,
        payload,
        context=_intake_context(request, services),
        provider=services.credit_provider,
        adapters=services.pixel_adapters,
    )
    await session.commit()
    await _invalidate_tenant_cache(services, user.user_id)
    return success(request, result)


@router.post("/webhook", dependencies=[Depends(rate_limit("integrate:webhook", 10))])
async def batch_intake(
    payload: BatchSubmission,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    user, result = await integrations_service.process_batch_submission(
        session,
        payload,
        context=_intake_context(request, services),
        provider=services.credit_provider,
        adapters=services.pixel_adapters,
    )
    await session.commit()
    await _invalidate_tenant_cache(services, user.user_id)
    return success(request, result)


@router.get("/health", dependencies=[Depends(rate_limit("integrate:health", 120))])
async def integration_health(
    request: Request,
    client_id: str | None = Query(None, max_length=64),
    api_key: str | None = Query(None, max_length=128),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    cache_key = build_cache_key(
        "integrations", "health", {"client": integrations_service.health_cache_key(client_id, api_key)}
    )
    cached = await services.response_cache.get(cache_key)
    if cached is not None:
        return success(request, cached)
    health = await integrations_service.integration_health(session, client_id=client_id, api_key=api_key)
    await services.response_cache.set(cache_key, health, services.app_settings.cache_ttl_seconds_health)
    return success(request, health)
