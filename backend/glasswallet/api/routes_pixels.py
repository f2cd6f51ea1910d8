import uuid

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from glasswallet.api.envelope import success
from glasswallet.dependencies import get_current_user, get_db_session, get_services, rate_limit
from glasswallet.domain.pixels import service as pixel_service
from glasswallet.domain.pixels.batch import LeadFilters, batch_sync
from glasswallet.domain.pixels.schemas import (
    ConnectionCreateRequest,
    ConnectionResponse,
    ConnectionUpdateRequest,
    PixelBatchSyncRequest,
    PixelSyncRequest,
)
from glasswallet.domain.users.db_models import User
from glasswallet.infra.cache import build_cache_key
from glasswallet.services import AppServices
from glasswallet.shared.timeutils import as_utc

router = APIRouter(prefix="/pixels", tags=["pixels"])


async def invalidate_connection_cache(services: AppServices, user_id: uuid.UUID) -> None:
    await services.response_cache.invalidate_prefix(f"{user_id}:connections")


@router.post("/connections", dependencies=[Depends(rate_limit("pixels:create", 10))])
async def create_connection(
    payload: ConnectionCreateRequest,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    connection = await pixel_service.create_connection(
        session,
        user.user_id,
        platform_type=payload.platform_type,
        connection_name=payload.connection_name,
        pixel_id=payload.pixel_id,
        customer_id=payload.customer_id,
        access_token=payload.access_token,
        refresh_token=payload.refresh_token,
        sync_settings=payload.sync_settings.model_dump(by_alias=True) if payload.sync_settings else None,
    )
    await session.commit()
    await session.refresh(connection)
    await invalidate_connection_cache(services, user.user_id)
    return success(request, ConnectionResponse.model_validate(connection), status_code=status.HTTP_201_CREATED)


@router.get("/connections", dependencies=[Depends(rate_limit("pixels:list", 60))])
async def list_connections(
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    cache_key = build_cache_key(user.user_id, "connections")
    cached = await services.response_cache.get(cache_key)
    if cached is not None:
        return success(request, cached)
    connections = await pixel_service.list_connections(session, user.user_id)
    data = [
        ConnectionResponse.model_validate(connection).model_dump(mode="json", by_alias=True)
        for connection in connections
    ]
    await services.response_cache.set(cache_key, data, services.app_settings.cache_ttl_seconds_connections)
    return success(request, data)


@router.get("/connections/{connection_id}")
async def get_connection(
    connection_id: uuid.UUID,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    connection = await pixel_service.get_connection(session, user.user_id, connection_id)
    return success(request, ConnectionResponse.model_validate(connection))


@router.patch("/connections/{connection_id}")
async def update_connection(
    connection_id: uuid.UUID,
    payload: ConnectionUpdateRequest,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    changes = payload.model_dump(exclude_unset=True, exclude={"sync_settings"})
    if payload.sync_settings is not None:
        changes["sync_settings"] = payload.sync_settings.model_dump(by_alias=True, exclude_unset=True)
    connection = await pixel_service.update_connection(session, user.user_id, connection_id, changes)
    await session.commit()
    await session.refresh(connection)
    await invalidate_connection_cache(services, user.user_id)
    return success(request, ConnectionResponse.model_validate(connection))


@router.delete("/connections/{connection_id}")
async def delete_connection(
    connection_id: uuid.UUID,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    await pixel_service.delete_connection(session, user.user_id, connection_id)
    await session.commit()
    await invalidate_connection_cache(services, user.user_id)
    return success(request, {"connectionId": connection_id, "deleted": True})


@router.post("/connections/{connection_id}/test", dependencies=[Depends(rate_limit("pixels:test", 30))])
async def test_connection(
    connection_id: uuid.UUID,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    result = await pixel_service.test_connection(session, user.user_id, connection_id, services.pixel_adapters)
    await session.commit()
    await invalidate_connection_cache(services, user.user_id)
    return success(request, {"connectionId": connection_id, **result})


@router.post("/sync", dependencies=[Depends(rate_limit("pixels:sync", 20))])
async def sync_leads(
    payload: PixelSyncRequest,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    report = await pixel_service.sync_leads(
        session,
        user.user_id,
        lead_ids=payload.lead_ids,
        connection_ids=payload.connection_ids,
        sync_type=payload.sync_type,
        adapters=services.pixel_adapters,
    )
    await session.commit()
    await invalidate_connection_cache(services, user.user_id)
    await services.response_cache.invalidate_prefix(f"{user.user_id}:leads")
    return success(request, report.as_dict())


@router.post("/batch-sync", dependencies=[Depends(rate_limit("pixels:batch-sync", 5))])
async def batch_sync_leads(
    payload: PixelBatchSyncRequest,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    date_range = payload.filters.date_range
    filters = LeadFilters(
        tag_types=list(payload.filters.tag_types),
        credit_score_min=payload.filters.credit_score_min,
        credit_score_max=payload.filters.credit_score_max,
        created_from=as_utc(date_range.date_from) if date_range else None,
        created_to=as_utc(date_range.date_to) if date_range else None,
        include_untagged=payload.filters.include_untagged,
    )
    result = await batch_sync(
        session,
        user.user_id,
        connection_ids=payload.connection_ids,
        filters=filters,
        adapters=services.pixel_adapters,
        batch_size=payload.batch_size,
        dry_run=payload.dry_run,
    )
    if not payload.dry_run:
        await session.commit()
        await invalidate_connection_cache(services, user.user_id)
        await services.response_cache.invalidate_prefix(f"{user.user_id}:leads")
    return success(request, result)
