from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from glasswallet.api.envelope import success
from glasswallet.api.routes_pixels import invalidate_connection_cache
from glasswallet.dependencies import get_current_user, get_db_session, get_services, rate_limit
from glasswallet.domain.pixels import oauth
from glasswallet.domain.users.db_models import User
from glasswallet.services import AppServices

router = APIRouter(prefix="/oauth", tags=["oauth"])


@router.get("/{platform}/connect", dependencies=[Depends(rate_limit("oauth:connect", 30))])
async def connect(
    platform: str,
    request: Request,
    user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    return success(request, oauth.start_connect(user.user_id, platform, services.pixel_adapters))


@router.get("/{platform}/callback", dependencies=[Depends(rate_limit("oauth:callback", 30))])
async def callback(
    platform: str,
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> RedirectResponse:
    target = await oauth.complete_callback(
        session,
        platform,
        code=code,
        state=state,
        error=error,
        adapters=services.pixel_adapters,
        on_connected=lambda user_id: invalidate_connection_cache(services, user_id),
    )
    return RedirectResponse(target, status_code=status.HTTP_302_FOUND)
