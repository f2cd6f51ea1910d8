from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from glasswallet.api.envelope import success
from glasswallet.dependencies import get_current_user, get_db_session, rate_limit
from glasswallet.domain.analytics.service import lead_analytics, lead_summary, resolve_range
from glasswallet.domain.users.db_models import User

router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.get("/summary", dependencies=[Depends(rate_limit("analytics:summary", 100))])
async def summary(
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    return success(request, await lead_summary(session, user.user_id))


@router.get("/leads", dependencies=[Depends(rate_limit("analytics:leads", 100))])
async def leads(
    request: Request,
    period: Literal["7d", "30d", "90d", "1y"] = Query("30d"),
    date_from: datetime | None = Query(None, alias="dateFrom"),
    date_to: datetime | None = Query(None, alias="dateTo"),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    start, end = resolve_range(period, date_from, date_to)
    return success(request, await lead_analytics(session, user.user_id, date_from=start, date_to=end))
