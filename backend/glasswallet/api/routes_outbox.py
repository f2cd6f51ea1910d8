from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from glasswallet.api.envelope import success
from glasswallet.dependencies import get_current_user, get_db_session
from glasswallet.domain.errors import ConflictError
from glasswallet.domain.outbox import service as outbox_service
from glasswallet.domain.outbox.schemas import OutboxEventResponse, OutboxReplayResponse
from glasswallet.domain.users.db_models import User

router = APIRouter(prefix="/outbox", tags=["outbox"])


@router.get("/events")
async def list_events(
    request: Request,
    status: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    events = await outbox_service.list_outbox_events(session, user.user_id, status=status, limit=limit)
    counts = await outbox_service.outbox_counts_by_status(
        session, outbox_service.OUTBOX_STATUSES, user_id=user.user_id
    )
    return success(
        request,
        {"events": [OutboxEventResponse.model_validate(event) for event in events], "counts": counts},
    )


@router.post("/events/{event_id}/replay")
async def replay_event(
    event_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    event = await outbox_service.get_outbox_event(session, user.user_id, event_id)
    if event.status != "dead":
        raise ConflictError(
            message="Only dead-lettered events can be replayed",
            code="OUTBOX_EVENT_NOT_DEAD",
            details={"eventId": event_id, "status": event.status},
        )
    await outbox_service.replay_outbox_event(session, event)
    return success(request, OutboxReplayResponse.model_validate(event))
