import uuid

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from glasswallet.api.envelope import success
from glasswallet.dependencies import get_current_user, get_db_session, rate_limit
from glasswallet.domain.tagging import service as tagging_service
from glasswallet.domain.tagging.schemas import RuleCreateRequest, RuleResponse, RuleUpdateRequest
from glasswallet.domain.users.db_models import User

router = APIRouter(prefix="/rules", tags=["rules"], dependencies=[Depends(rate_limit("rules", 100))])


@router.get("")
async def list_rules(
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    rules = await tagging_service.list_rules(session, user.user_id)
    return success(request, [RuleResponse.model_validate(rule) for rule in rules])


@router.post("")
async def create_rule(
    payload: RuleCreateRequest,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    rule = await tagging_service.create_rule(
        session,
        user.user_id,
        rule_name=payload.rule_name,
        conditions=payload.conditions,
        actions=payload.actions,
        priority=payload.priority,
        is_active=payload.is_active,
    )
    await session.commit()
    await session.refresh(rule)
    return success(request, RuleResponse.model_validate(rule), status_code=status.HTTP_201_CREATED)


@router.post("/seed")
async def seed_rules(
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    rules = await tagging_service.seed_default_rules(session, user.user_id)
    await session.commit()
    for rule in rules:
        await session.refresh(rule)
    return success(request, [RuleResponse.model_validate(rule) for rule in rules])


@router.patch("/{rule_id}")
async def update_rule(
    rule_id: uuid.UUID,
    payload: RuleUpdateRequest,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    rule = await tagging_service.update_rule(
        session, user.user_id, rule_id, payload.model_dump(exclude_unset=True)
    )
    await session.commit()
    await session.refresh(rule)
    return success(request, RuleResponse.model_validate(rule))


@router.delete("/{rule_id}")
async def delete_rule(
    rule_id: uuid.UUID,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    await tagging_service.delete_rule(session, user.user_id, rule_id)
    await session.commit()
    return success(request, {"ruleId": rule_id, "deleted": True})
