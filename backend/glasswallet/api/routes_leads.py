import logging
import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from glasswallet.api.envelope import error_response, success
from glasswallet.dependencies import get_current_user, get_db_session, get_services, rate_limit
from glasswallet.domain.credit.schemas import LeadCreditPullResponse
from glasswallet.domain.leads import pipeline
from glasswallet.domain.leads import service as lead_service
from glasswallet.domain.leads.schemas import (
    LeadCreateRequest,
    LeadDetailResponse,
    LeadResponse,
    LeadTagResponse,
    TagType,
)
from glasswallet.domain.tagging import service as tagging_service
from glasswallet.domain.tagging.schemas import (
    AutoTagRequest,
    BulkTagItem,
    BulkTagRequest,
    BulkTagResponse,
    TagAndSyncRequest,
    TagRequest,
    TagResult,
)
from glasswallet.domain.users.db_models import User
from glasswallet.infra.cache import build_cache_key
from glasswallet.services import AppServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/leads", tags=["leads"])


async def invalidate_lead_cache(services: AppServices, user_id: uuid.UUID) -> None:
    await services.response_cache.invalidate_prefix(f"{user_id}:leads")


def _tag_result(tag, created: bool) -> TagResult:
    return TagResult(
        tag_id=tag.tag_id,
        lead_id=tag.lead_id,
        tag_type=tag.tag_type,
        tag_reason=tag.tag_reason,
        rule_id=tag.rule_id,
        synced_to_pixels=tag.synced_to_pixels,
        pixel_sync_at=tag.pixel_sync_at,
        action="created" if created else "updated",
    )


@router.post("", dependencies=[Depends(rate_limit("leads:create", 100))])
async def create_lead(
    payload: LeadCreateRequest,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    lead = await lead_service.create_lead(
        session,
        user.user_id,
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=str(payload.email),
        phone=payload.phone,
        address=payload.address,
        city=payload.city,
        state=payload.state,
        zip_code=payload.zip_code,
        consent_given=payload.consent_given,
        source=payload.source,
        metadata=payload.metadata,
    )
    await session.commit()
    await session.refresh(lead)
    await invalidate_lead_cache(services, user.user_id)
    return success(request, LeadResponse.model_validate(lead), status_code=status.HTTP_201_CREATED)


@router.get("", dependencies=[Depends(rate_limit("leads:list", 200))])
async def list_leads(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    tag_type: TagType | None = Query(None, alias="tagType"),
    processed: bool | None = Query(None),
    credit_score_min: int | None = Query(None, alias="creditScoreMin", ge=300, le=850),
    credit_score_max: int | None = Query(None, alias="creditScoreMax", ge=300, le=850),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    filters = {
        "page": page,
        "limit": limit,
        "tag_type": tag_type,
        "processed": processed,
        "credit_score_min": credit_score_min,
        "credit_score_max": credit_score_max,
    }
    cache_key = build_cache_key(user.user_id, "leads", filters)
    cached = await services.response_cache.get(cache_key)
    if cached is not None:
        return success(request, cached["data"], pagination=cached["pagination"])

    leads, pagination = await lead_service.list_leads(session, user.user_id, **filters)
    data = [LeadResponse.model_validate(lead).model_dump(mode="json", by_alias=True) for lead in leads]
    await services.response_cache.set(
        cache_key,
        {"data": data, "pagination": pagination},
        services.app_settings.cache_ttl_seconds_leads,
    )
    return success(request, data, pagination=pagination)


@router.post("/bulk-tag", dependencies=[Depends(rate_limit("leads:bulk-tag", 10))])
async def bulk_tag(
    payload: BulkTagRequest,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    outcomes = await tagging_service.bulk_tag(
        session, user.user_id, payload.lead_ids, payload.tag_type, payload.tag_reason
    )
    await session.commit()
    await invalidate_lead_cache(services, user.user_id)
    items = [
        BulkTagItem(lead_id=outcome.lead_id, action=outcome.action, tag_id=outcome.tag_id, error=outcome.error)
        for outcome in outcomes
    ]
    failure_count = sum(1 for item in items if item.action == "failed")
    body = BulkTagResponse(
        results=items,
        success_count=len(items) - failure_count,
        failure_count=failure_count,
        tag_type=payload.tag_type,
    )
    if body.success_count == 0:
        return error_response(
            request,
            status_code=status.HTTP_400_BAD_REQUEST,
            code="BULK_TAG_FAILED",
            message="No leads were tagged",
            details=body.model_dump(mode="json", by_alias=True),
        )
    return success(request, body)


@router.get("/{lead_id}")
async def get_lead(
    lead_id: uuid.UUID,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    lead = await lead_service.get_lead_with_transactions(session, user.user_id, lead_id)
    return success(request, LeadDetailResponse.model_validate(lead))


@router.delete("/{lead_id}")
async def delete_lead(
    lead_id: uuid.UUID,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    await lead_service.delete_lead(session, user.user_id, lead_id)
    await session.commit()
    await invalidate_lead_cache(services, user.user_id)
    return success(request, {"leadId": lead_id, "deleted": True})


@router.post("/{lead_id}/credit-pull", dependencies=[Depends(rate_limit("leads:credit-pull", 20))])
async def pull_credit(
    lead_id: uuid.UUID,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    outcome = await pipeline.qualify_lead(
        session,
        user.user_id,
        lead_id,
        provider=services.credit_provider,
        adapters=services.pixel_adapters,
    )
    await session.commit()
    await invalidate_lead_cache(services, user.user_id)
    pull = outcome.pull
    body = LeadCreditPullResponse(
        lead_id=lead_id,
        credit_score=pull.report.credit_score,
        income_estimate=pull.report.income_estimate,
        transaction_id=pull.transaction.transaction_id,
        cost_in_cents=pull.transaction.cost_in_cents,
        credit_balance=pull.transaction.credit_balance_after,
        risk_factors=pull.risk_factors,
        score_tier=pull.score_tier,
        tags=outcome.tagging.evaluation.tag_types,
    )
    data = body.model_dump(mode="json", by_alias=True)
    data["webhookEventIds"] = outcome.webhook_event_ids
    if outcome.sync_report is not None:
        data["pixelSync"] = outcome.sync_report.summary
    return success(request, data)


@router.post("/{lead_id}/tag", dependencies=[Depends(rate_limit("leads:tag", 100))])
async def tag_lead(
    lead_id: uuid.UUID,
    payload: TagRequest,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    tag, created = await tagging_service.upsert_tag(
        session,
        user.user_id,
        lead_id,
        payload.tag_type,
        payload.tag_reason,
        rule_id=payload.rule_id,
        tagged_by=user.user_id,
    )
    await session.commit()
    await invalidate_lead_cache(services, user.user_id)
    return success(
        request,
        _tag_result(tag, created),
        status_code=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
    )


@router.delete("/{lead_id}/tag")
async def remove_tag(
    lead_id: uuid.UUID,
    request: Request,
    tag_type: str = Query(alias="tagType"),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    await tagging_service.remove_tag(session, user.user_id, lead_id, tag_type)
    await session.commit()
    await invalidate_lead_cache(services, user.user_id)
    return success(request, {"leadId": lead_id, "tagType": tag_type, "removed": True})


@router.post("/{lead_id}/tag-and-sync", dependencies=[Depends(rate_limit("leads:tag-and-sync", 30))])
async def tag_and_sync(
    lead_id: uuid.UUID,
    payload: TagAndSyncRequest,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    outcome = await pipeline.tag_and_sync(
        session,
        user.user_id,
        lead_id,
        tags=list(payload.tags),
        reason=payload.reason,
        auto_sync=payload.auto_sync,
        connection_ids=payload.connection_ids,
        adapters=services.pixel_adapters,
    )
    await session.commit()
    await services.response_cache.invalidate_prefix(f"{user.user_id}:connections")
    await invalidate_lead_cache(services, user.user_id)
    return success(
        request,
        {
            "leadId": lead_id,
            "tags": [_tag_result(tag, created) for tag, created in outcome.tags],
            "pixelSync": outcome.pixel_sync(),
        },
    )


@router.post("/{lead_id}/auto-tag", dependencies=[Depends(rate_limit("leads:auto-tag", 60))])
async def auto_tag(
    lead_id: uuid.UUID,
    request: Request,
    payload: AutoTagRequest | None = None,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    lead = await lead_service.get_lead(session, user.user_id, lead_id)
    signals = payload.signals if payload else None
    outcome = await tagging_service.apply_auto_tagging(session, user.user_id, lead, signals)
    await session.commit()
    for tag in outcome.tags:
        await session.refresh(tag)
    await invalidate_lead_cache(services, user.user_id)
    evaluation = outcome.evaluation
    return success(
        request,
        {
            "leadId": lead_id,
            "appliedTags": evaluation.tag_types,
            "untagged": evaluation.untagged,
            "decisions": [
                {
                    "tagType": decision.tag_type,
                    "reason": decision.reason,
                    "triggeringRuleId": decision.triggering_rule_id,
                    "syncToPixels": decision.sync_to_pixels,
                }
                for decision in evaluation.decisions
            ],
            "matchedRules": evaluation.matched_rules,
            "webhookEvents": [event.name for event in evaluation.webhook_events],
            "tags": [LeadTagResponse.model_validate(tag) for tag in outcome.tags],
        },
    )
