from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from glasswallet.api.envelope import success
from glasswallet.dependencies import get_current_user, get_db_session, get_services, rate_limit
from glasswallet.domain.credit import providers
from glasswallet.domain.credit import service as credit_service
from glasswallet.domain.credit.schemas import (
    ConsumerCreditPullResponse,
    CreditBalanceResponse,
    CreditPullRequest,
    CreditTransactionResponse,
    PreQualifyRequest,
    PreQualifyResponse,
)
from glasswallet.domain.users.db_models import User
from glasswallet.services import AppServices

router = APIRouter(prefix="/credit", tags=["credit"])

PREQUALIFY_THRESHOLD = 650


@router.post("/pull", dependencies=[Depends(rate_limit("credit:pull", 10))])
async def pull_consumer_credit(
    payload: CreditPullRequest,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    applicant = providers.CreditApplicant(
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=str(payload.email) if payload.email else None,
        phone=payload.phone,
        address=payload.address.street,
        city=payload.address.city,
        state=payload.address.state.upper(),
        zip_code=payload.address.zip_code,
        ssn=payload.ssn,
        date_of_birth=payload.date_of_birth.isoformat(),
    )
    pull = await credit_service.direct_pull(
        session,
        user.user_id,
        applicant=applicant,
        permissible_purpose=payload.permissible_purpose,
        consent_given=payload.consent_given,
        provider=services.credit_provider,
    )
    await session.commit()
    report = pull.report
    body = ConsumerCreditPullResponse(
        transaction_id=pull.transaction.transaction_id,
        report_id=report.report_id,
        consumer_name=f"{payload.first_name} {payload.last_name}",
        masked_ssn=pull.masked_ssn,
        credit_score=report.credit_score,
        score_tier=providers.score_tier(report.credit_score),
        income_estimate=report.income_estimate,
        risk_factors=list(report.risk_factors),
        permissible_purpose=pull.permissible_purpose,
        cost_in_cents=pull.transaction.cost_in_cents,
        credit_balance=pull.transaction.credit_balance_after,
        pulled_at=report.pulled_at,
        fcra_notice=credit_service.FCRA_NOTICE,
    )
    return success(request, body)


@router.post("/pre-qualify", dependencies=[Depends(rate_limit("credit:pre-qualify", 20))])
async def pre_qualify(
    payload: PreQualifyRequest,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
):
    score, transaction = await credit_service.pre_qualify(
        session,
        user.user_id,
        ssn=payload.ssn,
        zip_code=payload.zip_code,
        provider=services.credit_provider,
    )
    await session.commit()
    body = PreQualifyResponse(
        score=score,
        qualified=score >= PREQUALIFY_THRESHOLD,
        confidence=credit_service.prequalify_confidence(score),
        credits_deducted=transaction.cost_in_cents,
        credit_balance=transaction.credit_balance_after,
    )
    return success(request, body)


@router.get("/balance", dependencies=[Depends(rate_limit("credit:read", 300))])
async def balance(
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    current = await credit_service.get_balance(session, user.user_id)
    return success(request, CreditBalanceResponse(credit_balance=current))


@router.get("/transactions", dependencies=[Depends(rate_limit("credit:read", 300))])
async def transactions(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    rows, pagination = await credit_service.list_transactions(session, user.user_id, page=page, limit=limit)
    return success(
        request,
        [CreditTransactionResponse.model_validate(row) for row in rows],
        pagination=pagination,
    )
