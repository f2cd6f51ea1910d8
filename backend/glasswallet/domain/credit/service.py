from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from glasswallet.domain.credit import providers
from glasswallet.domain.credit.db_models import (
    TRANSACTION_PULL,
    TRANSACTION_PURCHASE,
    TRANSACTION_REFUND,
    CreditTransaction,
)
from glasswallet.domain.errors import (
    BusinessLogicError,
    InsufficientCreditsError,
    NotFoundError,
    ValidationError,
)
from glasswallet.domain.leads.db_models import Lead
from glasswallet.domain.leads.service import get_lead
from glasswallet.domain.users.db_models import User
from glasswallet.infra.metrics import metrics
from glasswallet.settings import settings
from glasswallet.shared.pii import mask_ssn
from glasswallet.shared.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

FCRA_NOTICE = (
    "This consumer report was obtained under a permissible purpose defined by the Fair Credit "
    "Reporting Act (15 U.S.C. 1681b). Adverse action based on it requires notice to the consumer."
)


@dataclass
class LeadCreditPull:
    lead: Lead
    report: providers.CreditReport
    transaction: CreditTransaction

    @property
    def risk_factors(self) -> list[str]:
        return list(self.report.risk_factors)

    @property
    def score_tier(self) -> str:
        return providers.score_tier(self.report.credit_score)


@dataclass
class ConsumerCreditPull:
    report: providers.CreditReport
    transaction: CreditTransaction
    masked_ssn: str | None
    permissible_purpose: str


async def get_balance(session: AsyncSession, user_id: uuid.UUID) -> int:
    balance = await session.scalar(select(User.credit_balance).where(User.user_id == user_id))
    if balance is None:
        raise NotFoundError.for_resource("User")
    return int(balance)


async def ensure_sufficient_balance(session: AsyncSession, user_id: uuid.UUID, cost: int) -> int:
    available = await get_balance(session, user_id)
    if available < cost:
        raise InsufficientCreditsError(required=cost, available=available)
    return available


async def debit(
    session: AsyncSession,
    user_id: uuid.UUID,
    cost: int,
    *,
    lead_id: uuid.UUID | None = None,
    transaction_id: uuid.UUID | None = None,
    description: str | None = None,
    external_transaction_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> CreditTransaction:
    """Conditionally decrement the balance and write the ``pull`` ledger row.

    The ``WHERE credit_balance >= cost`` guard makes the decrement safe under
    concurrent pulls; a lost race surfaces as ``InsufficientCreditsError``.
    """
    if cost < 0:
        raise ValidationError(message="Cost must not be negative")
    result = await session.execute(
        update(User)
        .where(User.user_id == user_id, User.credit_balance >= cost)
        .values(credit_balance=User.credit_balance - cost)
        .returning(User.credit_balance)
        .execution_options(synchronize_session="fetch")
    )
    balance_after = result.scalar_one_or_none()
    if balance_after is None:
        available = await get_balance(session, user_id)
        raise InsufficientCreditsError(required=cost, available=available)

    transaction = CreditTransaction(
        transaction_id=transaction_id or uuid.uuid4(),
        user_id=user_id,
        lead_id=lead_id,
        transaction_type=TRANSACTION_PULL,
        cost_in_cents=cost,
        credit_balance_before=balance_after + cost,
        credit_balance_after=balance_after,
        description=description,
        external_transaction_id=external_transaction_id,
        metadata_json=metadata,
    )
    session.add(transaction)
    await session.flush()
    return transaction


async def _credit(
    session: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    *,
    transaction_type: str,
    description: str | None,
    external_transaction_id: str | None,
    lead_id: uuid.UUID | None = None,
) -> CreditTransaction:
    if amount <= 0:
        raise ValidationError(message="Amount must be positive")
    result = await session.execute(
        update(User)
        .where(User.user_id == user_id)
        .values(credit_balance=User.credit_balance + amount)
        .returning(User.credit_balance)
        .execution_options(synchronize_session="fetch")
    )
    balance_after = result.scalar_one_or_none()
    if balance_after is None:
        raise NotFoundError.for_resource("User")
    transaction = CreditTransaction(
        user_id=user_id,
        lead_id=lead_id,
        transaction_type=transaction_type,
        cost_in_cents=amount,
        credit_balance_before=balance_after - amount,
        credit_balance_after=balance_after,
        description=description,
        external_transaction_id=external_transaction_id,
    )
    session.add(transaction)
    await session.flush()
    logger.info(
        "credit_balance_increased",
        extra={
            "extra": {
                "user_id": str(user_id),
                "transaction_type": transaction_type,
                "amount_cents": amount,
                "balance_after": balance_after,
            }
        },
    )
    return transaction


async def record_purchase(
    session: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    *,
    external_transaction_id: str | None = None,
    description: str | None = "Credit purchase",
) -> CreditTransaction:
    return await _credit(
        session,
        user_id,
        amount,
        transaction_type=TRANSACTION_PURCHASE,
        description=description,
        external_transaction_id=external_transaction_id,
    )


async def record_refund(
    session: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    *,
    lead_id: uuid.UUID | None = None,
    external_transaction_id: str | None = None,
    description: str | None = "Credit refund",
) -> CreditTransaction:
    return await _credit(
        session,
        user_id,
        amount,
        transaction_type=TRANSACTION_REFUND,
        description=description,
        external_transaction_id=external_transaction_id,
        lead_id=lead_id,
    )


def _provider_failure(exc: providers.CreditProviderError) -> BusinessLogicError:
    return BusinessLogicError(
        message=exc.message,
        code=exc.code,
        details={"retryable": exc.retryable},
        retryable=exc.retryable,
    )


def _pull_too_recent(last_pull) -> BusinessLogicError:
    window = timedelta(hours=settings.credit_pull_window_hours)
    remaining = window - (utcnow() - last_pull) if last_pull is not None else window
    hours_remaining = max(1, math.ceil(remaining.total_seconds() / 3600))
    return BusinessLogicError(
        message=(
            f"Credit was already pulled for this lead within the last "
            f"{settings.credit_pull_window_hours} hours"
        ),
        code="CREDIT_PULL_TOO_RECENT",
        details={"lastPullDate": last_pull.isoformat() if last_pull else None, "hoursRemaining": hours_remaining},
    )


def _ensure_outside_pull_window(lead: Lead) -> None:
    last_pull = as_utc(lead.processed_at)
    if last_pull is None:
        return
    if utcnow() - last_pull < timedelta(hours=settings.credit_pull_window_hours):
        raise _pull_too_recent(last_pull)


async def _claim_pull_window(session: AsyncSession, lead: Lead) -> None:
    """Stamp ``processed_at`` only if no other pull holds the window.

    Concurrent pulls for the same lead race on this update; the loser sees no
    matched row and is rejected before the bureau is called.
    """
    claimed_at = utcnow()
    cutoff = claimed_at - timedelta(hours=settings.credit_pull_window_hours)
    result = await session.execute(
        update(Lead)
        .where(
            Lead.lead_id == lead.lead_id,
            or_(Lead.processed_at.is_(None), Lead.processed_at <= cutoff),
        )
        .values(processed_at=claimed_at)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return
    await session.refresh(lead, attribute_names=["processed_at"])
    raise _pull_too_recent(as_utc(lead.processed_at))


async def _release_pull_window(session: AsyncSession, lead: Lead) -> None:
    await session.execute(
        update(Lead)
        .where(Lead.lead_id == lead.lead_id)
        .values(processed_at=lead.processed_at)
        .execution_options(synchronize_session=False)
    )


async def pull_credit_for_lead(
    session: AsyncSession,
    user_id: uuid.UUID,
    lead_id: uuid.UUID,
    provider: providers.CreditProvider,
) -> LeadCreditPull:
    lead = await get_lead(session, user_id, lead_id)
    if not lead.consent_given:
        metrics.record_credit_pull("consent_required")
        raise BusinessLogicError(
            message="FCRA compliance requires explicit consent before credit pull",
            code="CONSENT_REQUIRED",
            details={"costInCents": 0},
        )
    _ensure_outside_pull_window(lead)

    cost = settings.credit_pull_cost_cents
    await ensure_sufficient_balance(session, user_id, cost)
    await _claim_pull_window(session, lead)

    transaction_id = uuid.uuid4()
    applicant = providers.CreditApplicant(
        first_name=lead.first_name,
        last_name=lead.last_name,
        email=lead.email,
        phone=lead.phone,
        address=lead.address,
        city=lead.city,
        state=lead.state,
        zip_code=lead.zip_code,
    )
    try:
        report = await provider.pull(applicant, transaction_id=str(transaction_id))
    except providers.CreditProviderError as exc:
        metrics.record_credit_pull("retryable_failure" if exc.retryable else "failure")
        logger.warning(
            "credit_pull_failed",
            extra={
                "extra": {
                    "lead_id": str(lead_id),
                    "code": exc.code,
                    "retryable": exc.retryable,
                    "provider": provider.name,
                }
            },
        )
        await _release_pull_window(session, lead)
        raise _provider_failure(exc) from exc

    if report.cost_in_cents is not None:
        cost = int(report.cost_in_cents)
    try:
        transaction = await debit(
            session,
            user_id,
            cost,
            lead_id=lead.lead_id,
            transaction_id=transaction_id,
            description=f"Credit pull for {lead.full_name}",
            external_transaction_id=report.report_id,
            metadata={"provider": provider.name, "scoreTier": providers.score_tier(report.credit_score)},
        )
    except InsufficientCreditsError:
        await _release_pull_window(session, lead)
        raise
    lead.credit_score = report.credit_score
    lead.income_estimate = report.income_estimate
    lead.processed_at = report.pulled_at
    await session.flush()

    metrics.record_credit_pull("success")
    logger.info(
        "credit_pull_succeeded",
        extra={
            "extra": {
                "lead_id": str(lead.lead_id),
                "user_id": str(user_id),
                "transaction_id": str(transaction.transaction_id),
                "cost_in_cents": cost,
                "balance_after": transaction.credit_balance_after,
            }
        },
    )
    return LeadCreditPull(lead=lead, report=report, transaction=transaction)


async def direct_pull(
    session: AsyncSession,
    user_id: uuid.UUID,
    *,
    applicant: providers.CreditApplicant,
    permissible_purpose: str,
    consent_given: bool,
    provider: providers.CreditProvider,
) -> ConsumerCreditPull:
    if not consent_given:
        metrics.record_credit_pull("consent_required")
        raise BusinessLogicError(
            message="FCRA compliance requires explicit consent before credit pull",
            code="CONSENT_REQUIRED",
            details={"costInCents": 0},
        )
    cost = settings.credit_pull_cost_cents
    await ensure_sufficient_balance(session, user_id, cost)

    transaction_id = uuid.uuid4()
    try:
        report = await provider.pull(applicant, transaction_id=str(transaction_id))
    except providers.CreditProviderError as exc:
        metrics.record_credit_pull("retryable_failure" if exc.retryable else "failure")
        logger.warning(
            "consumer_credit_pull_failed",
            extra={"extra": {"code": exc.code, "retryable": exc.retryable, "provider": provider.name}},
        )
        raise _provider_failure(exc) from exc

    masked = mask_ssn(applicant.ssn)
    transaction = await debit(
        session,
        user_id,
        cost,
        transaction_id=transaction_id,
        description=f"Consumer credit pull ({permissible_purpose})",
        external_transaction_id=report.report_id,
        metadata={"permissiblePurpose": permissible_purpose, "maskedSsn": masked, "provider": provider.name},
    )
    metrics.record_credit_pull("success")
    logger.info(
        "consumer_credit_pull_succeeded",
        extra={"extra": {"user_id": str(user_id), "transaction_id": str(transaction.transaction_id)}},
    )
    return ConsumerCreditPull(
        report=report,
        transaction=transaction,
        masked_ssn=masked,
        permissible_purpose=permissible_purpose,
    )


def prequalify_confidence(score: int) -> str:
    if score >= 700:
        return "high"
    if score >= 600:
        return "medium"
    return "low"


async def pre_qualify(
    session: AsyncSession,
    user_id: uuid.UUID,
    *,
    ssn: str,
    zip_code: str,
    provider: providers.CreditProvider,
) -> tuple[int, CreditTransaction]:
    cost = settings.prequalify_cost_cents
    await ensure_sufficient_balance(session, user_id, cost)
    try:
        score = await provider.soft_pull(ssn=ssn, zip_code=zip_code)
    except providers.CreditProviderError as exc:
        metrics.record_credit_pull("retryable_failure" if exc.retryable else "failure")
        raise _provider_failure(exc) from exc
    transaction = await debit(
        session,
        user_id,
        cost,
        description="Pre-qualification check",
        metadata={"kind": "pre_qualify", "maskedSsn": mask_ssn(ssn)},
    )
    logger.info(
        "prequalify_completed",
        extra={"extra": {"user_id": str(user_id), "qualified": score >= 650}},
    )
    return score, transaction


async def list_transactions(
    session: AsyncSession,
    user_id: uuid.UUID,
    *,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[CreditTransaction], dict[str, int]]:
    total = await session.scalar(
        select(func.count()).select_from(CreditTransaction).where(CreditTransaction.user_id == user_id)
    ) or 0
    result = await session.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc(), CreditTransaction.transaction_id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    pagination = {
        "page": page,
        "limit": limit,
        "total": int(total),
        "totalPages": math.ceil(total / limit) if total else 0,
    }
    return list(result.scalars().all()), pagination
