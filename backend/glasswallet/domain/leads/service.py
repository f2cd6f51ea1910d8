from __future__ import annotations

import logging
import math
import uuid
from typing import Any, Iterable

import sqlalchemy as sa
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from glasswallet.domain.errors import ConflictError, NotFoundError, ValidationError
from glasswallet.domain.leads.db_models import Lead
from glasswallet.domain.tagging.db_models import LeadTag
from glasswallet.settings import settings
from glasswallet.shared.timeutils import add_years, utcnow

logger = logging.getLogger(__name__)


async def create_lead(
    session: AsyncSession,
    user_id: uuid.UUID,
    *,
    first_name: str,
    last_name: str,
    email: str,
    phone: str | None = None,
    address: str | None = None,
    city: str | None = None,
    state: str | None = None,
    zip_code: str | None = None,
    consent_given: bool = False,
    consent_metadata: dict[str, Any] | None = None,
    source: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Lead:
    normalized_email = email.strip().lower()
    existing = await session.scalar(
        select(Lead.lead_id).where(Lead.user_id == user_id, Lead.email == normalized_email)
    )
    if existing is not None:
        raise ConflictError(
            message="A lead with this email already exists",
            details={"leadId": str(existing)},
        )

    now = utcnow()
    lead = Lead(
        user_id=user_id,
        first_name=first_name.strip(),
        last_name=last_name.strip(),
        email=normalized_email,
        phone=phone,
        address=address,
        city=city,
        state=state.upper() if state else None,
        zip_code=zip_code,
        consent_given=consent_given,
        consent_metadata=consent_metadata,
        source=source or "api",
        metadata_json=metadata,
        data_retention_date=add_years(now, settings.data_retention_years),
        tags=[],
    )
    savepoint = await session.begin_nested()
    try:
        session.add(lead)
        await session.flush()
    except IntegrityError as exc:
        await savepoint.rollback()
        raise ConflictError(message="A lead with this email already exists") from exc
    else:
        await savepoint.commit()
    logger.info(
        "lead_created",
        extra={"extra": {"lead_id": str(lead.lead_id), "user_id": str(user_id), "source": lead.source}},
    )
    return lead


async def get_lead(session: AsyncSession, user_id: uuid.UUID, lead_id: uuid.UUID) -> Lead:
    lead = await session.scalar(select(Lead).where(Lead.lead_id == lead_id, Lead.user_id == user_id))
    if lead is None:
        raise NotFoundError.for_resource("Lead", details={"leadId": str(lead_id)})
    return lead


async def get_lead_with_transactions(session: AsyncSession, user_id: uuid.UUID, lead_id: uuid.UUID) -> Lead:
    lead = await session.scalar(
        select(Lead)
        .options(selectinload(Lead.transactions))
        .where(Lead.lead_id == lead_id, Lead.user_id == user_id)
    )
    if lead is None:
        raise NotFoundError.for_resource("Lead", details={"leadId": str(lead_id)})
    return lead


async def get_owned_leads(
    session: AsyncSession,
    user_id: uuid.UUID,
    lead_ids: Iterable[uuid.UUID],
    *,
    refresh: bool = False,
) -> list[Lead]:
    """Load every requested lead or fail listing the ids the caller does not own.

    ``refresh`` reloads leads already in the session, tags included.
    """
    wanted = list(dict.fromkeys(lead_ids))
    if not wanted:
        return []
    stmt = select(Lead).where(Lead.user_id == user_id, Lead.lead_id.in_(wanted))
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    result = await session.execute(stmt)
    leads = {lead.lead_id: lead for lead in result.scalars().all()}
    missing = [str(lead_id) for lead_id in wanted if lead_id not in leads]
    if missing:
        raise ValidationError(
            message="Some leads were not found or do not belong to you",
            details={"missingLeadIds": missing},
        )
    return [leads[lead_id] for lead_id in wanted]


async def list_leads(
    session: AsyncSession,
    user_id: uuid.UUID,
    *,
    page: int = 1,
    limit: int = 20,
    tag_type: str | None = None,
    processed: bool | None = None,
    credit_score_min: int | None = None,
    credit_score_max: int | None = None,
) -> tuple[list[Lead], dict[str, int]]:
    filters: list[Any] = [Lead.user_id == user_id]
    if tag_type:
        filters.append(
            sa.exists().where(LeadTag.lead_id == Lead.lead_id, LeadTag.tag_type == tag_type)
        )
    if processed is True:
        filters.append(Lead.processed_at.is_not(None))
    elif processed is False:
        filters.append(Lead.processed_at.is_(None))
    if credit_score_min is not None:
        filters.append(Lead.credit_score >= credit_score_min)
    if credit_score_max is not None:
        filters.append(Lead.credit_score <= credit_score_max)

    total = await session.scalar(select(func.count()).select_from(Lead).where(*filters)) or 0
    result = await session.execute(
        select(Lead)
        .where(*filters)
        .order_by(Lead.created_at.desc(), Lead.lead_id)
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


async def delete_lead(session: AsyncSession, user_id: uuid.UUID, lead_id: uuid.UUID) -> None:
    lead = await get_lead(session, user_id, lead_id)
    await session.delete(lead)
    await session.flush()
    logger.info("lead_deleted", extra={"extra": {"lead_id": str(lead_id), "user_id": str(user_id)}})


def lead_attributes(lead: Lead) -> dict[str, Any]:
    """Flat camelCase view of a lead used by rule conditions."""
    return {
        "leadId": str(lead.lead_id),
        "creditScore": lead.credit_score,
        "incomeEstimate": lead.income_estimate,
        "consentGiven": lead.consent_given,
        "source": lead.source,
        "state": lead.state,
        "zipCode": lead.zip_code,
        "email": lead.email,
        "hasPhone": bool(lead.phone),
        "processed": lead.processed_at is not None,
        "tags": lead.tag_types,
        "metadata": lead.metadata_json or {},
    }
