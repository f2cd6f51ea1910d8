from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from glasswallet.domain.credit.db_models import TRANSACTION_PULL, TRANSACTION_REFUND, CreditTransaction
from glasswallet.domain.errors import ValidationError
from glasswallet.domain.leads.db_models import Lead
from glasswallet.domain.pixels.db_models import STATUS_ACTIVE, PixelConnection
from glasswallet.domain.tagging.db_models import (
    TAG_BLACKLIST,
    TAG_QUALIFIED,
    TAG_TYPES,
    TAG_UNQUALIFIED,
    TAG_WHITELIST,
    LeadTag,
)
from glasswallet.settings import settings
from glasswallet.shared.timeutils import as_utc, utcnow


async def lead_summary(session: AsyncSession, user_id: uuid.UUID) -> dict[str, Any]:
    lead_totals = await session.execute(
        select(
            func.count(Lead.lead_id),
            func.count(Lead.processed_at),
            func.avg(Lead.credit_score),
        ).where(Lead.user_id == user_id)
    )
    total_leads, processed_leads, average_score = lead_totals.one()

    tag_rows = await session.execute(
        select(LeadTag.tag_type, func.count(LeadTag.tag_id))
        .join(Lead, Lead.lead_id == LeadTag.lead_id)
        .where(Lead.user_id == user_id)
        .group_by(LeadTag.tag_type)
    )
    tag_counts = {tag_type: 0 for tag_type in TAG_TYPES}
    for tag_type, count in tag_rows.all():
        tag_counts[tag_type] = int(count)

    synced_tags = await session.scalar(
        select(func.count(LeadTag.tag_id))
        .join(Lead, Lead.lead_id == LeadTag.lead_id)
        .where(Lead.user_id == user_id, LeadTag.synced_to_pixels.is_(True))
    )
    active_connections = await session.scalar(
        select(func.count(PixelConnection.connection_id)).where(
            PixelConnection.user_id == user_id, PixelConnection.connection_status == STATUS_ACTIVE
        )
    )

    spend_rows = await session.execute(
        select(CreditTransaction.transaction_type, func.coalesce(func.sum(CreditTransaction.cost_in_cents), 0))
        .where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.transaction_type.in_((TRANSACTION_PULL, TRANSACTION_REFUND)),
        )
        .group_by(CreditTransaction.transaction_type)
    )
    spend = {transaction_type: int(total) for transaction_type, total in spend_rows.all()}

    return {
        "totalLeads": int(total_leads or 0),
        "processedLeads": int(processed_leads or 0),
        "tagCounts": tag_counts,
        "syncedTags": int(synced_tags or 0),
        "activeConnections": int(active_connections or 0),
        "creditsSpentCents": spend.get(TRANSACTION_PULL, 0) - spend.get(TRANSACTION_REFUND, 0),
        "averageCreditScore": round(float(average_score), 1) if average_score is not None else None,
    }


CREDIT_SCORE_BANDS = ((300, 549), (550, 649), (650, 719), (720, 799), (800, 850))
PERIOD_DAYS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}
TOP_SOURCES_LIMIT = 5
RECENT_ACTIVITY_LIMIT = 10


def _percentage(count: int, total: int) -> float:
    return round(count / total * 100, 1) if total else 0.0


def resolve_range(
    period: str, date_from: datetime | None, date_to: datetime | None
) -> tuple[datetime, datetime]:
    """Explicit bounds win over ``period``; the window may not exceed the configured maximum."""
    if period not in PERIOD_DAYS:
        raise ValidationError(message=f"Invalid period: {period}", details={"allowed": list(PERIOD_DAYS)})
    end = as_utc(date_to) or utcnow()
    start = as_utc(date_from) or end - timedelta(days=PERIOD_DAYS[period])
    if start > end:
        raise ValidationError(message="dateFrom must not be after dateTo")
    if end - start > timedelta(days=settings.analytics_max_range_days):
        raise ValidationError(
            message=f"Date range may not exceed {settings.analytics_max_range_days} days",
            details={"maxRangeDays": settings.analytics_max_range_days},
        )
    return start, end


def _lead_name(first_name: str | None, last_name: str | None) -> str:
    return " ".join(part for part in (first_name, last_name) if part) or "Unknown"


async def lead_analytics(
    session: AsyncSession, user_id: uuid.UUID, *, date_from: datetime, date_to: datetime
) -> dict[str, Any]:
    """Dashboard breakdown of the leads created between ``date_from`` and ``date_to``.

    Every section is scoped to that window: tags and credit pulls count only when
    they belong to a lead created inside it.
    """
    in_range = (Lead.user_id == user_id, Lead.created_at >= date_from, Lead.created_at <= date_to)

    lead_rows = (
        await session.execute(
            select(Lead.lead_id, Lead.created_at, Lead.processed_at, Lead.credit_score, Lead.source).where(*in_range)
        )
    ).all()
    lead_ids = select(Lead.lead_id).where(*in_range)
    tag_rows = (
        await session.execute(
            select(LeadTag.lead_id, LeadTag.tag_type, LeadTag.created_at).where(LeadTag.lead_id.in_(lead_ids))
        )
    ).all()
    pull_rows = (
        await session.execute(
            select(CreditTransaction.created_at, CreditTransaction.cost_in_cents).where(
                CreditTransaction.user_id == user_id,
                CreditTransaction.transaction_type == TRANSACTION_PULL,
                CreditTransaction.lead_id.in_(lead_ids),
            )
        )
    ).all()

    tags_by_lead: dict[uuid.UUID, set[str]] = {}
    for lead_id, tag_type, _ in tag_rows:
        tags_by_lead.setdefault(lead_id, set()).add(tag_type)

    def leads_with(tag_type: str) -> int:
        return sum(1 for tags in tags_by_lead.values() if tag_type in tags)

    total = len(lead_rows)
    processed = sum(1 for row in lead_rows if row.processed_at is not None)
    scores = [row.credit_score for row in lead_rows if row.credit_score is not None]
    overview = {
        "totalLeads": total,
        "processedLeads": processed,
        "unprocessedLeads": total - processed,
        "qualifiedLeads": leads_with(TAG_QUALIFIED),
        "unqualifiedLeads": leads_with(TAG_UNQUALIFIED),
        "whitelistedLeads": leads_with(TAG_WHITELIST),
        "blacklistedLeads": leads_with(TAG_BLACKLIST),
        "averageCreditScore": round(sum(scores) / len(scores)) if scores else None,
        "totalCostSpent": sum(cost for _, cost in pull_rows),
    }

    days: dict[date, dict[str, Any]] = {}
    day = as_utc(date_from).date()
    while day <= as_utc(date_to).date():
        days[day] = {"date": day.isoformat(), "leadsCreated": 0, "leadsProcessed": 0, "qualifiedLeads": 0, "costSpent": 0}
        day += timedelta(days=1)

    def bucket(value: datetime | None) -> dict[str, Any] | None:
        return days.get(as_utc(value).date()) if value is not None else None

    for row in lead_rows:
        if (created := bucket(row.created_at)) is not None:
            created["leadsCreated"] += 1
        if (processed_day := bucket(row.processed_at)) is not None:
            processed_day["leadsProcessed"] += 1
    for _, tag_type, tagged_at in tag_rows:
        if tag_type == TAG_QUALIFIED and (tagged := bucket(tagged_at)) is not None:
            tagged["qualifiedLeads"] += 1
    for pulled_at, cost in pull_rows:
        if (pulled := bucket(pulled_at)) is not None:
            pulled["costSpent"] += cost

    score_distribution = []
    for low, high in CREDIT_SCORE_BANDS:
        count = sum(1 for score in scores if low <= score <= high)
        score_distribution.append({"range": f"{low}-{high}", "count": count, "percentage": _percentage(count, len(scores))})

    tag_totals = {tag_type: 0 for tag_type in TAG_TYPES}
    for _, tag_type, _ in tag_rows:
        tag_totals[tag_type] = tag_totals.get(tag_type, 0) + 1
    tag_distribution = [
        {"tagType": tag_type, "count": count, "percentage": _percentage(count, len(tag_rows))}
        for tag_type, count in tag_totals.items()
        if count
    ]

    sources: dict[str, dict[str, int]] = {}
    for row in lead_rows:
        stats = sources.setdefault(row.source or "unknown", {"count": 0, "qualified": 0})
        stats["count"] += 1
        if TAG_QUALIFIED in tags_by_lead.get(row.lead_id, ()):
            stats["qualified"] += 1
    top_sources = [
        {"source": source, "count": stats["count"], "qualificationRate": _percentage(stats["qualified"], stats["count"])}
        for source, stats in sorted(sources.items(), key=lambda item: (-item[1]["count"], item[0]))
    ][:TOP_SOURCES_LIMIT]

    return {
        "overview": overview,
        "trends": list(days.values()),
        "creditScoreDistribution": score_distribution,
        "tagDistribution": tag_distribution,
        "topSources": top_sources,
        "recentActivity": await recent_activity(session, user_id, lead_ids),
        "dateRange": {"from": as_utc(date_from).isoformat(), "to": as_utc(date_to).isoformat()},
    }


def _activity(
    at: datetime, action: str, details: str, lead_id: uuid.UUID, first_name: str | None, last_name: str | None
) -> tuple[datetime, dict[str, Any]]:
    return as_utc(at), {
        "action": action,
        "details": details,
        "leadId": str(lead_id),
        "leadName": _lead_name(first_name, last_name),
    }


async def recent_activity(session: AsyncSession, user_id: uuid.UUID, lead_ids) -> list[dict[str, Any]]:
    limit = RECENT_ACTIVITY_LIMIT
    created = await session.execute(
        select(Lead.lead_id, Lead.first_name, Lead.last_name, Lead.created_at)
        .where(Lead.lead_id.in_(lead_ids))
        .order_by(Lead.created_at.desc())
        .limit(limit)
    )
    tagged = await session.execute(
        select(Lead.lead_id, Lead.first_name, Lead.last_name, LeadTag.tag_type, LeadTag.created_at)
        .join(LeadTag, LeadTag.lead_id == Lead.lead_id)
        .where(Lead.lead_id.in_(lead_ids))
        .order_by(LeadTag.created_at.desc())
        .limit(limit)
    )
    pulled = await session.execute(
        select(Lead.lead_id, Lead.first_name, Lead.last_name, CreditTransaction.cost_in_cents, CreditTransaction.created_at)
        .join(CreditTransaction, CreditTransaction.lead_id == Lead.lead_id)
        .where(
            Lead.lead_id.in_(lead_ids),
            CreditTransaction.user_id == user_id,
            CreditTransaction.transaction_type == TRANSACTION_PULL,
        )
        .order_by(CreditTransaction.created_at.desc())
        .limit(limit)
    )

    activities: list[tuple[datetime, dict[str, Any]]] = []
    for lead_id, first_name, last_name, at in created.all():
        activities.append(_activity(at, "lead_created", "New lead added", lead_id, first_name, last_name))
    for lead_id, first_name, last_name, tag_type, at in tagged.all():
        activities.append(_activity(at, "tag_applied", f"Tagged as {tag_type}", lead_id, first_name, last_name))
    for lead_id, first_name, last_name, cost, at in pulled.all():
        activities.append(_activity(at, "credit_pull", f"Cost: ${cost / 100:.2f}", lead_id, first_name, last_name))
    activities.sort(key=lambda item: item[0], reverse=True)
    return [{"date": at.isoformat(), **activity} for at, activity in activities[:limit]]
