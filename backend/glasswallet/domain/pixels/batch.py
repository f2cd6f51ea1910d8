"""Filter-driven pixel sync over a tenant's whole lead book."""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from glasswallet.domain.errors import BusinessLogicError, DomainError, ValidationError
from glasswallet.domain.leads.db_models import Lead
from glasswallet.domain.leads.service import get_owned_leads
from glasswallet.domain.pixels.adapters import PixelAdapter, generate_sync_id
from glasswallet.domain.pixels.db_models import PixelConnection
from glasswallet.domain.pixels.service import (
    ConnectionSyncResult,
    load_sync_connections,
    sync_leads,
)
from glasswallet.domain.tagging.db_models import TAG_QUALIFIED, TAG_TYPES, TAG_WHITELIST, LeadTag
from glasswallet.settings import settings
from glasswallet.shared.timeutils import as_utc

logger = logging.getLogger(__name__)

DRY_RUN_SAMPLE_SIZE = 10
ESTIMATED_SECONDS_PER_BATCH = 30


@dataclass
class LeadFilters:
    tag_types: list[str] = field(default_factory=list)
    credit_score_min: int | None = None
    credit_score_max: int | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    include_untagged: bool = False

    def validate(self) -> None:
        invalid = [tag for tag in self.tag_types if tag not in TAG_TYPES]
        if invalid:
            raise ValidationError(message="Unknown tag types in filters", details={"invalid": invalid})
        if (
            self.credit_score_min is not None
            and self.credit_score_max is not None
            and self.credit_score_min > self.credit_score_max
        ):
            raise ValidationError(message="creditScoreMin must not exceed creditScoreMax")
        if self.created_from and self.created_to and as_utc(self.created_from) > as_utc(self.created_to):
            raise ValidationError(message="dateRange.from must not be after dateRange.to")

    @property
    def sync_type(self) -> str:
        return TAG_WHITELIST if TAG_WHITELIST in self.tag_types else TAG_QUALIFIED

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"includeUntagged": self.include_untagged}
        if self.tag_types:
            payload["tagTypes"] = list(self.tag_types)
        if self.credit_score_min is not None:
            payload["creditScoreMin"] = self.credit_score_min
        if self.credit_score_max is not None:
            payload["creditScoreMax"] = self.credit_score_max
        if self.created_from or self.created_to:
            payload["dateRange"] = {
                "from": self.created_from.isoformat() if self.created_from else None,
                "to": self.created_to.isoformat() if self.created_to else None,
            }
        return payload


def _matching_leads(user_id: uuid.UUID, filters: LeadFilters):
    stmt = select(Lead.lead_id).where(Lead.user_id == user_id)
    if filters.credit_score_min is not None:
        stmt = stmt.where(Lead.credit_score >= filters.credit_score_min)
    if filters.credit_score_max is not None:
        stmt = stmt.where(Lead.credit_score <= filters.credit_score_max)
    if filters.created_from is not None:
        stmt = stmt.where(Lead.created_at >= filters.created_from)
    if filters.created_to is not None:
        stmt = stmt.where(Lead.created_at <= filters.created_to)
    tagged = select(LeadTag.tag_id).where(LeadTag.lead_id == Lead.lead_id)
    if filters.tag_types:
        stmt = stmt.where(tagged.where(LeadTag.tag_type.in_(filters.tag_types)).exists())
    elif not filters.include_untagged:
        stmt = stmt.where(tagged.exists())
    return stmt


async def count_matching_leads(session: AsyncSession, user_id: uuid.UUID, filters: LeadFilters) -> int:
    stmt = _matching_leads(user_id, filters).subquery()
    return int(await session.scalar(select(func.count()).select_from(stmt)) or 0)


async def matching_lead_ids(session: AsyncSession, user_id: uuid.UUID, filters: LeadFilters) -> list[uuid.UUID]:
    result = await session.execute(_matching_leads(user_id, filters).order_by(Lead.created_at, Lead.lead_id))
    return list(result.scalars().all())


def _connection_summary(connection: PixelConnection) -> dict[str, Any]:
    return {
        "connectionId": str(connection.connection_id),
        "connectionName": connection.connection_name,
        "platformType": connection.platform_type,
    }


@dataclass
class BatchSyncReport:
    batch_sync_id: str
    sync_type: str
    filters: LeadFilters
    connections: list[PixelConnection]
    total_leads: int
    batch_size: int
    results: list[ConnectionSyncResult] = field(default_factory=list)
    batches_processed: int = 0
    successful_batches: int = 0
    duration_ms: int = 0

    def platform_stats(self) -> list[dict[str, Any]]:
        stats = []
        for connection in self.connections:
            mine = [result for result in self.results if result.connection_id == connection.connection_id]
            succeeded = sum(1 for result in mine if result.success)
            stats.append(
                {
                    **_connection_summary(connection),
                    "totalSynced": sum(result.synced_count for result in mine),
                    "totalFailed": sum(result.failed_count for result in mine),
                    "successRate": round(succeeded / len(mine) * 100, 1) if mine else 0.0,
                }
            )
        return stats

    def as_dict(self) -> dict[str, Any]:
        return {
            "batchSync": True,
            "batchSyncId": self.batch_sync_id,
            "syncType": self.sync_type,
            "totalLeads": self.total_leads,
            "batchSize": self.batch_size,
            "totalSynced": sum(result.synced_count for result in self.results),
            "totalFailed": sum(result.failed_count for result in self.results),
            "batchesProcessed": self.batches_processed,
            "successfulBatches": self.successful_batches,
            "durationMs": self.duration_ms,
            "platformStats": self.platform_stats(),
            "syncResults": [result.as_dict() for result in self.results],
            "filters": self.filters.as_dict(),
        }


def _failed_batch(
    connections: list[PixelConnection], lead_count: int, message: str, batch_number: int
) -> list[ConnectionSyncResult]:
    return [
        ConnectionSyncResult(
            success=False,
            platform_type=connection.platform_type,
            connection_id=connection.connection_id,
            connection_name=connection.connection_name,
            lead_count=lead_count,
            synced_count=0,
            failed_count=lead_count,
            errors=[message],
            metadata={"batch": batch_number},
        )
        for connection in connections
    ]


async def batch_sync(
    session: AsyncSession,
    user_id: uuid.UUID,
    *,
    connection_ids: list[uuid.UUID],
    filters: LeadFilters,
    adapters: Mapping[str, PixelAdapter],
    batch_size: int = 1000,
    dry_run: bool = False,
) -> dict[str, Any]:
    """Select the tenant's leads by filter and push them in fixed-size batches.

    Connections are checked before any lead is read. A failed batch is reported
    per connection and the run moves on to the next batch. ``dry_run`` returns
    the plan and a sample without calling any platform.
    """
    max_batch = settings.pixel_batch_sync_max_batch_size
    if batch_size < 1 or batch_size > max_batch:
        raise ValidationError(
            message=f"Batch size must be between 1 and {max_batch} leads",
            details={"maxBatchSize": max_batch},
        )
    filters.validate()
    connections = await load_sync_connections(session, user_id, connection_ids)

    total = await count_matching_leads(session, user_id, filters)
    if total == 0:
        return {
            "dryRun": dry_run,
            "totalLeads": 0,
            "batchCount": 0,
            "syncResults": [],
            "message": "No leads match the specified filters",
            "filters": filters.as_dict(),
        }
    if total > settings.pixel_batch_sync_max_leads:
        raise BusinessLogicError(
            message=f"Too many leads selected for batch sync (max {settings.pixel_batch_sync_max_leads})",
            code="BATCH_SYNC_TOO_LARGE",
            details={"totalLeads": total, "maxLeads": settings.pixel_batch_sync_max_leads},
        )

    lead_ids = await matching_lead_ids(session, user_id, filters)
    batch_count = math.ceil(len(lead_ids) / batch_size)
    if dry_run:
        sample = await get_owned_leads(session, user_id, lead_ids[:DRY_RUN_SAMPLE_SIZE])
        return {
            "dryRun": True,
            "totalLeads": len(lead_ids),
            "estimatedBatches": batch_count,
            "estimatedDurationSeconds": batch_count * ESTIMATED_SECONDS_PER_BATCH,
            "syncType": filters.sync_type,
            "connections": [_connection_summary(connection) for connection in connections],
            "sampleLeads": [
                {
                    "leadId": str(lead.lead_id),
                    "email": lead.email,
                    "creditScore": lead.credit_score,
                    "tags": lead.tag_types,
                }
                for lead in sample
            ],
            "filters": filters.as_dict(),
        }

    report = BatchSyncReport(
        batch_sync_id=generate_sync_id("batch"),
        sync_type=filters.sync_type,
        filters=filters,
        connections=connections,
        total_leads=len(lead_ids),
        batch_size=batch_size,
    )
    started = time.monotonic()
    for batch_number, start in enumerate(range(0, len(lead_ids), batch_size), start=1):
        chunk = lead_ids[start : start + batch_size]
        try:
            sync_report = await sync_leads(
                session,
                user_id,
                lead_ids=chunk,
                connection_ids=[connection.connection_id for connection in connections],
                sync_type=report.sync_type,
                adapters=adapters,
                max_leads=batch_size,
            )
        except DomainError as exc:
            logger.warning(
                "pixel_batch_sync_batch_failed",
                extra={"extra": {"batch": batch_number, "code": exc.code, "error": exc.message}},
            )
            report.results.extend(_failed_batch(connections, len(chunk), exc.message, batch_number))
        else:
            report.results.extend(sync_report.results)
            if all(result.success for result in sync_report.results):
                report.successful_batches += 1
        report.batches_processed += 1
        if settings.pixel_batch_sync_pause_seconds > 0 and start + batch_size < len(lead_ids):
            await asyncio.sleep(settings.pixel_batch_sync_pause_seconds)
    report.duration_ms = int((time.monotonic() - started) * 1000)

    logger.info(
        "pixel_batch_sync_completed",
        extra={
            "extra": {
                "user_id": str(user_id),
                "batch_sync_id": report.batch_sync_id,
                "total_leads": report.total_leads,
                "batches": report.batches_processed,
                "successful_batches": report.successful_batches,
            }
        },
    )
    return report.as_dict()
