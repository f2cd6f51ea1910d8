from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from glasswallet.domain.errors import BusinessLogicError, ConflictError, NotFoundError, ValidationError
from glasswallet.domain.leads.db_models import Lead
from glasswallet.domain.leads.service import get_owned_leads
from glasswallet.domain.outbox.db_models import KIND_PIXEL_SYNC
from glasswallet.domain.outbox.service import enqueue_outbox_event
from glasswallet.domain.pixels.adapters import PixelAdapter, PixelAdapterError, PushOutcome, SyncLead
from glasswallet.domain.pixels.db_models import (
    DEFAULT_SYNC_SETTINGS,
    PLATFORM_TYPES,
    STATUS_ACTIVE,
    STATUS_ERROR,
    PixelConnection,
)
from glasswallet.domain.tagging.db_models import TAG_BLACKLIST, TAG_QUALIFIED, TAG_WHITELIST
from glasswallet.domain.tagging.service import mark_tags_synced
from glasswallet.infra.metrics import metrics
from glasswallet.settings import settings
from glasswallet.shared.timeutils import utcnow

logger = logging.getLogger(__name__)

SYNC_TYPES = (TAG_WHITELIST, TAG_QUALIFIED)


@dataclass
class ConnectionSyncResult:
    success: bool
    platform_type: str
    connection_id: uuid.UUID
    connection_name: str
    lead_count: int
    synced_count: int
    failed_count: int
    sync_id: str | None = None
    errors: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    synced_lead_ids: list[uuid.UUID] = field(default_factory=list)
    retry_lead_ids: list[uuid.UUID] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "platformType": self.platform_type,
            "connectionId": str(self.connection_id),
            "connectionName": self.connection_name,
            "leadCount": self.lead_count,
            "syncedCount": self.synced_count,
            "failedCount": self.failed_count,
            "errors": list(self.errors),
            "syncId": self.sync_id,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class SyncReport:
    results: list[ConnectionSyncResult]
    sync_type: str
    total_leads: int
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def summary(self) -> dict[str, Any]:
        return {
            "totalConnections": len(self.results),
            "totalLeads": self.total_leads,
            "totalSynced": sum(result.synced_count for result in self.results),
            "totalFailed": sum(result.failed_count for result in self.results),
            "successfulPlatforms": sum(1 for result in self.results if result.success),
            "syncType": self.sync_type,
            "timestamp": self.timestamp.isoformat(),
        }

    def as_dict(self) -> dict[str, Any]:
        return {"results": [result.as_dict() for result in self.results], "summary": self.summary}


# Connections


async def create_connection(
    session: AsyncSession,
    user_id: uuid.UUID,
    *,
    platform_type: str,
    connection_name: str,
    pixel_id: str | None = None,
    customer_id: str | None = None,
    access_token: str | None = None,
    refresh_token: str | None = None,
    sync_settings: Mapping[str, Any] | None = None,
    connection_status: str | None = None,
    account_info: dict[str, Any] | None = None,
    token_expires_at: datetime | None = None,
) -> PixelConnection:
    if platform_type not in PLATFORM_TYPES:
        raise ValidationError(message=f"Unsupported platform: {platform_type}", details={"allowed": list(PLATFORM_TYPES)})
    connection = PixelConnection(
        user_id=user_id,
        platform_type=platform_type,
        connection_name=connection_name.strip(),
        pixel_id=pixel_id,
        customer_id=customer_id,
        access_token=access_token,
        refresh_token=refresh_token,
        sync_settings={**DEFAULT_SYNC_SETTINGS, **(sync_settings or {})},
        account_info=account_info,
        token_expires_at=token_expires_at,
    )
    if connection_status:
        connection.connection_status = connection_status
    savepoint = await session.begin_nested()
    try:
        session.add(connection)
        await session.flush()
    except IntegrityError as exc:
        await savepoint.rollback()
        raise ConflictError(message=f"A connection named '{connection_name}' already exists") from exc
    else:
        await savepoint.commit()
    logger.info(
        "pixel_connection_created",
        extra={
            "extra": {
                "connection_id": str(connection.connection_id),
                "platform": platform_type,
                "status": connection.connection_status,
            }
        },
    )
    return connection


async def list_connections(session: AsyncSession, user_id: uuid.UUID) -> list[PixelConnection]:
    result = await session.execute(
        select(PixelConnection)
        .where(PixelConnection.user_id == user_id)
        .order_by(PixelConnection.created_at.desc(), PixelConnection.connection_id)
    )
    return list(result.scalars().all())


async def get_connection(session: AsyncSession, user_id: uuid.UUID, connection_id: uuid.UUID) -> PixelConnection:
    connection = await session.scalar(
        select(PixelConnection).where(
            PixelConnection.connection_id == connection_id, PixelConnection.user_id == user_id
        )
    )
    if connection is None:
        raise NotFoundError.for_resource("Connection", details={"connectionId": str(connection_id)})
    return connection


async def update_connection(
    session: AsyncSession,
    user_id: uuid.UUID,
    connection_id: uuid.UUID,
    changes: Mapping[str, Any],
) -> PixelConnection:
    connection = await get_connection(session, user_id, connection_id)
    for attr in ("connection_name", "pixel_id", "customer_id", "access_token", "refresh_token", "connection_status"):
        if changes.get(attr) is not None:
            setattr(connection, attr, changes[attr])
    if changes.get("sync_settings") is not None:
        connection.sync_settings = {**connection.effective_sync_settings, **changes["sync_settings"]}
    connection.updated_at = utcnow()
    savepoint = await session.begin_nested()
    try:
        await session.flush()
    except IntegrityError as exc:
        await savepoint.rollback()
        raise ConflictError(message="A connection with this name already exists") from exc
    else:
        await savepoint.commit()
    return connection


async def delete_connection(session: AsyncSession, user_id: uuid.UUID, connection_id: uuid.UUID) -> None:
    connection = await get_connection(session, user_id, connection_id)
    await session.delete(connection)
    await session.flush()
    logger.info("pixel_connection_deleted", extra={"extra": {"connection_id": str(connection_id)}})


async def test_connection(
    session: AsyncSession,
    user_id: uuid.UUID,
    connection_id: uuid.UUID,
    adapters: Mapping[str, PixelAdapter],
) -> dict[str, Any]:
    connection = await get_connection(session, user_id, connection_id)
    adapter = adapters[connection.platform_type]
    outcome = await adapter.test_connection(connection)
    previous = connection.connection_status
    connection.connection_status = STATUS_ACTIVE if outcome.success else STATUS_ERROR
    connection.last_error = None if outcome.success else outcome.message[:255]
    connection.updated_at = utcnow()
    await session.flush()
    logger.info(
        "pixel_connection_tested",
        extra={
            "extra": {
                "connection_id": str(connection_id),
                "platform": connection.platform_type,
                "success": outcome.success,
                "latency_ms": outcome.latency_ms,
            }
        },
    )
    return {
        "testResult": {
            "success": outcome.success,
            "message": outcome.message,
            "latencyMs": outcome.latency_ms,
        },
        "statusUpdated": previous != connection.connection_status,
        "newStatus": connection.connection_status,
    }


# Sync orchestration


def to_sync_lead(lead: Lead) -> SyncLead:
    return SyncLead(
        lead_id=lead.lead_id,
        email=lead.email,
        first_name=lead.first_name,
        last_name=lead.last_name,
        phone=lead.phone,
        credit_score=lead.credit_score,
        tags=tuple(lead.tag_types),
    )


def partition_eligible(
    sync_settings: Mapping[str, Any], leads: Sequence[SyncLead]
) -> tuple[list[SyncLead], list[str]]:
    eligible: list[SyncLead] = []
    reasons: list[str] = []
    minimum = sync_settings.get("minimumCreditScore")
    for lead in leads:
        if sync_settings.get("excludeBlacklisted", True) and TAG_BLACKLIST in lead.tags:
            reasons.append(f"Lead {lead.lead_id} excluded: blacklisted")
            continue
        if minimum is not None and (lead.credit_score is None or lead.credit_score < minimum):
            reasons.append(f"Lead {lead.lead_id} excluded: credit score below {minimum}")
            continue
        eligible.append(lead)
    return eligible, reasons


def accepted_lead_ids(outcome: PushOutcome, eligible: Sequence[SyncLead]) -> list[uuid.UUID]:
    """Leads the platform confirmed; a counts-only partial result confirms none."""
    if outcome.synced_lead_ids is not None:
        pushed = {lead.lead_id for lead in eligible}
        return [lead_id for lead_id in dict.fromkeys(outcome.synced_lead_ids) if lead_id in pushed]
    if outcome.synced_count > 0 and outcome.failed_count == 0:
        return [lead.lead_id for lead in eligible]
    return []


async def _push_to_connection(
    adapter: PixelAdapter,
    connection: PixelConnection,
    leads: Sequence[SyncLead],
    sync_type: str,
) -> ConnectionSyncResult:
    eligible, exclusions = partition_eligible(connection.effective_sync_settings, leads)
    eligible_ids = [lead.lead_id for lead in eligible]
    base = {
        "platform_type": connection.platform_type,
        "connection_id": connection.connection_id,
        "connection_name": connection.connection_name,
        "lead_count": len(leads),
    }
    if not eligible:
        return ConnectionSyncResult(
            success=False,
            synced_count=0,
            failed_count=len(leads),
            errors=exclusions or ["No eligible leads for this connection"],
            **base,
        )
    try:
        outcome: PushOutcome = await adapter.push_leads(connection, eligible, sync_type)
    except PixelAdapterError as exc:
        return ConnectionSyncResult(
            success=False,
            synced_count=0,
            failed_count=len(leads),
            errors=[exc.message, *exclusions],
            retry_lead_ids=eligible_ids,
            **base,
        )
    except Exception as exc:  # noqa: BLE001
        logger.exception(
            "pixel_sync_adapter_crashed",
            extra={"extra": {"connection_id": str(connection.connection_id), "platform": connection.platform_type}},
        )
        return ConnectionSyncResult(
            success=False,
            synced_count=0,
            failed_count=len(leads),
            errors=[f"{connection.platform_type} sync failed: {type(exc).__name__}", *exclusions],
            retry_lead_ids=eligible_ids,
            **base,
        )
    accepted = accepted_lead_ids(outcome, eligible)
    confirmed = set(accepted)
    return ConnectionSyncResult(
        success=outcome.synced_count > 0,
        synced_count=outcome.synced_count,
        failed_count=outcome.failed_count + len(exclusions),
        sync_id=outcome.sync_id,
        errors=[*outcome.errors, *exclusions],
        metadata=outcome.metadata,
        synced_lead_ids=accepted,
        retry_lead_ids=[lead_id for lead_id in eligible_ids if lead_id not in confirmed],
        **base,
    )


async def _enqueue_retry(
    session: AsyncSession, user_id: uuid.UUID, result: ConnectionSyncResult, sync_type: str
) -> None:
    await enqueue_outbox_event(
        session,
        user_id=user_id,
        kind=KIND_PIXEL_SYNC,
        payload={
            "connectionId": str(result.connection_id),
            "leadIds": [str(lead_id) for lead_id in result.retry_lead_ids],
            "syncType": sync_type,
        },
        dedupe_key=f"pixel_sync:{result.connection_id}:{uuid.uuid4()}",
    )


async def _record_results(
    session: AsyncSession,
    user_id: uuid.UUID,
    connections: Sequence[PixelConnection],
    results: Sequence[ConnectionSyncResult],
    sync_type: str,
    *,
    enqueue_retry: bool,
) -> None:
    for connection, result in zip(connections, results):
        metrics.record_pixel_sync(connection.platform_type, "success" if result.success else "failure")
        if result.success and result.synced_count > 0:
            connection.last_sync_at = result.timestamp
            connection.last_error = None
            await mark_tags_synced(session, result.synced_lead_ids, [sync_type], synced_at=result.timestamp)
            logger.info(
                "pixel_sync_connection_succeeded",
                extra={
                    "extra": {
                        "connection_id": str(connection.connection_id),
                        "platform": connection.platform_type,
                        "synced": result.synced_count,
                        "failed": result.failed_count,
                        "pending_retry": len(result.retry_lead_ids),
                    }
                },
            )
        else:
            connection.last_error = (result.errors[0] if result.errors else "sync_failed")[:255]
            logger.warning(
                "pixel_sync_connection_failed",
                extra={
                    "extra": {
                        "connection_id": str(connection.connection_id),
                        "platform": connection.platform_type,
                        "error": connection.last_error,
                    }
                },
            )
        if enqueue_retry and result.retry_lead_ids:
            await _enqueue_retry(session, user_id, result, sync_type)
    await session.flush()


async def _load_connections(
    session: AsyncSession, user_id: uuid.UUID, connection_ids: Iterable[uuid.UUID]
) -> list[PixelConnection]:
    wanted = list(dict.fromkeys(connection_ids))
    result = await session.execute(
        select(PixelConnection).where(
            PixelConnection.user_id == user_id, PixelConnection.connection_id.in_(wanted)
        )
    )
    found = {connection.connection_id: connection for connection in result.scalars().all()}
    missing = [str(connection_id) for connection_id in wanted if connection_id not in found]
    if missing:
        raise ValidationError(
            message="Some connections were not found or do not belong to you",
            details={"missingConnectionIds": missing},
        )
    return [found[connection_id] for connection_id in wanted]


async def load_sync_connections(
    session: AsyncSession, user_id: uuid.UUID, connection_ids: Sequence[uuid.UUID]
) -> list[PixelConnection]:
    """Owned, active connections in request order; anything else rejects the whole request."""
    if not connection_ids:
        raise ValidationError(message="At least one connection is required")
    connections = await _load_connections(session, user_id, connection_ids)
    inactive = [connection for connection in connections if connection.connection_status != STATUS_ACTIVE]
    if inactive:
        names = [connection.connection_name for connection in inactive]
        raise BusinessLogicError(
            message=f"Cannot sync to inactive connections: {', '.join(names)}",
            code="INACTIVE_CONNECTIONS",
            details={"inactiveConnections": names},
        )
    return connections


async def sync_leads(
    session: AsyncSession,
    user_id: uuid.UUID,
    *,
    lead_ids: Sequence[uuid.UUID],
    connection_ids: Sequence[uuid.UUID],
    sync_type: str,
    adapters: Mapping[str, PixelAdapter],
    enqueue_retry: bool = True,
    max_leads: int | None = None,
) -> SyncReport:
    """Push leads to every requested connection.

    Validation is all-or-nothing: unknown ids or any inactive connection reject
    the request before a platform is called. Platform calls fan out concurrently
    and each connection succeeds or fails on its own.
    """
    if sync_type not in SYNC_TYPES:
        raise ValidationError(message=f"Invalid sync type: {sync_type}", details={"allowed": list(SYNC_TYPES)})
    limit = max_leads or settings.pixel_sync_max_leads
    if len(lead_ids) > limit:
        raise ValidationError(
            message=f"Cannot sync more than {limit} leads at once",
            details={"maxLeads": limit},
        )

    connections = await load_sync_connections(session, user_id, connection_ids)
    leads = await get_owned_leads(session, user_id, lead_ids, refresh=True)
    snapshot = [to_sync_lead(lead) for lead in leads]

    results = await asyncio.gather(
        *(
            _push_to_connection(adapters[connection.platform_type], connection, snapshot, sync_type)
            for connection in connections
        )
    )
    await _record_results(
        session,
        user_id,
        connections,
        results,
        sync_type,
        enqueue_retry=enqueue_retry,
    )
    report = SyncReport(results=list(results), sync_type=sync_type, total_leads=len(leads))
    logger.info("pixel_sync_completed", extra={"extra": {"user_id": str(user_id), **report.summary}})
    return report


async def retry_connection_sync(
    session: AsyncSession,
    user_id: uuid.UUID,
    *,
    connection_id: uuid.UUID,
    lead_ids: Sequence[uuid.UUID],
    sync_type: str,
    adapters: Mapping[str, PixelAdapter],
) -> ConnectionSyncResult:
    """Outbox re-delivery of one failed connection; failures go back to the outbox, not a new event."""
    try:
        report = await sync_leads(
            session,
            user_id,
            lead_ids=lead_ids,
            connection_ids=[connection_id],
            sync_type=sync_type,
            adapters=adapters,
            enqueue_retry=False,
        )
    except (BusinessLogicError, ValidationError) as exc:
        return ConnectionSyncResult(
            success=False,
            platform_type="unknown",
            connection_id=connection_id,
            connection_name="",
            lead_count=len(lead_ids),
            synced_count=0,
            failed_count=len(lead_ids),
            errors=[exc.message],
        )
    return report.results[0]


async def active_connections(
    session: AsyncSession,
    user_id: uuid.UUID,
    *,
    connection_ids: Sequence[uuid.UUID] | None = None,
    auto_sync_only: bool = False,
) -> list[PixelConnection]:
    stmt = select(PixelConnection).where(
        PixelConnection.user_id == user_id, PixelConnection.connection_status == STATUS_ACTIVE
    )
    if connection_ids:
        stmt = stmt.where(PixelConnection.connection_id.in_(list(connection_ids)))
    result = await session.execute(stmt.order_by(PixelConnection.created_at, PixelConnection.connection_id))
    connections = list(result.scalars().all())
    if auto_sync_only:
        connections = [c for c in connections if c.effective_sync_settings.get("autoSync")]
    return connections


async def auto_sync_lead(
    session: AsyncSession,
    user_id: uuid.UUID,
    lead: Lead,
    tag_types: Sequence[str],
    adapters: Mapping[str, PixelAdapter],
) -> SyncReport | None:
    """Sync one freshly tagged lead to the user's auto-sync connections."""
    if TAG_QUALIFIED in tag_types:
        sync_type = TAG_QUALIFIED
    elif TAG_WHITELIST in tag_types:
        sync_type = TAG_WHITELIST
    else:
        return None
    connections = await active_connections(session, user_id, auto_sync_only=True)
    if not connections:
        return None
    return await sync_leads(
        session,
        user_id,
        lead_ids=[lead.lead_id],
        connection_ids=[connection.connection_id for connection in connections],
        sync_type=sync_type,
        adapters=adapters,
    )
