from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Iterable
from urllib.parse import urlsplit

import httpx
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from glasswallet.domain.errors import NotFoundError, ValidationError
from glasswallet.domain.outbox.db_models import KIND_PIXEL_SYNC, KIND_WEBHOOK, OutboxEvent
from glasswallet.infra.logging import clear_log_context, update_log_context
from glasswallet.infra.metrics import metrics
from glasswallet.settings import settings
from glasswallet.shared.timeutils import utcnow

logger = logging.getLogger(__name__)

PENDING_STATUSES = {"pending", "retry"}
OUTBOX_STATUSES = ("pending", "retry", "sent", "dead")


def is_webhook_url(url: Any) -> bool:
    if not isinstance(url, str):
        return False
    parts = urlsplit(url.strip())
    return parts.scheme in ("http", "https") and bool(parts.netloc)


class OutboxAdapters:
    def __init__(
        self,
        *,
        webhook_transport: httpx.AsyncBaseTransport | None = None,
        pixel_adapters: dict[str, Any] | None = None,
    ) -> None:
        self.webhook_transport = webhook_transport
        self.pixel_adapters = pixel_adapters or {}


def _backoff_delay(attempt: int) -> timedelta:
    delay = settings.outbox_base_backoff_seconds * max(1, 2 ** max(0, attempt - 1))
    return timedelta(seconds=delay)


def _next_attempt(attempt: int) -> datetime:
    return utcnow() + _backoff_delay(attempt)


async def enqueue_outbox_event(
    session: AsyncSession,
    *,
    user_id: uuid.UUID,
    kind: str,
    payload: dict,
    dedupe_key: str,
) -> OutboxEvent:
    """Insert a pending event once per ``(user_id, dedupe_key)``; repeats return the first row."""
    values = {
        "event_id": str(uuid.uuid4()),
        "user_id": user_id,
        "kind": kind,
        "payload_json": payload,
        "dedupe_key": dedupe_key,
        "status": "pending",
        "attempts": 0,
        "next_attempt_at": utcnow(),
        "last_error": None,
    }
    bind = session.get_bind()
    dialect = bind.dialect.name if bind else ""
    insert = pg_insert if dialect == "postgresql" else sqlite_insert
    stmt = insert(OutboxEvent).values(**values).on_conflict_do_nothing(
        index_elements=["user_id", "dedupe_key"]
    )
    await session.execute(stmt)
    event = await session.scalar(
        select(OutboxEvent).where(OutboxEvent.user_id == user_id, OutboxEvent.dedupe_key == dedupe_key)
    )
    if event is None:
        raise RuntimeError("outbox_enqueue_failed")
    logger.info(
        "outbox_event_enqueued",
        extra={"extra": {"event_id": event.event_id, "kind": kind, "deduplicated": event.event_id != values["event_id"]}},
    )
    return event


async def enqueue_webhook(
    session: AsyncSession,
    *,
    user_id: uuid.UUID,
    url: str,
    payload: dict[str, Any],
    dedupe_key: str,
    headers: dict[str, str] | None = None,
    timeout: float | None = None,
) -> OutboxEvent:
    if not is_webhook_url(url):
        raise ValidationError(message="Webhook URL must use http or https", details={"url": url})
    return await enqueue_outbox_event(
        session,
        user_id=user_id,
        kind=KIND_WEBHOOK,
        payload={
            "url": url,
            "payload": payload,
            "headers": headers or {},
            "timeout": timeout or settings.widget_webhook_timeout_seconds,
        },
        dedupe_key=dedupe_key,
    )


async def _deliver_webhook(adapters: OutboxAdapters, payload: dict) -> tuple[bool, str | None]:
    url = payload.get("url")
    body = payload.get("payload") or {}
    if not url:
        return False, "missing_url"
    headers = {"User-Agent": settings.webhook_user_agent, **(payload.get("headers") or {})}
    timeout = float(payload.get("timeout") or settings.widget_webhook_timeout_seconds)
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=adapters.webhook_transport) as client:
            response = await client.post(url, json=body, headers=headers)
    except httpx.HTTPError as exc:
        metrics.record_webhook_delivery("error")
        return False, type(exc).__name__
    if 200 <= response.status_code < 300:
        metrics.record_webhook_delivery("sent")
        return True, None
    metrics.record_webhook_delivery("rejected")
    return False, f"status_{response.status_code}"


async def _deliver_pixel_sync(
    session: AsyncSession, event: OutboxEvent, adapters: OutboxAdapters
) -> tuple[bool, str | None]:
    from glasswallet.domain.pixels.service import retry_connection_sync  # lazy import

    payload = event.payload_json or {}
    connection_id = payload.get("connectionId")
    lead_ids = payload.get("leadIds") or []
    if not connection_id or not lead_ids:
        return False, "missing_payload"
    result = await retry_connection_sync(
        session,
        event.user_id,
        connection_id=uuid.UUID(str(connection_id)),
        lead_ids=[uuid.UUID(str(lead_id)) for lead_id in lead_ids],
        sync_type=payload.get("syncType") or "qualified",
        adapters=adapters.pixel_adapters,
    )
    if result.success and not result.retry_lead_ids:
        return True, None
    if result.success:
        event.payload_json = {**payload, "leadIds": [str(lead_id) for lead_id in result.retry_lead_ids]}
    return False, (result.errors[0] if result.errors else "sync_failed")[:255]


async def _deliver_event(
    session: AsyncSession, event: OutboxEvent, adapters: OutboxAdapters
) -> tuple[bool, str | None]:
    if event.kind == KIND_WEBHOOK:
        return await _deliver_webhook(adapters, event.payload_json)
    if event.kind == KIND_PIXEL_SYNC:
        return await _deliver_pixel_sync(session, event, adapters)
    return False, "unknown_kind"


async def deliver_outbox_event(
    session: AsyncSession, event: OutboxEvent, adapters: OutboxAdapters
) -> tuple[bool, str | None]:
    attempts = (event.attempts or 0) + 1
    event.attempts = attempts
    update_log_context(outbox_event_id=event.event_id, outbox_kind=event.kind)
    delivered, error = await _deliver_event(session, event, adapters)
    if delivered:
        event.status = "sent"
        event.next_attempt_at = None
        event.last_error = None
    else:
        event.last_error = (error or "failed")[:255]
        if attempts >= settings.outbox_max_attempts:
            event.status = "dead"
            event.next_attempt_at = None
            logger.warning(
                "outbox_event_dead",
                extra={"extra": {"event_id": event.event_id, "kind": event.kind, "error": event.last_error}},
            )
        else:
            event.status = "retry"
            event.next_attempt_at = _next_attempt(attempts)
            logger.info(
                "outbox_event_retry_scheduled",
                extra={"extra": {"event_id": event.event_id, "attempts": attempts, "error": event.last_error}},
            )
    await session.flush()
    return delivered, event.last_error


async def process_outbox(session: AsyncSession, adapters: OutboxAdapters, *, limit: int | None = None) -> dict[str, int]:
    now = utcnow()
    result = await session.execute(
        select(OutboxEvent)
        .where(OutboxEvent.status.in_(PENDING_STATUSES), OutboxEvent.next_attempt_at <= now)
        .order_by(OutboxEvent.created_at)
        .limit(limit or settings.outbox_batch_size)
    )
    events = result.scalars().all()
    sent = 0
    dead = 0
    for event in events:
        try:
            delivered, _ = await deliver_outbox_event(session, event, adapters)
            if delivered:
                sent += 1
            elif event.status == "dead":
                dead += 1
        finally:
            clear_log_context()
    if events:
        await session.commit()
    await _record_outbox_depth(session)
    return {"sent": sent, "dead": dead, "pending": len(events)}


async def _record_outbox_depth(session: AsyncSession) -> None:
    counts = await outbox_counts_by_status(session, ("pending", "retry", "dead"))
    for status, count in counts.items():
        metrics.set_outbox_depth(status, count)


async def outbox_counts_by_status(
    session: AsyncSession, statuses: Iterable[str], *, user_id: uuid.UUID | None = None
) -> dict[str, int]:
    statuses = list(statuses)
    counts: dict[str, int] = {status: 0 for status in statuses}
    stmt = select(OutboxEvent.status, func.count()).where(OutboxEvent.status.in_(statuses))
    if user_id is not None:
        stmt = stmt.where(OutboxEvent.user_id == user_id)
    result = await session.execute(stmt.group_by(OutboxEvent.status))
    for status, count in result.all():
        if status in counts:
            counts[status] = int(count)
    return counts


async def list_outbox_events(
    session: AsyncSession,
    user_id: uuid.UUID,
    *,
    status: str | None = None,
    limit: int = 50,
) -> list[OutboxEvent]:
    if status is not None and status not in OUTBOX_STATUSES:
        raise ValidationError(message=f"Invalid status: {status}", details={"allowed": list(OUTBOX_STATUSES)})
    stmt = select(OutboxEvent).where(OutboxEvent.user_id == user_id)
    if status is not None:
        stmt = stmt.where(OutboxEvent.status == status)
    result = await session.execute(stmt.order_by(OutboxEvent.created_at.desc()).limit(limit))
    return list(result.scalars().all())


async def get_outbox_event(session: AsyncSession, user_id: uuid.UUID, event_id: str) -> OutboxEvent:
    event = await session.scalar(
        select(OutboxEvent).where(OutboxEvent.event_id == event_id, OutboxEvent.user_id == user_id)
    )
    if event is None:
        raise NotFoundError.for_resource("Outbox event", details={"eventId": event_id})
    return event


async def replay_outbox_event(session: AsyncSession, event: OutboxEvent) -> None:
    event.status = "pending"
    event.attempts = 0
    event.next_attempt_at = utcnow()
    event.last_error = None
    await session.commit()
    logger.info("outbox_event_replayed", extra={"extra": {"event_id": event.event_id, "kind": event.kind}})
