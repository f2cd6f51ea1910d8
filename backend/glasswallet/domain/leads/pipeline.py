"""Lead workflows spanning credit pulls, tagging, pixel sync and webhook events."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from glasswallet.domain.credit import providers
from glasswallet.domain.credit.service import LeadCreditPull, pull_credit_for_lead
from glasswallet.domain.errors import DomainError
from glasswallet.domain.leads.db_models import Lead
from glasswallet.domain.leads.service import get_lead
from glasswallet.domain.outbox.service import enqueue_webhook, is_webhook_url
from glasswallet.domain.pixels.adapters import PixelAdapter
from glasswallet.domain.pixels.service import SyncReport, active_connections, auto_sync_lead, sync_leads
from glasswallet.domain.tagging.db_models import TAG_QUALIFIED, TAG_WHITELIST, LeadTag
from glasswallet.domain.tagging.service import AutoTagOutcome, apply_auto_tagging, upsert_tag
from glasswallet.shared.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class QualificationOutcome:
    pull: LeadCreditPull
    tagging: AutoTagOutcome
    sync_report: SyncReport | None = None
    webhook_event_ids: list[str] = field(default_factory=list)

    @property
    def lead(self) -> Lead:
        return self.pull.lead


def event_payload(event_name: str, lead: Lead, tag_types: list[str]) -> dict[str, Any]:
    return {
        "event": event_name,
        "leadId": str(lead.lead_id),
        "creditScore": lead.credit_score,
        "incomeEstimate": lead.income_estimate,
        "tags": tag_types,
        "processedAt": lead.processed_at.isoformat() if lead.processed_at else None,
        "timestamp": utcnow().isoformat(),
    }


async def sync_after_tagging(
    session: AsyncSession,
    user_id: uuid.UUID,
    lead: Lead,
    tag_types: list[str],
    adapters: Mapping[str, PixelAdapter],
) -> SyncReport | None:
    if not tag_types:
        return None
    try:
        return await auto_sync_lead(session, user_id, lead, tag_types, adapters)
    except DomainError as exc:
        logger.warning(
            "auto_sync_skipped",
            extra={"extra": {"lead_id": str(lead.lead_id), "code": exc.code, "error": exc.message}},
        )
        return None


async def qualify_lead(
    session: AsyncSession,
    user_id: uuid.UUID,
    lead_id: uuid.UUID,
    *,
    provider: providers.CreditProvider,
    adapters: Mapping[str, PixelAdapter],
    signals: Mapping[str, Any] | None = None,
    sync_all_tags: bool = False,
) -> QualificationOutcome:
    """Pull credit for a stored lead and act on the resulting tag decisions.

    Decisions marked ``syncToPixels`` (every decision when ``sync_all_tags``)
    go to the user's auto-sync connections. Webhook events with a destination
    are enqueued on the outbox; events without a usable http(s) one are only logged.
    """
    pull = await pull_credit_for_lead(session, user_id, lead_id, provider)
    tagging = await apply_auto_tagging(session, user_id, pull.lead, signals)
    evaluation = tagging.evaluation
    sync_types = evaluation.tag_types if sync_all_tags else evaluation.sync_tag_types
    report = await sync_after_tagging(session, user_id, pull.lead, sync_types, adapters)

    event_ids: list[str] = []
    for event in evaluation.webhook_events:
        if not event.url:
            logger.info(
                "webhook_event_without_destination",
                extra={"extra": {"event": event.name, "lead_id": str(lead_id)}},
            )
            continue
        if not is_webhook_url(event.url):
            logger.warning(
                "webhook_event_invalid_destination",
                extra={"extra": {"event": event.name, "lead_id": str(lead_id), "rule_id": str(event.rule_id)}},
            )
            continue
        outbox_event = await enqueue_webhook(
            session,
            user_id=user_id,
            url=event.url,
            payload=event_payload(event.name, pull.lead, evaluation.tag_types),
            dedupe_key=f"{event.name}:{lead_id}:{pull.transaction.transaction_id}",
        )
        event_ids.append(outbox_event.event_id)
        logger.info(
            "webhook_enqueued",
            extra={"extra": {"event": event.name, "lead_id": str(lead_id), "event_id": outbox_event.event_id}},
        )
    return QualificationOutcome(pull=pull, tagging=tagging, sync_report=report, webhook_event_ids=event_ids)


@dataclass
class TagAndSyncOutcome:
    lead: Lead
    tags: list[tuple[LeadTag, bool]]
    sync_type: str
    report: SyncReport | None = None
    attempted: bool = False
    sync_error: str | None = None

    def pixel_sync(self) -> dict[str, Any]:
        results = [result.as_dict() for result in self.report.results] if self.report else []
        payload: dict[str, Any] = {
            "attempted": self.attempted,
            "syncType": self.sync_type,
            "results": results,
            "successfulPlatforms": sum(1 for result in results if result["success"]),
            "totalPlatforms": len(results),
        }
        if self.sync_error:
            payload["error"] = self.sync_error
        return payload


async def tag_and_sync(
    session: AsyncSession,
    user_id: uuid.UUID,
    lead_id: uuid.UUID,
    *,
    tags: list[str],
    reason: str,
    auto_sync: bool,
    connection_ids: list[uuid.UUID] | None,
    adapters: Mapping[str, PixelAdapter],
) -> TagAndSyncOutcome:
    """Upsert manual tags, then push the lead to the caller's active connections.

    A sync failure is reported in the outcome; the tags stay written.
    """
    lead = await get_lead(session, user_id, lead_id)
    written = []
    for tag_type in tags:
        tag, created = await upsert_tag(session, user_id, lead.lead_id, tag_type, reason, tagged_by=user_id, lead=lead)
        written.append((tag, created))
    await session.refresh(lead, attribute_names=["tags"])
    sync_type = TAG_WHITELIST if TAG_WHITELIST in tags else TAG_QUALIFIED
    outcome = TagAndSyncOutcome(lead=lead, tags=written, sync_type=sync_type)
    if not auto_sync:
        return outcome

    connections = await active_connections(session, user_id, connection_ids=connection_ids)
    if not connections:
        logger.info("tag_and_sync_no_connections", extra={"extra": {"lead_id": str(lead_id)}})
        return outcome
    outcome.attempted = True
    try:
        outcome.report = await sync_leads(
            session,
            user_id,
            lead_ids=[lead.lead_id],
            connection_ids=[connection.connection_id for connection in connections],
            sync_type=sync_type,
            adapters=adapters,
        )
    except DomainError as exc:
        outcome.sync_error = exc.message
        logger.warning(
            "tag_and_sync_failed",
            extra={"extra": {"lead_id": str(lead_id), "code": exc.code, "error": exc.message}},
        )
    return outcome
