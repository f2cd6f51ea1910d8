from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from glasswallet.domain.errors import ConflictError, NotFoundError, ValidationError
from glasswallet.domain.leads.db_models import Lead
from glasswallet.domain.leads.service import get_lead, get_owned_leads, lead_attributes
from glasswallet.domain.outbox.service import is_webhook_url
from glasswallet.domain.tagging import engine
from glasswallet.domain.tagging.db_models import TAG_TYPES, AutoTaggingRule, LeadTag
from glasswallet.settings import settings
from glasswallet.shared.timeutils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_RULES: tuple[dict[str, Any], ...] = (
    {
        "rule_name": "High Credit Score Auto-Qualification",
        "conditions": {"creditScore": {"gte": 700}, "incomeEstimate": {"gte": 6_000_000}},
        "actions": {"addTag": "qualified", "syncToPixels": True, "webhookEvents": ["lead.qualified"]},
        "priority": 1,
    },
    {
        "rule_name": "High Credit Score Whitelist",
        "conditions": {"creditScore": {"gte": 700}, "incomeEstimate": {"gte": 6_000_000}},
        "actions": {"addTag": "whitelist", "syncToPixels": True},
        "priority": 0,
    },
)


@dataclass
class BulkTagOutcome:
    lead_id: uuid.UUID
    action: str
    tag_id: uuid.UUID | None = None
    error: str | None = None


@dataclass
class AutoTagOutcome:
    evaluation: engine.Evaluation
    tags: list[LeadTag]


def _ensure_tag_type(tag_type: str) -> None:
    if tag_type not in TAG_TYPES:
        raise ValidationError(
            message=f"Invalid tag type: {tag_type}",
            details={"allowed": list(TAG_TYPES)},
        )


async def _find_tag(session: AsyncSession, lead_id: uuid.UUID, tag_type: str) -> LeadTag | None:
    return await session.scalar(
        select(LeadTag).where(LeadTag.lead_id == lead_id, LeadTag.tag_type == tag_type)
    )


async def upsert_tag(
    session: AsyncSession,
    user_id: uuid.UUID,
    lead_id: uuid.UUID,
    tag_type: str,
    reason: str | None,
    *,
    rule_id: uuid.UUID | None = None,
    tagged_by: uuid.UUID | None = None,
    lead: Lead | None = None,
) -> tuple[LeadTag, bool]:
    """Insert or update the single tag row for ``(lead_id, tag_type)``.

    Returns the tag and whether it was created. A concurrent insert of the same
    key loses on the unique index and falls back to updating the winner's row.
    """
    _ensure_tag_type(tag_type)
    if lead is None:
        lead = await get_lead(session, user_id, lead_id)
    if rule_id is not None:
        owned_rule = await session.scalar(
            select(AutoTaggingRule.rule_id).where(
                AutoTaggingRule.rule_id == rule_id, AutoTaggingRule.user_id == user_id
            )
        )
        if owned_rule is None:
            raise ValidationError(message="Rule not found", details={"ruleId": str(rule_id)})

    existing = await _find_tag(session, lead.lead_id, tag_type)
    if existing is None:
        tag = LeadTag(
            lead_id=lead.lead_id,
            tag_type=tag_type,
            tag_reason=reason,
            rule_id=rule_id,
            tagged_by=tagged_by,
        )
        savepoint = await session.begin_nested()
        try:
            session.add(tag)
            await session.flush()
        except IntegrityError:
            await savepoint.rollback()
            existing = await _find_tag(session, lead.lead_id, tag_type)
            if existing is None:
                raise
            logger.info(
                "lead_tag_upsert_race",
                extra={"extra": {"lead_id": str(lead.lead_id), "tag_type": tag_type}},
            )
        else:
            await savepoint.commit()
            logger.info(
                "lead_tag_created",
                extra={"extra": {"lead_id": str(lead.lead_id), "tag_type": tag_type}},
            )
            return tag, True

    existing.tag_reason = reason
    existing.rule_id = rule_id
    existing.tagged_by = tagged_by
    existing.updated_at = utcnow()
    await session.flush()
    logger.info(
        "lead_tag_updated",
        extra={"extra": {"lead_id": str(lead.lead_id), "tag_type": tag_type}},
    )
    return existing, False


async def remove_tag(session: AsyncSession, user_id: uuid.UUID, lead_id: uuid.UUID, tag_type: str) -> int:
    _ensure_tag_type(tag_type)
    await get_lead(session, user_id, lead_id)
    result = await session.execute(
        delete(LeadTag).where(LeadTag.lead_id == lead_id, LeadTag.tag_type == tag_type)
    )
    removed = result.rowcount or 0
    if removed == 0:
        raise NotFoundError.for_resource("Tag", details={"leadId": str(lead_id), "tagType": tag_type})
    await session.flush()
    logger.info("lead_tag_removed", extra={"extra": {"lead_id": str(lead_id), "tag_type": tag_type}})
    return removed


async def bulk_tag(
    session: AsyncSession,
    user_id: uuid.UUID,
    lead_ids: Iterable[uuid.UUID],
    tag_type: str,
    reason: str,
) -> list[BulkTagOutcome]:
    _ensure_tag_type(tag_type)
    leads = await get_owned_leads(session, user_id, lead_ids)
    outcomes: list[BulkTagOutcome] = []
    for lead in leads:
        savepoint = await session.begin_nested()
        try:
            tag, created = await upsert_tag(
                session, user_id, lead.lead_id, tag_type, reason, tagged_by=user_id, lead=lead
            )
        except IntegrityError as exc:
            await savepoint.rollback()
            logger.warning(
                "bulk_tag_lead_failed",
                extra={"extra": {"lead_id": str(lead.lead_id), "error": type(exc).__name__}},
            )
            outcomes.append(BulkTagOutcome(lead_id=lead.lead_id, action="failed", error="Failed to tag lead"))
            continue
        await savepoint.commit()
        outcomes.append(
            BulkTagOutcome(lead_id=lead.lead_id, action="created" if created else "updated", tag_id=tag.tag_id)
        )
    logger.info(
        "bulk_tag_completed",
        extra={
            "extra": {
                "user_id": str(user_id),
                "tag_type": tag_type,
                "total": len(outcomes),
                "failed": sum(1 for outcome in outcomes if outcome.action == "failed"),
            }
        },
    )
    return outcomes


async def mark_tags_synced(
    session: AsyncSession,
    lead_ids: Iterable[uuid.UUID],
    tag_types: Iterable[str],
    synced_at: datetime | None = None,
) -> int:
    lead_ids = list(lead_ids)
    tag_types = list(tag_types)
    if not lead_ids or not tag_types:
        return 0
    result = await session.execute(
        update(LeadTag)
        .where(LeadTag.lead_id.in_(lead_ids), LeadTag.tag_type.in_(tag_types))
        .values(synced_to_pixels=True, pixel_sync_at=synced_at or utcnow())
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0


async def list_active_rule_specs(session: AsyncSession, user_id: uuid.UUID) -> list[engine.RuleSpec]:
    result = await session.execute(
        select(AutoTaggingRule).where(AutoTaggingRule.user_id == user_id, AutoTaggingRule.is_active.is_(True))
    )
    return [
        engine.RuleSpec(
            name=rule.rule_name,
            conditions=rule.conditions_json or {},
            actions=rule.actions_json or {},
            priority=rule.priority,
            rule_id=rule.rule_id,
            created_at=rule.created_at,
        )
        for rule in result.scalars().all()
    ]


async def apply_auto_tagging(
    session: AsyncSession,
    user_id: uuid.UUID,
    lead: Lead,
    signals: Mapping[str, Any] | None = None,
    *,
    include_baseline: bool | None = None,
) -> AutoTagOutcome:
    rules = await list_active_rule_specs(session, user_id)
    evaluation = engine.evaluate(
        lead_attributes(lead),
        rules,
        signals,
        order=settings.tag_rule_priority_order,
        include_baseline=settings.baseline_tagging_enabled if include_baseline is None else include_baseline,
    )
    tags: list[LeadTag] = []
    for decision in evaluation.decisions:
        tag, _ = await upsert_tag(
            session,
            user_id,
            lead.lead_id,
            decision.tag_type,
            decision.reason,
            rule_id=decision.triggering_rule_id,
            lead=lead,
        )
        tags.append(tag)
    await session.refresh(lead, attribute_names=["tags"])
    logger.info(
        "auto_tagging_applied",
        extra={
            "extra": {
                "lead_id": str(lead.lead_id),
                "tags": evaluation.tag_types,
                "matched_rules": len(evaluation.matched_rules),
                "webhook_events": [event.name for event in evaluation.webhook_events],
            }
        },
    )
    return AutoTagOutcome(evaluation=evaluation, tags=tags)


def _validate_rule_payload(conditions: Mapping[str, Any] | None, actions: Mapping[str, Any] | None) -> None:
    if actions is None:
        return
    proposed: list[Any] = []
    if "addTag" in actions:
        proposed.append(actions["addTag"])
    if "addTags" in actions:
        if not isinstance(actions["addTags"], list):
            raise ValidationError(message="actions.addTags must be a list")
        proposed.extend(actions["addTags"])
    if not proposed:
        raise ValidationError(message="Rule actions must add at least one tag")
    invalid = [tag for tag in proposed if tag not in TAG_TYPES]
    if invalid:
        raise ValidationError(
            message="Rule actions reference unknown tag types",
            details={"invalid": invalid, "allowed": list(TAG_TYPES)},
        )
    events = actions.get("webhookEvents")
    if events is not None and (
        not isinstance(events, list) or not all(isinstance(event, str) for event in events)
    ):
        raise ValidationError(message="actions.webhookEvents must be a list of event names")
    webhook_url = actions.get("webhookUrl")
    if webhook_url is not None and not is_webhook_url(webhook_url):
        raise ValidationError(
            message="actions.webhookUrl must be an absolute http or https URL",
            details={"webhookUrl": webhook_url},
        )
    if conditions is not None and not isinstance(conditions, Mapping):
        raise ValidationError(message="Rule conditions must be an object")


async def list_rules(session: AsyncSession, user_id: uuid.UUID) -> list[AutoTaggingRule]:
    result = await session.execute(
        select(AutoTaggingRule)
        .where(AutoTaggingRule.user_id == user_id)
        .order_by(AutoTaggingRule.priority.desc(), AutoTaggingRule.created_at, AutoTaggingRule.rule_id)
    )
    return list(result.scalars().all())


async def get_rule(session: AsyncSession, user_id: uuid.UUID, rule_id: uuid.UUID) -> AutoTaggingRule:
    rule = await session.scalar(
        select(AutoTaggingRule).where(AutoTaggingRule.rule_id == rule_id, AutoTaggingRule.user_id == user_id)
    )
    if rule is None:
        raise NotFoundError.for_resource("Rule", details={"ruleId": str(rule_id)})
    return rule


async def create_rule(
    session: AsyncSession,
    user_id: uuid.UUID,
    *,
    rule_name: str,
    conditions: dict[str, Any],
    actions: dict[str, Any],
    priority: int = 0,
    is_active: bool = True,
) -> AutoTaggingRule:
    _validate_rule_payload(conditions, actions)
    rule = AutoTaggingRule(
        user_id=user_id,
        rule_name=rule_name.strip(),
        conditions_json=conditions,
        actions_json=actions,
        priority=priority,
        is_active=is_active,
    )
    savepoint = await session.begin_nested()
    try:
        session.add(rule)
        await session.flush()
    except IntegrityError as exc:
        await savepoint.rollback()
        raise ConflictError(message=f"A rule named '{rule_name}' already exists") from exc
    else:
        await savepoint.commit()
    logger.info("tagging_rule_created", extra={"extra": {"rule_id": str(rule.rule_id), "priority": priority}})
    return rule


async def update_rule(
    session: AsyncSession,
    user_id: uuid.UUID,
    rule_id: uuid.UUID,
    changes: Mapping[str, Any],
) -> AutoTaggingRule:
    rule = await get_rule(session, user_id, rule_id)
    if "conditions" in changes or "actions" in changes:
        _validate_rule_payload(
            changes.get("conditions", rule.conditions_json),
            changes.get("actions", rule.actions_json),
        )
    if changes.get("rule_name") is not None:
        rule.rule_name = changes["rule_name"].strip()
    if changes.get("conditions") is not None:
        rule.conditions_json = changes["conditions"]
    if changes.get("actions") is not None:
        rule.actions_json = changes["actions"]
    if changes.get("priority") is not None:
        rule.priority = changes["priority"]
    if changes.get("is_active") is not None:
        rule.is_active = changes["is_active"]
    rule.updated_at = utcnow()
    savepoint = await session.begin_nested()
    try:
        await session.flush()
    except IntegrityError as exc:
        await savepoint.rollback()
        raise ConflictError(message="A rule with this name already exists") from exc
    else:
        await savepoint.commit()
    return rule


async def delete_rule(session: AsyncSession, user_id: uuid.UUID, rule_id: uuid.UUID) -> None:
    rule = await get_rule(session, user_id, rule_id)
    await session.delete(rule)
    await session.flush()
    logger.info("tagging_rule_deleted", extra={"extra": {"rule_id": str(rule_id)}})


async def seed_default_rules(session: AsyncSession, user_id: uuid.UUID) -> list[AutoTaggingRule]:
    existing = {rule.rule_name: rule for rule in await list_rules(session, user_id)}
    seeded: list[AutoTaggingRule] = []
    for template in DEFAULT_RULES:
        rule = existing.get(template["rule_name"])
        if rule is None:
            rule = await create_rule(
                session,
                user_id,
                rule_name=template["rule_name"],
                conditions=dict(template["conditions"]),
                actions=dict(template["actions"]),
                priority=template["priority"],
            )
        seeded.append(rule)
    return seeded
