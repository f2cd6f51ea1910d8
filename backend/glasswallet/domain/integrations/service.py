from __future__ import annotations

import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Mapping

import pydantic
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from glasswallet.domain.credit import providers
from glasswallet.domain.errors import AuthenticationError, BusinessLogicError, DomainError
from glasswallet.domain.integrations.schemas import BatchLead, BatchSubmission, WidgetSubmission
from glasswallet.domain.leads.pipeline import QualificationOutcome, qualify_lead
from glasswallet.domain.leads.service import create_lead
from glasswallet.domain.outbox.service import enqueue_webhook
from glasswallet.domain.pixels.adapters import PixelAdapter
from glasswallet.domain.pixels.db_models import PLATFORM_TYPES, STATUS_ACTIVE, PixelConnection
from glasswallet.domain.tagging.db_models import TAG_BLACKLIST, TAG_WHITELIST, AutoTaggingRule
from glasswallet.domain.users.db_models import User
from glasswallet.domain.users.service import get_user_by_client_credentials
from glasswallet.settings import settings
from glasswallet.shared.pii import mask_email
from glasswallet.shared.timeutils import utcnow

logger = logging.getLogger(__name__)

APPROVAL_SCORE = 650
BATCH_USER_AGENT = "GlassWallet-BatchWebhook/1.0"
ENDPOINTS = {
    "widget": "/integrate/widget",
    "webhook": "/integrate/webhook",
    "health": "/integrate/health",
}


@dataclass
class IntakeContext:
    ip_address: str
    user_agent: str


async def authenticate_client(session: AsyncSession, client_id: str, api_key: str) -> User:
    user = await get_user_by_client_credentials(session, client_id, api_key)
    if user is None:
        raise AuthenticationError(message="Invalid client credentials", code="INVALID_API_KEY")
    return user


def split_name(name: str) -> tuple[str, str]:
    first, _, last = name.strip().partition(" ")
    return first[:50], last.strip()[:50]


def primary_tag(tag_types: list[str]) -> str:
    if TAG_WHITELIST in tag_types:
        return TAG_WHITELIST
    if TAG_BLACKLIST in tag_types:
        return TAG_BLACKLIST
    return tag_types[0] if tag_types else "untagged"


def lead_result(outcome: QualificationOutcome) -> dict[str, Any]:
    lead = outcome.lead
    tag_types = outcome.tagging.evaluation.tag_types
    return {
        "lead_id": str(lead.lead_id),
        "credit_score": lead.credit_score,
        "income_estimate": lead.income_estimate,
        "qualification": "approved" if (lead.credit_score or 0) >= APPROVAL_SCORE else "declined",
        "tag": primary_tag(tag_types),
        "processed_at": lead.processed_at.isoformat() if lead.processed_at else None,
    }


def _consent_metadata(context: IntakeContext, source: str) -> dict[str, Any]:
    return {
        "ipAddress": context.ip_address,
        "userAgent": context.user_agent,
        "consentTimestamp": utcnow().isoformat(),
        "source": source,
    }


async def _intake_one(
    session: AsyncSession,
    user: User,
    *,
    name: str,
    email: str,
    phone: str | None,
    source: str,
    metadata: dict[str, Any] | None,
    context: IntakeContext,
    provider: providers.CreditProvider,
    adapters: Mapping[str, PixelAdapter],
) -> QualificationOutcome:
    first_name, last_name = split_name(name)
    lead = await create_lead(
        session,
        user.user_id,
        first_name=first_name,
        last_name=last_name,
        email=email,
        phone=phone,
        consent_given=True,
        consent_metadata=_consent_metadata(context, source),
        source=source,
        metadata=metadata,
    )
    logger.info(
        "fcra_consent_logged",
        extra={"extra": {"lead_id": str(lead.lead_id), "email": email, "ip": context.ip_address, "source": source}},
    )
    return await qualify_lead(
        session,
        user.user_id,
        lead.lead_id,
        provider=provider,
        adapters=adapters,
        sync_all_tags=True,
    )


async def process_widget_submission(
    session: AsyncSession,
    submission: WidgetSubmission,
    *,
    context: IntakeContext,
    provider: providers.CreditProvider,
    adapters: Mapping[str, PixelAdapter],
) -> tuple[User, dict[str, Any]]:
    """Create, pull and tag a lead from the embeddable widget.

    Nothing is written unless credentials are valid and consent is true.
    """
    if submission.consent is not True:
        raise BusinessLogicError(
            message="FCRA compliance requires explicit consent before credit pull",
            code="CONSENT_REQUIRED",
        )
    user = await authenticate_client(session, submission.client_id, submission.api_key)
    outcome = await _intake_one(
        session,
        user,
        name=submission.name,
        email=str(submission.email),
        phone=submission.phone,
        source=submission.source or "widget",
        metadata=submission.metadata,
        context=context,
        provider=provider,
        adapters=adapters,
    )
    result = lead_result(outcome)
    if submission.webhook_url:
        await enqueue_webhook(
            session,
            user_id=user.user_id,
            url=submission.webhook_url,
            payload={**result, "source": submission.source or "widget"},
            dedupe_key=f"widget:{result['lead_id']}",
            timeout=settings.widget_webhook_timeout_seconds,
        )
    logger.info(
        "widget_lead_processed",
        extra={"extra": {"lead_id": result["lead_id"], "qualification": result["qualification"], "tag": result["tag"]}},
    )
    return user, result


def _validation_message(exc: pydantic.ValidationError) -> str:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg', 'invalid')}" if location else str(first.get("msg", "invalid"))


async def process_batch_submission(
    session: AsyncSession,
    submission: BatchSubmission,
    *,
    context: IntakeContext,
    provider: providers.CreditProvider,
    adapters: Mapping[str, PixelAdapter],
) -> tuple[User, dict[str, Any]]:
    """Process a batch of leads; each lead succeeds or fails inside its own savepoint."""
    user = await authenticate_client(session, submission.client_id, submission.api_key)
    batch_id = submission.batch_id or f"batch_{int(time.time() * 1000)}_{secrets.token_hex(5)}"
    processed_at = utcnow().isoformat()
    results: list[dict[str, Any]] = []
    failures: list[dict[str, Any]] = []
    credits_used = 0

    for index, raw in enumerate(submission.leads):
        email = raw.get("email") if isinstance(raw, dict) else None
        try:
            item = BatchLead.model_validate(raw)
        except pydantic.ValidationError as exc:
            failures.append({"index": index, "email": email, "error": _validation_message(exc)})
            continue
        if not item.consent:
            failures.append({"index": index, "email": str(item.email), "error": "Consent is required"})
            continue
        savepoint = await session.begin_nested()
        try:
            outcome = await _intake_one(
                session,
                user,
                name=item.name,
                email=str(item.email),
                phone=item.phone,
                source=item.source or "webhook",
                metadata=item.metadata,
                context=context,
                provider=provider,
                adapters=adapters,
            )
        except DomainError as exc:
            await savepoint.rollback()
            logger.warning(
                "batch_lead_failed",
                extra={"extra": {"batch_id": batch_id, "index": index, "email": str(item.email), "code": exc.code}},
            )
            failures.append({"index": index, "email": str(item.email), "error": exc.message, "code": exc.code})
            continue
        await savepoint.commit()
        credits_used += outcome.pull.transaction.cost_in_cents
        results.append({**lead_result(outcome), "external_id": item.external_id, "batch_id": batch_id})

    response: dict[str, Any] = {
        "batch_id": batch_id,
        "processed_at": processed_at,
        "results": results,
        "failures": failures,
        "summary": {
            "total_submitted": len(submission.leads),
            "successfully_processed": len(results),
            "failed": len(failures),
            "credits_used": credits_used,
        },
    }
    if submission.webhook_url and results:
        await enqueue_webhook(
            session,
            user_id=user.user_id,
            url=submission.webhook_url,
            payload=response,
            dedupe_key=f"batch:{batch_id}",
            headers={"User-Agent": BATCH_USER_AGENT, "X-Batch-ID": batch_id},
            timeout=settings.batch_webhook_timeout_seconds,
        )
    logger.info(
        "batch_intake_processed",
        extra={"extra": {"batch_id": batch_id, **response["summary"], "client": mask_email(user.email)}},
    )
    return user, response


async def integration_health(
    session: AsyncSession,
    *,
    client_id: str | None = None,
    api_key: str | None = None,
) -> dict[str, Any]:
    health: dict[str, Any] = {
        "service": "GlassWallet Integration API",
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": settings.app_version,
        "endpoints": dict(ENDPOINTS),
    }
    if not client_id or not api_key:
        return health
    user = await get_user_by_client_credentials(session, client_id, api_key)
    if user is None:
        health["client"] = {"client_id": client_id, "api_key_valid": False}
        return health

    result = await session.execute(
        select(PixelConnection.platform_type).where(
            PixelConnection.user_id == user.user_id, PixelConnection.connection_status == STATUS_ACTIVE
        )
    )
    active_platforms = set(result.scalars().all())
    rule_count = await session.scalar(
        select(func.count())
        .select_from(AutoTaggingRule)
        .where(AutoTaggingRule.user_id == user.user_id, AutoTaggingRule.is_active.is_(True))
    )
    health["client"] = {
        "client_id": client_id,
        "api_key_valid": True,
        "credit_balance": user.credit_balance,
        "integration_active": True,
        "pixel_connections": {platform: platform in active_platforms for platform in PLATFORM_TYPES},
        "auto_tagging_rules": int(rule_count or 0),
    }
    return health


def health_cache_key(client_id: str | None, api_key: str | None) -> str:
    if not client_id or not api_key:
        return "public"
    return f"client:{client_id}:{uuid.uuid5(uuid.NAMESPACE_OID, api_key)}"
