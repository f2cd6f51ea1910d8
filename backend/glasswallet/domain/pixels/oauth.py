from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Mapping
from urllib.parse import urlencode

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from glasswallet.domain.errors import AuthenticationError, NotFoundError
from glasswallet.domain.pixels import service as pixel_service
from glasswallet.domain.pixels.adapters import PixelAdapter, PixelAdapterError
from glasswallet.domain.pixels.db_models import (
    PLATFORM_GOOGLE_ADS,
    PLATFORM_META,
    PLATFORM_TIKTOK,
    STATUS_ACTIVE,
    PixelConnection,
)
from glasswallet.settings import settings
from glasswallet.shared.timeutils import utcnow

logger = logging.getLogger(__name__)

PLATFORM_SLUGS: dict[str, str] = {
    "meta": PLATFORM_META,
    "google": PLATFORM_GOOGLE_ADS,
    "tiktok": PLATFORM_TIKTOK,
}


@dataclass
class OAuthStateClaims:
    user_id: uuid.UUID
    platform: str
    exp: int
    nonce: str


def resolve_platform(slug: str) -> str:
    platform = PLATFORM_SLUGS.get(slug.lower())
    if platform is None:
        raise NotFoundError.for_resource("OAuth platform", details={"platform": slug})
    return platform


def redirect_uri_for(slug: str) -> str:
    return f"{settings.api_base_url.rstrip('/')}/oauth/{slug}/callback"


def _sign(raw: bytes) -> str:
    return hmac.new(settings.oauth_state_secret.encode(), raw, hashlib.sha256).hexdigest()


def build_state(user_id: uuid.UUID, platform: str, *, ttl_seconds: int | None = None) -> str:
    payload = {
        "uid": str(user_id),
        "platform": platform,
        "exp": int(time.time()) + (ttl_seconds or settings.oauth_state_ttl_seconds),
        "nonce": secrets.token_hex(8),
    }
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    encoded = base64.urlsafe_b64encode(raw).rstrip(b"=").decode()
    return f"{encoded}.{_sign(raw)}"


def verify_state(token: str, *, platform: str) -> OAuthStateClaims:
    """Decode a state token and check signature, expiry and platform binding."""
    invalid = AuthenticationError(message="Invalid or expired OAuth state", code="INVALID_STATE")
    if not token or "." not in token:
        raise invalid
    encoded, provided_sig = token.rsplit(".", 1)
    padding = "=" * (-len(encoded) % 4)
    try:
        raw = base64.urlsafe_b64decode(encoded + padding)
    except ValueError as exc:
        raise invalid from exc
    if not hmac.compare_digest(_sign(raw), provided_sig):
        raise invalid
    try:
        payload = json.loads(raw.decode())
        claims = OAuthStateClaims(
            user_id=uuid.UUID(payload["uid"]),
            platform=str(payload["platform"]),
            exp=int(payload["exp"]),
            nonce=str(payload.get("nonce") or ""),
        )
    except (ValueError, KeyError, TypeError) as exc:
        raise invalid from exc
    if claims.exp <= int(time.time()) or claims.platform != platform:
        raise invalid
    return claims


def start_connect(user_id: uuid.UUID, slug: str, adapters: Mapping[str, PixelAdapter]) -> dict[str, str]:
    platform = resolve_platform(slug)
    state = build_state(user_id, platform)
    auth_url = adapters[platform].build_authorize_url(state=state, redirect_uri=redirect_uri_for(slug))
    logger.info("oauth_connect_started", extra={"extra": {"user_id": str(user_id), "platform": platform}})
    return {"authUrl": auth_url, "state": state}


def ui_redirect(**params: str) -> str:
    return f"{settings.app_url.rstrip('/')}/pixels?{urlencode(params)}"


async def _unique_connection_name(session: AsyncSession, user_id: uuid.UUID, base: str) -> str:
    result = await session.execute(
        select(PixelConnection.connection_name).where(PixelConnection.user_id == user_id)
    )
    taken = set(result.scalars().all())
    if base not in taken:
        return base
    suffix = 2
    while f"{base} ({suffix})" in taken:
        suffix += 1
    return f"{base} ({suffix})"


async def complete_callback(
    session: AsyncSession,
    slug: str,
    *,
    code: str | None,
    state: str | None,
    error: str | None,
    adapters: Mapping[str, PixelAdapter],
    on_connected: Callable[[uuid.UUID], Awaitable[None]] | None = None,
) -> str:
    """Finish the OAuth dance and return the UI URL to redirect the browser to.

    ``on_connected`` receives the owning user id once the new connection is committed.
    """
    platform = PLATFORM_SLUGS.get(slug.lower())
    if platform is None:
        return ui_redirect(error="unsupported_platform")
    if error:
        logger.warning("oauth_provider_error", extra={"extra": {"platform": platform, "error": error}})
        return ui_redirect(error=error)
    if not code or not state:
        return ui_redirect(error="missing_parameters")
    try:
        claims = verify_state(state, platform=platform)
    except AuthenticationError:
        logger.warning("oauth_state_rejected", extra={"extra": {"platform": platform}})
        return ui_redirect(error="invalid_state")

    adapter = adapters[platform]
    try:
        tokens = await adapter.exchange_code(code, redirect_uri=redirect_uri_for(slug))
        account = await adapter.fetch_accounts(tokens)
    except PixelAdapterError as exc:
        logger.warning(
            "oauth_exchange_failed",
            extra={"extra": {"platform": platform, "user_id": str(claims.user_id), "error": exc.message}},
        )
        return ui_redirect(error="token_exchange_failed")

    account_info: dict[str, Any] = {**account.details, "connectedAt": utcnow().isoformat()}
    connection = await pixel_service.create_connection(
        session,
        claims.user_id,
        platform_type=platform,
        connection_name=await _unique_connection_name(session, claims.user_id, account.connection_name),
        pixel_id=account.pixel_id,
        customer_id=account.customer_id,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        connection_status=STATUS_ACTIVE,
        account_info=account_info,
        token_expires_at=utcnow() + timedelta(seconds=tokens.expires_in) if tokens.expires_in else None,
    )
    await session.commit()
    if on_connected is not None:
        await on_connected(claims.user_id)
    logger.info(
        "oauth_connection_completed",
        extra={"extra": {"platform": platform, "connection_id": str(connection.connection_id)}},
    )
    return ui_redirect(connected=slug, connection_id=str(connection.connection_id))
