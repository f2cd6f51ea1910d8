"""Advertising platform adapters.

Each adapter covers one platform: the OAuth dance, account discovery, pushing
hashed lead identities and a connectivity probe. ``PIXEL_ADAPTERS`` maps a
platform type to its adapter class; callers never branch on platform themselves.
"""

from __future__ import annotations

import logging
import secrets
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence
from urllib.parse import urlencode

import httpx

from glasswallet.domain.credit.providers import score_tier
from glasswallet.domain.pixels.db_models import (
    PLATFORM_GOOGLE_ADS,
    PLATFORM_META,
    PLATFORM_TIKTOK,
    PixelConnection,
)
from glasswallet.domain.tagging.db_models import TAG_QUALIFIED, TAG_TYPES, TAG_WHITELIST
from glasswallet.shared.pii import normalize_email, normalize_name, normalize_phone_e164, sha256_hex

logger = logging.getLogger(__name__)

META_GRAPH_URL = "https://graph.facebook.com/v18.0"
META_AUTHORIZE_URL = "https://www.facebook.com/v18.0/dialog/oauth"
META_SCOPES = ("ads_management", "business_management", "pages_read_engagement", "pages_manage_metadata")

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_ADS_URL = "https://googleads.googleapis.com/v14"
GOOGLE_SCOPES = (
    "https://www.googleapis.com/auth/adwords",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
)

TIKTOK_AUTHORIZE_URL = "https://www.tiktok.com/auth/authorize/"
TIKTOK_TOKEN_URL = "https://open-api.tiktok.com/oauth/access_token/"
TIKTOK_USER_INFO_URL = "https://open-api.tiktok.com/user/info/"
TIKTOK_EVENTS_URL = "https://business-api.tiktok.com/open_api/v1.3/pixel/track/"
TIKTOK_PIXEL_LIST_URL = "https://business-api.tiktok.com/open_api/v1.3/pixel/list/"
TIKTOK_SCOPES = ("user_info.basic", "video.list", "business.get", "tt_user.basic.read")
TIKTOK_BATCH_SIZE = 1000


class PixelAdapterError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass(frozen=True)
class SyncLead:
    lead_id: uuid.UUID
    email: str
    first_name: str
    last_name: str
    phone: str | None = None
    credit_score: int | None = None
    tags: tuple[str, ...] = ()


@dataclass
class PushOutcome:
    """Result of one platform push.

    ``synced_lead_ids`` is None when the platform reports counts only and cannot
    say which leads it accepted.
    """

    synced_count: int
    failed_count: int
    sync_id: str
    errors: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    synced_lead_ids: list[uuid.UUID] | None = None


@dataclass(frozen=True)
class TokenBundle:
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    token_type: str = "Bearer"


@dataclass(frozen=True)
class AccountInfo:
    connection_name: str
    pixel_id: str | None = None
    customer_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConnectionTestResult:
    success: bool
    message: str
    latency_ms: int


class PixelAdapter(Protocol):
    platform: str

    def build_authorize_url(self, *, state: str, redirect_uri: str) -> str: ...

    async def exchange_code(self, code: str, *, redirect_uri: str) -> TokenBundle: ...

    async def fetch_accounts(self, tokens: TokenBundle) -> AccountInfo: ...

    async def push_leads(
        self, connection: PixelConnection, leads: Sequence[SyncLead], sync_type: str
    ) -> PushOutcome: ...

    async def test_connection(self, connection: PixelConnection) -> ConnectionTestResult: ...


def generate_sync_id(platform: str) -> str:
    return f"sync_{platform.lower()}_{int(time.time())}_{secrets.token_hex(4)}"


def hashed_identity(lead: SyncLead) -> dict[str, str | None]:
    return {
        "email": sha256_hex(normalize_email(lead.email)),
        "phone": sha256_hex(normalize_phone_e164(lead.phone)),
        "first_name": sha256_hex(normalize_name(lead.first_name)),
        "last_name": sha256_hex(normalize_name(lead.last_name)),
    }


def qualification_tags(lead: SyncLead) -> list[str]:
    return [tag for tag in lead.tags if tag in TAG_TYPES]


class _BaseAdapter:
    platform: str = ""

    def __init__(
        self,
        app_settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        mock_mode: bool | None = None,
    ) -> None:
        self.settings = app_settings
        self.transport = transport
        self.mock_mode = app_settings.pixel_mock_mode if mock_mode is None else mock_mode
        self.timeout = app_settings.pixel_sync_timeout_seconds

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        async with self._client() as client:
            try:
                response = await client.request(method, url, **kwargs)
            except httpx.HTTPError as exc:
                raise PixelAdapterError(f"{self.platform} request failed: {type(exc).__name__}") from exc
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400:
            error = body.get("error") if isinstance(body, dict) else None
            message = (
                error.get("message")
                if isinstance(error, dict)
                else (body.get("message") if isinstance(body, dict) else None)
            )
            raise PixelAdapterError(
                f"{self.platform} API error: {message or response.status_code}",
                status_code=response.status_code,
            )
        return body if isinstance(body, dict) else {"data": body}

    def _mock_push(self, leads: Sequence[SyncLead], sync_type: str, **metadata: Any) -> PushOutcome:
        return PushOutcome(
            synced_count=len(leads),
            failed_count=0,
            sync_id=generate_sync_id(self.platform),
            metadata={"mock": True, "syncType": sync_type, **metadata},
            synced_lead_ids=[lead.lead_id for lead in leads],
        )

    def _mock_tokens(self, code: str) -> TokenBundle:
        return TokenBundle(
            access_token=f"mock_{self.platform.lower()}_{sha256_hex(code)[:24]}",
            refresh_token=f"mock_refresh_{secrets.token_hex(8)}",
            expires_in=3600,
        )

    async def test_connection(self, connection: PixelConnection) -> ConnectionTestResult:
        started = time.perf_counter()
        if self.mock_mode:
            return ConnectionTestResult(
                success=True,
                message=f"{self.platform} connection successful",
                latency_ms=int((time.perf_counter() - started) * 1000),
            )
        if not connection.access_token:
            return ConnectionTestResult(success=False, message="Connection has no access token", latency_ms=0)
        try:
            await self._probe(connection)
        except PixelAdapterError as exc:
            return ConnectionTestResult(
                success=False,
                message=exc.message,
                latency_ms=int((time.perf_counter() - started) * 1000),
            )
        return ConnectionTestResult(
            success=True,
            message=f"{self.platform} connection successful",
            latency_ms=int((time.perf_counter() - started) * 1000),
        )

    async def _probe(self, connection: PixelConnection) -> None:
        raise NotImplementedError


class MetaPixelAdapter(_BaseAdapter):
    platform = PLATFORM_META

    def build_authorize_url(self, *, state: str, redirect_uri: str) -> str:
        query = urlencode(
            {
                "client_id": self.settings.meta_app_id or "",
                "redirect_uri": redirect_uri,
                "scope": ",".join(META_SCOPES),
                "response_type": "code",
                "state": state,
                "display": "popup",
            }
        )
        return f"{META_AUTHORIZE_URL}?{query}"

    async def exchange_code(self, code: str, *, redirect_uri: str) -> TokenBundle:
        if self.mock_mode:
            return self._mock_tokens(code)
        body = await self._request_json(
            "GET",
            f"{META_GRAPH_URL}/oauth/access_token",
            params={
                "client_id": self.settings.meta_app_id,
                "client_secret": self.settings.meta_app_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            },
        )
        if not body.get("access_token"):
            raise PixelAdapterError("No access token received from Meta")
        return TokenBundle(
            access_token=body["access_token"],
            expires_in=body.get("expires_in"),
            token_type=body.get("token_type") or "Bearer",
        )

    async def fetch_accounts(self, tokens: TokenBundle) -> AccountInfo:
        if self.mock_mode:
            return AccountInfo(connection_name="Meta - Account", details={"adAccounts": [], "mock": True})
        accounts = await self._request_json(
            "GET",
            f"{META_GRAPH_URL}/me/adaccounts",
            params={"fields": "id,name,account_status", "access_token": tokens.access_token},
        )
        profile = await self._request_json(
            "GET", f"{META_GRAPH_URL}/me", params={"fields": "id,name", "access_token": tokens.access_token}
        )
        return AccountInfo(
            connection_name=f"Meta - {profile.get('name') or 'Account'}",
            details={
                "platformUserId": profile.get("id"),
                "adAccounts": accounts.get("data") or [],
                "scopes": list(META_SCOPES),
            },
        )

    async def push_leads(
        self, connection: PixelConnection, leads: Sequence[SyncLead], sync_type: str
    ) -> PushOutcome:
        if self.mock_mode:
            return self._mock_push(leads, sync_type, eventsReceived=len(leads))
        if not connection.pixel_id or not connection.access_token:
            raise PixelAdapterError("Meta connection requires a pixel id and access token")
        now = int(time.time())
        events = []
        for lead in leads:
            identity = hashed_identity(lead)
            events.append(
                {
                    "event_name": "Lead",
                    "event_time": now,
                    "action_source": "system_generated",
                    "user_data": {
                        "em": [identity["email"]],
                        "ph": [identity["phone"]] if identity["phone"] else None,
                        "fn": [identity["first_name"]],
                        "ln": [identity["last_name"]],
                    },
                    "custom_data": {
                        "lead_score": lead.credit_score,
                        "score_tier": score_tier(lead.credit_score),
                        "tags": ",".join(qualification_tags(lead)),
                        "sync_type": sync_type,
                    },
                }
            )
        body = await self._request_json(
            "POST",
            f"{META_GRAPH_URL}/{connection.pixel_id}/events",
            json={"data": events},
            headers={"Authorization": f"Bearer {connection.access_token}"},
        )
        received = int(body.get("events_received", len(leads)))
        return PushOutcome(
            synced_count=received,
            failed_count=max(0, len(leads) - received),
            sync_id=generate_sync_id(self.platform),
            metadata={"fbtraceId": body.get("fbtrace_id"), "eventsReceived": received},
            synced_lead_ids=[lead.lead_id for lead in leads] if received >= len(leads) else None,
        )

    async def _probe(self, connection: PixelConnection) -> None:
        target = connection.pixel_id or "me"
        await self._request_json(
            "GET",
            f"{META_GRAPH_URL}/{target}",
            params={"fields": "id,name", "access_token": connection.access_token},
        )


class GoogleAdsAdapter(_BaseAdapter):
    platform = PLATFORM_GOOGLE_ADS

    def build_authorize_url(self, *, state: str, redirect_uri: str) -> str:
        query = urlencode(
            {
                "client_id": self.settings.google_client_id or "",
                "redirect_uri": redirect_uri,
                "scope": " ".join(GOOGLE_SCOPES),
                "response_type": "code",
                "state": state,
                "access_type": "offline",
                "prompt": "consent",
            }
        )
        return f"{GOOGLE_AUTHORIZE_URL}?{query}"

    def _ads_headers(self, access_token: str) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "developer-token": self.settings.google_ads_developer_token or "",
        }
        if self.settings.google_ads_login_customer_id:
            headers["login-customer-id"] = self.settings.google_ads_login_customer_id
        return headers

    async def exchange_code(self, code: str, *, redirect_uri: str) -> TokenBundle:
        if self.mock_mode:
            return self._mock_tokens(code)
        body = await self._request_json(
            "POST",
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        if not body.get("access_token"):
            raise PixelAdapterError("No access token received from Google")
        return TokenBundle(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_in=body.get("expires_in"),
            token_type=body.get("token_type") or "Bearer",
        )

    async def fetch_accounts(self, tokens: TokenBundle) -> AccountInfo:
        if self.mock_mode:
            return AccountInfo(connection_name="Google Ads - Account", details={"customers": [], "mock": True})
        profile = await self._request_json(
            "GET", GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {tokens.access_token}"}
        )
        customers = await self._request_json(
            "GET",
            f"{GOOGLE_ADS_URL}/customers:listAccessibleCustomers",
            headers=self._ads_headers(tokens.access_token),
        )
        resource_names = customers.get("resourceNames") or []
        customer_id = resource_names[0].split("/")[-1] if resource_names else None
        return AccountInfo(
            connection_name=f"Google Ads - {profile.get('email') or profile.get('name') or 'Account'}",
            customer_id=customer_id,
            details={"customers": resource_names, "scopes": ["adwords", "userinfo.email", "userinfo.profile"]},
        )

    async def push_leads(
        self, connection: PixelConnection, leads: Sequence[SyncLead], sync_type: str
    ) -> PushOutcome:
        if self.mock_mode:
            return self._mock_push(leads, sync_type, userListSize=len(leads))
        if not connection.customer_id or not connection.access_token:
            raise PixelAdapterError("Google Ads connection requires a customer id and access token")
        base = f"{GOOGLE_ADS_URL}/customers/{connection.customer_id}"
        headers = self._ads_headers(connection.access_token)
        user_list = (connection.account_info or {}).get("userListResourceName") or (
            f"customers/{connection.customer_id}/userLists/{connection.pixel_id}" if connection.pixel_id else None
        )
        job = await self._request_json(
            "POST",
            f"{base}/offlineUserDataJobs:create",
            headers=headers,
            json={
                "job": {
                    "type": "CUSTOMER_MATCH_USER_LIST",
                    "customerMatchUserListMetadata": {"userList": user_list},
                }
            },
        )
        job_resource = job.get("resourceName")
        if not job_resource:
            raise PixelAdapterError("Google Ads did not return an offline user data job")

        operations = []
        for lead in leads:
            identity = hashed_identity(lead)
            identifiers: list[dict[str, Any]] = [{"hashedEmail": identity["email"]}]
            if identity["phone"]:
                identifiers.append({"hashedPhoneNumber": identity["phone"]})
            identifiers.append(
                {
                    "addressInfo": {
                        "hashedFirstName": identity["first_name"],
                        "hashedLastName": identity["last_name"],
                    }
                }
            )
            operations.append({"create": {"userIdentifiers": identifiers}})

        result = await self._request_json(
            "POST",
            f"{GOOGLE_ADS_URL}/{job_resource}:addOperations",
            headers=headers,
            json={"enablePartialFailure": True, "operations": operations},
        )
        partial = result.get("partialFailureError") or {}
        failed_indexes = failed_operation_indexes(partial)
        await self._request_json("POST", f"{GOOGLE_ADS_URL}/{job_resource}:run", headers=headers, json={})
        errors = [partial.get("message")] if partial.get("message") else []
        if failed_indexes is None:
            failed = len(partial.get("details") or [])
            synced_ids = [lead.lead_id for lead in leads] if failed == 0 else None
        else:
            failed = len(failed_indexes)
            synced_ids = [lead.lead_id for index, lead in enumerate(leads) if index not in failed_indexes]
        return PushOutcome(
            synced_count=max(0, len(leads) - failed),
            failed_count=failed,
            sync_id=generate_sync_id(self.platform),
            errors=errors,
            metadata={"jobResourceName": job_resource},
            synced_lead_ids=synced_ids,
        )

    async def _probe(self, connection: PixelConnection) -> None:
        await self._request_json(
            "GET",
            f"{GOOGLE_ADS_URL}/customers:listAccessibleCustomers",
            headers=self._ads_headers(connection.access_token or ""),
        )


def failed_operation_indexes(partial: dict[str, Any]) -> set[int] | None:
    """Operation indexes named by a Google Ads ``partialFailureError``.

    Returns None when failures are reported without an ``operations`` location.
    """
    indexes: set[int] = set()
    for detail in partial.get("details") or []:
        located = False
        for error in detail.get("errors") or []:
            for element in (error.get("location") or {}).get("fieldPathElements") or []:
                if element.get("fieldName") == "operations" and isinstance(element.get("index"), int):
                    indexes.add(element["index"])
                    located = True
        if not located:
            return None
    return indexes


def tiktok_event_for(lead: SyncLead) -> str:
    if TAG_QUALIFIED in lead.tags:
        return "CompleteRegistration"
    if TAG_WHITELIST in lead.tags:
        return "SubmitForm"
    if lead.credit_score is not None and lead.credit_score >= 700:
        return "ViewContent"
    return "Lead"


def tiktok_lead_value(lead: SyncLead) -> int:
    value = 10
    if lead.credit_score is not None:
        if lead.credit_score >= 750:
            value += 50
        elif lead.credit_score >= 700:
            value += 30
        elif lead.credit_score >= 650:
            value += 15
    if TAG_QUALIFIED in lead.tags:
        value += 25
    if TAG_WHITELIST in lead.tags:
        value += 10
    return value


class TikTokAdapter(_BaseAdapter):
    platform = PLATFORM_TIKTOK

    def build_authorize_url(self, *, state: str, redirect_uri: str) -> str:
        query = urlencode(
            {
                "client_key": self.settings.tiktok_app_id or "",
                "redirect_uri": redirect_uri,
                "scope": ",".join(TIKTOK_SCOPES),
                "response_type": "code",
                "state": state,
            }
        )
        return f"{TIKTOK_AUTHORIZE_URL}?{query}"

    async def exchange_code(self, code: str, *, redirect_uri: str) -> TokenBundle:
        if self.mock_mode:
            return self._mock_tokens(code)
        body = await self._request_json(
            "POST",
            TIKTOK_TOKEN_URL,
            json={
                "client_key": self.settings.tiktok_app_id,
                "client_secret": self.settings.tiktok_app_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri,
            },
        )
        data = body.get("data") if isinstance(body.get("data"), dict) else body
        if not data.get("access_token"):
            raise PixelAdapterError("No access token received from TikTok")
        return TokenBundle(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
        )

    async def fetch_accounts(self, tokens: TokenBundle) -> AccountInfo:
        if self.mock_mode:
            return AccountInfo(connection_name="TikTok - Account", details={"mock": True})
        body = await self._request_json(
            "POST",
            TIKTOK_USER_INFO_URL,
            json={"access_token": tokens.access_token, "fields": ["open_id", "display_name"]},
        )
        user = ((body.get("data") or {}).get("user")) or {}
        return AccountInfo(
            connection_name=f"TikTok - {user.get('display_name') or 'Account'}",
            details={"openId": user.get("open_id"), "scopes": list(TIKTOK_SCOPES)},
        )

    async def push_leads(
        self, connection: PixelConnection, leads: Sequence[SyncLead], sync_type: str
    ) -> PushOutcome:
        distribution: dict[str, int] = {}
        for lead in leads:
            event = tiktok_event_for(lead)
            distribution[event] = distribution.get(event, 0) + 1
        if self.mock_mode:
            return self._mock_push(leads, sync_type, eventDistribution=distribution)
        if not connection.pixel_id or not connection.access_token:
            raise PixelAdapterError("TikTok connection requires a pixel code and access token")

        sync_id = generate_sync_id(self.platform)
        now = int(time.time())
        synced = 0
        failed = 0
        errors: list[str] = []
        synced_ids: list[uuid.UUID] = []
        for index in range(0, len(leads), TIKTOK_BATCH_SIZE):
            batch = leads[index : index + TIKTOK_BATCH_SIZE]
            events = []
            for lead in batch:
                identity = hashed_identity(lead)
                events.append(
                    {
                        "event": tiktok_event_for(lead),
                        "event_time": now,
                        "context": {
                            "user": {"email": identity["email"], "phone_number": identity["phone"]},
                            "user_agent": "GlassWallet-PixelSync/1.0",
                        },
                        "properties": {
                            "content_type": "lead_qualification",
                            "content_id": str(lead.lead_id),
                            "value": tiktok_lead_value(lead),
                            "currency": "USD",
                            "credit_score_tier": score_tier(lead.credit_score),
                            "lead_quality": "high" if TAG_QUALIFIED in lead.tags else "standard",
                            "qualification_tags": qualification_tags(lead),
                            "sync_batch_id": sync_id,
                        },
                    }
                )
            batch_number = index // TIKTOK_BATCH_SIZE + 1
            try:
                body = await self._request_json(
                    "POST",
                    TIKTOK_EVENTS_URL,
                    headers={"Access-Token": connection.access_token},
                    json={"pixel_code": connection.pixel_id, "partner_name": "glasswallet", "data": events},
                )
            except PixelAdapterError as exc:
                failed += len(batch)
                errors.append(f"Batch {batch_number}: {exc.message}")
                continue
            if body.get("code") == 0:
                synced += len(batch)
                synced_ids.extend(lead.lead_id for lead in batch)
            else:
                failed += len(batch)
                errors.append(f"Batch {batch_number}: {body.get('message') or 'rejected'}")
        return PushOutcome(
            synced_count=synced,
            failed_count=failed,
            sync_id=sync_id,
            errors=errors,
            metadata={"eventDistribution": distribution},
            synced_lead_ids=synced_ids,
        )

    async def _probe(self, connection: PixelConnection) -> None:
        body = await self._request_json(
            "GET",
            TIKTOK_PIXEL_LIST_URL,
            headers={"Access-Token": connection.access_token or ""},
            params={"code": connection.pixel_id} if connection.pixel_id else None,
        )
        if body.get("code") not in (None, 0):
            raise PixelAdapterError(f"TikTok API error: {body.get('message') or body.get('code')}")


PIXEL_ADAPTERS: dict[str, type[_BaseAdapter]] = {
    PLATFORM_META: MetaPixelAdapter,
    PLATFORM_GOOGLE_ADS: GoogleAdsAdapter,
    PLATFORM_TIKTOK: TikTokAdapter,
}


def build_pixel_adapters(
    app_settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    mock_mode: bool | None = None,
) -> dict[str, PixelAdapter]:
    return {
        platform: adapter_cls(app_settings, transport=transport, mock_mode=mock_mode)
        for platform, adapter_cls in PIXEL_ADAPTERS.items()
    }
