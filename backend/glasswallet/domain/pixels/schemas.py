from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import Field, computed_field

from glasswallet.domain.leads.schemas import TagType
from glasswallet.shared.schemas import ApiRequestModel, ApiResponseModel

PlatformType = Literal["META", "GOOGLE_ADS", "TIKTOK"]
ConnectionStatus = Literal["active", "inactive", "expired", "error"]
SyncType = Literal["whitelist", "qualified"]


class SyncSettings(ApiRequestModel):
    auto_sync: bool = False
    sync_qualified_only: bool = True
    sync_whitelisted: bool = True
    exclude_blacklisted: bool = True
    minimum_credit_score: int | None = Field(default=None, ge=300, le=850)
    sync_frequency: Literal["realtime", "hourly", "daily", "weekly"] = "daily"


class ConnectionCreateRequest(ApiRequestModel):
    platform_type: PlatformType
    connection_name: str = Field(min_length=1, max_length=100)
    pixel_id: str | None = Field(default=None, max_length=128)
    customer_id: str | None = Field(default=None, max_length=128)
    access_token: str | None = None
    refresh_token: str | None = None
    sync_settings: SyncSettings | None = None


class ConnectionUpdateRequest(ApiRequestModel):
    connection_name: str | None = Field(default=None, min_length=1, max_length=100)
    pixel_id: str | None = Field(default=None, max_length=128)
    customer_id: str | None = Field(default=None, max_length=128)
    access_token: str | None = None
    refresh_token: str | None = None
    sync_settings: SyncSettings | None = None
    connection_status: ConnectionStatus | None = None


class ConnectionResponse(ApiResponseModel):
    connection_id: uuid.UUID
    platform_type: str
    connection_name: str
    pixel_id: str | None = None
    customer_id: str | None = None
    connection_status: str
    sync_settings: dict[str, Any] = Field(
        validation_alias="effective_sync_settings", serialization_alias="syncSettings"
    )
    account_info: dict[str, Any] | None = None
    last_sync_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    access_token: str | None = Field(default=None, exclude=True)

    @computed_field(alias="hasAccessToken")
    @property
    def has_access_token(self) -> bool:
        return bool(self.access_token)


class PixelSyncRequest(ApiRequestModel):
    connection_ids: list[uuid.UUID] = Field(min_length=1)
    lead_ids: list[uuid.UUID] = Field(min_length=1, max_length=1000)
    sync_type: SyncType = "qualified"


class DateRange(ApiRequestModel):
    date_from: datetime = Field(alias="from")
    date_to: datetime = Field(alias="to")


class BatchSyncFilters(ApiRequestModel):
    tag_types: list[TagType] = Field(default_factory=list, max_length=4)
    credit_score_min: int | None = Field(default=None, ge=300, le=850)
    credit_score_max: int | None = Field(default=None, ge=300, le=850)
    date_range: DateRange | None = None
    include_untagged: bool = False


class PixelBatchSyncRequest(ApiRequestModel):
    connection_ids: list[uuid.UUID] = Field(min_length=1)
    filters: BatchSyncFilters = Field(default_factory=BatchSyncFilters)
    batch_size: int = 1000
    dry_run: bool = False
