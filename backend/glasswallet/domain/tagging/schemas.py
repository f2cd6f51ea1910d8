from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import Field, field_validator

from glasswallet.domain.leads.schemas import TagType
from glasswallet.shared.schemas import ApiRequestModel, ApiResponseModel


class TagRequest(ApiRequestModel):
    tag_type: TagType
    tag_reason: str = Field(min_length=1, max_length=200)
    rule_id: uuid.UUID | None = None


class TagResult(ApiResponseModel):
    tag_id: uuid.UUID
    lead_id: uuid.UUID
    tag_type: str
    tag_reason: str | None = None
    rule_id: uuid.UUID | None = None
    synced_to_pixels: bool
    pixel_sync_at: datetime | None = None
    action: Literal["created", "updated"]


class TagAndSyncRequest(ApiRequestModel):
    tags: list[TagType] = Field(min_length=1, max_length=4)
    reason: str = Field(default="Manual tag", min_length=1, max_length=200)
    auto_sync: bool = True
    connection_ids: list[uuid.UUID] | None = None

    @field_validator("tags")
    @classmethod
    def unique_tags(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))


class BulkTagRequest(ApiRequestModel):
    lead_ids: list[uuid.UUID] = Field(min_length=1, max_length=100)
    tag_type: TagType
    tag_reason: str = Field(min_length=1, max_length=200)


class BulkTagItem(ApiResponseModel):
    lead_id: uuid.UUID
    action: Literal["created", "updated", "failed"]
    tag_id: uuid.UUID | None = None
    error: str | None = None


class BulkTagResponse(ApiResponseModel):
    results: list[BulkTagItem]
    success_count: int
    failure_count: int
    tag_type: str


class AutoTagRequest(ApiRequestModel):
    signals: dict[str, Any] | None = None


class RuleCreateRequest(ApiRequestModel):
    rule_name: str = Field(min_length=1, max_length=100)
    conditions: dict[str, Any]
    actions: dict[str, Any]
    priority: int = Field(default=0, ge=0, le=100)
    is_active: bool = True


class RuleUpdateRequest(ApiRequestModel):
    rule_name: str | None = Field(default=None, min_length=1, max_length=100)
    conditions: dict[str, Any] | None = None
    actions: dict[str, Any] | None = None
    priority: int | None = Field(default=None, ge=0, le=100)
    is_active: bool | None = None


class RuleResponse(ApiResponseModel):
    rule_id: uuid.UUID
    rule_name: str
    conditions: dict[str, Any] = Field(validation_alias="conditions_json")
    actions: dict[str, Any] = Field(validation_alias="actions_json")
    priority: int
    is_active: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None
