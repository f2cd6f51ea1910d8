from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import EmailStr, Field

from glasswallet.shared.schemas import ApiRequestModel, ApiResponseModel

TagType = Literal["whitelist", "blacklist", "qualified", "unqualified"]


class LeadCreateRequest(ApiRequestModel):
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    email: EmailStr
    phone: str | None = Field(default=None, max_length=32)
    address: str | None = Field(default=None, max_length=200)
    city: str | None = Field(default=None, max_length=100)
    state: str | None = Field(default=None, pattern=r"^[A-Za-z]{2}$")
    zip_code: str | None = Field(default=None, pattern=r"^\d{5}(-\d{4})?$")
    consent_given: bool = False
    source: str | None = Field(default=None, max_length=32)
    metadata: dict[str, Any] | None = None


class LeadTagResponse(ApiResponseModel):
    tag_id: uuid.UUID
    tag_type: str
    tag_reason: str | None = None
    rule_id: uuid.UUID | None = None
    synced_to_pixels: bool
    pixel_sync_at: datetime | None = None
    created_at: datetime | None = None


class LeadResponse(ApiResponseModel):
    lead_id: uuid.UUID
    first_name: str
    last_name: str
    email: str
    phone: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    credit_score: int | None = None
    income_estimate: int | None = None
    consent_given: bool
    source: str
    processed_at: datetime | None = None
    data_retention_date: datetime
    created_at: datetime | None = None
    updated_at: datetime | None = None
    tags: list[LeadTagResponse] = Field(default_factory=list)


class LeadTransactionSummary(ApiResponseModel):
    transaction_id: uuid.UUID
    transaction_type: str
    cost_in_cents: int
    credit_balance_before: int
    credit_balance_after: int
    created_at: datetime | None = None


class LeadDetailResponse(LeadResponse):
    transactions: list[LeadTransactionSummary] = Field(default_factory=list)
