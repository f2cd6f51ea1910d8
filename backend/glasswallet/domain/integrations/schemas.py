from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class IntakeCredentials(BaseModel):
    client_id: str = Field(min_length=1, max_length=64)
    api_key: str = Field(min_length=1, max_length=128)


class WidgetSubmission(IntakeCredentials):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1, max_length=101)
    email: EmailStr
    phone: str | None = Field(default=None, max_length=32)
    consent: bool
    source: str | None = Field(default=None, max_length=32)
    webhook_url: str | None = Field(default=None, max_length=2048)
    metadata: dict[str, Any] | None = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value


class BatchLead(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1, max_length=101)
    email: EmailStr
    phone: str | None = Field(default=None, max_length=32)
    consent: bool
    source: str | None = Field(default=None, max_length=32)
    external_id: str | None = Field(default=None, max_length=128)
    metadata: dict[str, Any] | None = None


class BatchSubmission(IntakeCredentials):
    model_config = ConfigDict(extra="ignore")

    leads: list[dict[str, Any]] = Field(min_length=1, max_length=100)
    webhook_url: str | None = Field(default=None, max_length=2048)
    batch_id: str | None = Field(default=None, max_length=64)


class WidgetResult(BaseModel):
    lead_id: str
    credit_score: int | None
    income_estimate: int | None
    qualification: str
    tag: str
    processed_at: str | None
