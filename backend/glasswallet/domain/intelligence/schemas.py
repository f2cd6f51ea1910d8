from __future__ import annotations

from typing import Any, Literal

from pydantic import ConfigDict, Field

from glasswallet.shared.schemas import ApiRequestModel

RecommendationContext = Literal["overall", "campaign", "pixel", "lead_flow"]


class LeadFeaturesPayload(ApiRequestModel):
    model_config = ConfigDict(extra="ignore")

    credit_score: int | None = Field(default=None, ge=300, le=850)
    income: int | None = Field(default=None, ge=0)
    source_channel: str = "direct"
    device_type: str | None = None
    time_of_day: int = Field(default=12, ge=0, le=23)
    day_of_week: int = Field(default=1, ge=0, le=6)
    form_completion_time: int = Field(default=120, ge=0)
    page_views: int = Field(default=1, ge=0)
    session_duration: int = Field(default=0, ge=0)
    form_fields_completed: int = Field(default=0, ge=0)
    required_fields_completed: int = Field(default=0, ge=0)
    optional_fields_completed: int = Field(default=0, ge=0)


class ScoreRequest(ApiRequestModel):
    lead_id: str = Field(min_length=1, max_length=64)
    features: LeadFeaturesPayload


class AutoQualifyRequest(ScoreRequest):
    bypass_thresholds: bool = False


class BatchLeadPayload(ApiRequestModel):
    lead_id: str | None = Field(default=None, max_length=64)
    features: LeadFeaturesPayload | None = None


class BatchQualifyRequest(ApiRequestModel):
    leads: list[BatchLeadPayload] = Field(min_length=1, max_length=50)
    qualification_rules: dict[str, Any] = Field(default_factory=dict)
