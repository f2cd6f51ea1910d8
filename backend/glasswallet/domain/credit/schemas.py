from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Literal

from pydantic import EmailStr, Field, field_validator

from glasswallet.shared.pii import digits_only
from glasswallet.shared.schemas import ApiRequestModel, ApiResponseModel

PermissiblePurpose = Literal[
    "credit_transaction",
    "employment_screening",
    "tenant_screening",
    "business_transaction",
    "collection_of_debt",
    "insurance_underwriting",
]


def _normalize_ssn(value: str) -> str:
    digits = digits_only(value)
    if len(digits) != 9:
        raise ValueError("SSN must contain 9 digits")
    return digits


class ConsumerAddress(ApiRequestModel):
    street: str = Field(min_length=1, max_length=200)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(pattern=r"^[A-Za-z]{2}$")
    zip_code: str = Field(pattern=r"^\d{5}(-\d{4})?$")


class CreditPullRequest(ApiRequestModel):
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    ssn: str
    date_of_birth: date
    address: ConsumerAddress
    phone: str | None = Field(default=None, max_length=32)
    email: EmailStr | None = None
    permissible_purpose: PermissiblePurpose = "credit_transaction"
    consent_given: bool

    @field_validator("ssn")
    @classmethod
    def validate_ssn(cls, value: str) -> str:
        return _normalize_ssn(value)


class PreQualifyRequest(ApiRequestModel):
    ssn: str
    zip_code: str = Field(pattern=r"^\d{5}(-\d{4})?$")

    @field_validator("ssn")
    @classmethod
    def validate_ssn(cls, value: str) -> str:
        return _normalize_ssn(value)


class LeadCreditPullResponse(ApiResponseModel):
    lead_id: uuid.UUID
    credit_score: int
    income_estimate: int | None
    transaction_id: uuid.UUID
    cost_in_cents: int
    credit_balance: int
    risk_factors: list[str]
    score_tier: str
    tags: list[str]


class ConsumerCreditPullResponse(ApiResponseModel):
    transaction_id: uuid.UUID
    report_id: str
    consumer_name: str
    masked_ssn: str | None
    credit_score: int
    score_tier: str
    income_estimate: int | None
    risk_factors: list[str]
    permissible_purpose: str
    cost_in_cents: int
    credit_balance: int
    pulled_at: datetime
    fcra_notice: str


class PreQualifyResponse(ApiResponseModel):
    score: int
    qualified: bool
    confidence: Literal["high", "medium", "low"]
    credits_deducted: int
    credit_balance: int


class CreditBalanceResponse(ApiResponseModel):
    credit_balance: int
    currency: str = "credits_cents"


class CreditTransactionResponse(ApiResponseModel):
    transaction_id: uuid.UUID
    lead_id: uuid.UUID | None = None
    transaction_type: str
    cost_in_cents: int
    credit_balance_before: int
    credit_balance_after: int
    description: str | None = None
    external_transaction_id: str | None = None
    created_at: datetime | None = None
