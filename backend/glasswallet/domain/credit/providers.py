"""Credit bureau providers.

Providers only talk to the bureau; the ledger, consent and pull window live in
``glasswallet.domain.credit.service``. ``MockCreditProvider`` derives stable scores
from a digest of the applicant identity so the same person always gets the same
report. ``HttpCreditProvider`` posts to a bureau gateway through a circuit breaker.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import httpx

from glasswallet.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from glasswallet.shared.timeutils import utcnow

logger = logging.getLogger(__name__)

RISK_FACTORS = (
    "High credit utilization",
    "Recent credit inquiries",
    "Limited credit history",
    "Missed payments in last 12 months",
    "High debt-to-income ratio",
    "Recent account closures",
    "Multiple credit accounts opened recently",
)


@dataclass(frozen=True)
class CreditApplicant:
    first_name: str
    last_name: str
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    ssn: str | None = None
    date_of_birth: str | None = None


@dataclass(frozen=True)
class CreditReport:
    credit_score: int
    income_estimate: int | None
    report_id: str
    pulled_at: datetime
    risk_factors: list[str] = field(default_factory=list)
    cost_in_cents: int | None = None


class CreditProviderError(Exception):
    def __init__(self, code: str, message: str, *, retryable: bool) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable


class CreditProvider(Protocol):
    name: str

    async def pull(self, applicant: CreditApplicant, *, transaction_id: str) -> CreditReport: ...

    async def soft_pull(self, *, ssn: str, zip_code: str) -> int: ...


def score_tier(credit_score: int | None) -> str:
    if credit_score is None:
        return "unknown"
    if credit_score >= 750:
        return "excellent"
    if credit_score >= 700:
        return "good"
    if credit_score >= 650:
        return "fair"
    return "poor"


def _stable_hash(value: str) -> int:
    return int.from_bytes(hashlib.sha256(value.encode("utf-8")).digest()[:4], "big")


def risk_factors_for(credit_score: int, seed: int = 0) -> list[str]:
    if credit_score >= 750:
        return []
    if credit_score >= 700:
        return list(RISK_FACTORS[:1])
    if credit_score >= 650:
        return list(RISK_FACTORS[:2])
    return list(RISK_FACTORS[: 2 + seed % 4])


class MockCreditProvider:
    name = "mock"

    def __init__(self, *, fail_with: CreditProviderError | None = None) -> None:
        self.fail_with = fail_with
        self.calls = 0

    async def pull(self, applicant: CreditApplicant, *, transaction_id: str) -> CreditReport:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        digest = _stable_hash(
            f"{(applicant.email or '').lower()}{applicant.first_name}{applicant.last_name}"
        )
        credit_score = max(300, min(850, 550 + digest % 300))
        return CreditReport(
            credit_score=credit_score,
            income_estimate=(30000 + digest % 70000) * 100,
            report_id=f"MOCK_{transaction_id}",
            pulled_at=utcnow(),
            risk_factors=risk_factors_for(credit_score, digest),
        )

    async def soft_pull(self, *, ssn: str, zip_code: str) -> int:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return max(300, min(850, 550 + _stable_hash(f"{ssn}{zip_code}") % 300))


class HttpCreditProvider:
    name = "http"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self.breaker = breaker or CircuitBreaker(name="credit_bureau", failure_threshold=5, recovery_time=30)

    async def pull(self, applicant: CreditApplicant, *, transaction_id: str) -> CreditReport:
        payload = {
            "firstName": applicant.first_name,
            "lastName": applicant.last_name,
            "email": applicant.email,
            "phone": applicant.phone,
            "address": {
                "street": applicant.address,
                "city": applicant.city,
                "state": applicant.state,
                "zipCode": applicant.zip_code,
            },
            "ssn": applicant.ssn,
            "dateOfBirth": applicant.date_of_birth,
            "transactionId": transaction_id,
        }
        body = await self._post("/credit-pull", payload, transaction_id=transaction_id)
        credit_score = int(body["creditScore"])
        pulled_at = body.get("pullDate")
        return CreditReport(
            credit_score=credit_score,
            income_estimate=body.get("incomeEstimate"),
            report_id=str(body.get("reportId") or transaction_id),
            pulled_at=datetime.fromisoformat(pulled_at) if pulled_at else utcnow(),
            risk_factors=list(body.get("riskFactors") or []),
            cost_in_cents=body.get("cost"),
        )

    async def soft_pull(self, *, ssn: str, zip_code: str) -> int:
        transaction_id = str(uuid.uuid4())
        body = await self._post(
            "/pre-qualify", {"ssn": ssn, "zipCode": zip_code}, transaction_id=transaction_id
        )
        return int(body["score"])

    async def _post(self, path: str, payload: dict[str, Any], *, transaction_id: str) -> dict[str, Any]:
        headers = {"X-Transaction-ID": transaction_id}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        async def _send() -> httpx.Response:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(f"{self.base_url}{path}", json=payload, headers=headers)
            if response.status_code >= 500 or response.status_code == 429:
                response.raise_for_status()
            return response

        try:
            response = await self.breaker.call(_send)
        except CircuitBreakerOpenError as exc:
            raise CreditProviderError(
                "SERVICE_UNAVAILABLE", "Credit reporting service temporarily unavailable", retryable=True
            ) from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "credit_provider_upstream_error",
                extra={"extra": {"status_code": exc.response.status_code, "path": path}},
            )
            raise CreditProviderError(
                "SERVICE_UNAVAILABLE", "Credit reporting service temporarily unavailable", retryable=True
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "credit_provider_transport_error",
                extra={"extra": {"error": type(exc).__name__, "path": path}},
            )
            raise CreditProviderError(
                "SERVICE_UNAVAILABLE", "Credit reporting service temporarily unavailable", retryable=True
            ) from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise CreditProviderError("API_ERROR", "Credit API returned an invalid body", retryable=False) from exc
        if response.status_code >= 400:
            error = body.get("error") if isinstance(body, dict) else None
            error = error if isinstance(error, dict) else {}
            raise CreditProviderError(
                str(error.get("code") or "API_ERROR"),
                str(error.get("message") or "Credit API request failed"),
                retryable=False,
            )
        return body


def build_credit_provider(app_settings, *, transport: httpx.AsyncBaseTransport | None = None) -> CreditProvider:
    if app_settings.credit_provider == "http" and app_settings.credit_provider_url:
        return HttpCreditProvider(
            app_settings.credit_provider_url,
            api_key=app_settings.credit_provider_api_key,
            timeout_seconds=app_settings.credit_provider_timeout_seconds,
            transport=transport,
        )
    return MockCreditProvider()
