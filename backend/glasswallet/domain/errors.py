from dataclasses import dataclass, field
from typing import Any


@dataclass
class DomainError(Exception):
    message: str
    code: str = "DOMAIN_ERROR"
    status_code: int = 400
    details: Any | None = None

    def __str__(self) -> str:
        return self.message


@dataclass
class ValidationError(DomainError):
    code: str = "VALIDATION_ERROR"
    status_code: int = 400


@dataclass
class AuthenticationError(DomainError):
    message: str = "Authentication required"
    code: str = "AUTHENTICATION_ERROR"
    status_code: int = 401


@dataclass
class AuthorizationError(DomainError):
    message: str = "Insufficient permissions"
    code: str = "AUTHORIZATION_ERROR"
    status_code: int = 403


@dataclass
class NotFoundError(DomainError):
    message: str = "Resource not found"
    code: str = "NOT_FOUND"
    status_code: int = 404

    @classmethod
    def for_resource(cls, resource: str, details: Any | None = None) -> "NotFoundError":
        return cls(message=f"{resource} not found", details=details)


@dataclass
class ConflictError(DomainError):
    code: str = "CONFLICT_ERROR"
    status_code: int = 409


@dataclass
class RateLimitError(DomainError):
    message: str = "Rate limit exceeded"
    code: str = "RATE_LIMIT_EXCEEDED"
    status_code: int = 429
    retry_after: int = 60


@dataclass
class InsufficientCreditsError(DomainError):
    message: str = "Insufficient credits"
    code: str = "INSUFFICIENT_CREDITS"
    status_code: int = 402
    required: int = 0
    available: int = 0

    def __post_init__(self) -> None:
        self.details = {"required": self.required, "available": self.available}


@dataclass
class BusinessLogicError(DomainError):
    code: str = "BUSINESS_LOGIC_ERROR"
    status_code: int = 400
    retryable: bool = False

    def __post_init__(self) -> None:
        if self.retryable:
            self.status_code = 503


@dataclass
class ExternalServiceError(DomainError):
    code: str = "EXTERNAL_SERVICE_ERROR"
    status_code: int = 502
    service: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
