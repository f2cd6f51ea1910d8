import contextvars
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict

from glasswallet.shared.pii import digits_only, mask_email, mask_ssn

CARD_RE = re.compile(r"\b(?:\d{4}[-\s]?){3}\d{4}\b")
SSN_RE = re.compile(r"\b\d{3}-?\d{2}-?\d{4}\b")
EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
PHONE_RE = re.compile(r"\b(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b")
ADDRESS_RE = re.compile(
    r"\b\d{1,6}\s+[A-Za-z0-9.\-\s]+(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Drive|Dr|"
    r"Lane|Ln|Way|Court|Ct|Place|Pl)\b",
    re.IGNORECASE,
)
AUTH_HEADER_RE = re.compile(r"(?i)\b(?P<header>authorization|x-api-key)\s*[:=]\s*[^\s]+")
TOKEN_QUERY_RE = re.compile(
    r"(?P<key>(?:token|access_token|refresh_token|code|state|api_key|client_secret|signature|sig))="
    r"(?P<value>[^&\s]+)",
    re.IGNORECASE,
)
BEARER_RE = re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]+")


def _last_four(match: re.Match) -> str:
    return digits_only(match.group(0))[-4:]


def _mask_phone(value: str) -> str:
    digits = digits_only(value)
    return f"(***) ***-{digits[-4:]}" if digits else value


# Lead identity fields keep their last four characters.
MASKED_KEYS: dict[str, Callable[[str], str | None]] = {
    "ssn": mask_ssn,
    "email": mask_email,
    "phone": _mask_phone,
}
REDACTED_KEYS = {
    "address",
    "date_of_birth",
    "dateofbirth",
    "authorization",
    "api_key",
    "apikey",
    "x-api-key",
    "token",
    "access_token",
    "accesstoken",
    "refresh_token",
    "refreshtoken",
    "client_secret",
    "secret",
    "signature",
}
NOISY_LOGGERS = ("httpx", "httpcore")
LOG_CONTEXT: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar("log_context", default={})
_LOG_RECORD_ATTRS = set(logging.LogRecord(None, 0, "", 0, "", (), None).__dict__.keys())


_TEXT_MASKS: tuple[tuple[re.Pattern, Callable[[re.Match], str]], ...] = (
    (CARD_RE, lambda match: f"****-****-****-{_last_four(match)}"),
    (SSN_RE, lambda match: f"***-**-{_last_four(match)}"),
    (EMAIL_RE, lambda match: mask_email(match.group(0)) or ""),
    (PHONE_RE, lambda match: f"(***) ***-{_last_four(match)}"),
    (ADDRESS_RE, lambda match: "[REDACTED_ADDRESS]"),
    (TOKEN_QUERY_RE, lambda match: f"{match.group('key')}=[REDACTED_TOKEN]"),
    (AUTH_HEADER_RE, lambda match: f"{match.group('header').lower()}=[REDACTED_TOKEN]"),
    (BEARER_RE, lambda match: "Bearer [REDACTED_TOKEN]"),
)


def redact_pii(value: str) -> str:
    """Mask lead identifiers and credentials that leak into free-form log text."""
    for pattern, replacement in _TEXT_MASKS:
        value = pattern.sub(replacement, value)
    return value


def _sanitize_value(value: Any, key: str | None = None) -> Any:
    normalized_key = key.lower() if key else None
    if normalized_key in REDACTED_KEYS:
        return "[REDACTED]"
    if normalized_key in MASKED_KEYS and isinstance(value, str):
        return MASKED_KEYS[normalized_key](value)
    if isinstance(value, str):
        return redact_pii(value)
    if isinstance(value, list):
        return [_sanitize_value(item) for item in value]
    if isinstance(value, dict):
        return {item_key: _sanitize_value(item_value, item_key) for item_key, item_value in value.items()}
    return value


def update_log_context(**kwargs: Any) -> dict[str, Any]:
    current = LOG_CONTEXT.get({})
    merged = {**current, **{key: value for key, value in kwargs.items() if value is not None}}
    LOG_CONTEXT.set(merged)
    return merged


def clear_log_context() -> None:
    LOG_CONTEXT.set({})


def _extract_extra(record: logging.LogRecord) -> dict[str, Any]:
    structured = {
        key: value
        for key, value in record.__dict__.items()
        if key not in _LOG_RECORD_ATTRS and not key.startswith("_")
    }
    extra_payload = structured.pop("extra", None)
    if isinstance(extra_payload, dict):
        structured.update(extra_payload)
    return structured


class RedactingJsonFormatter(logging.Formatter):
    """One JSON object per line; request context and ``extra`` fields are merged after masking."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": redact_pii(str(record.getMessage())),
            "logger": record.name,
        }
        context = LOG_CONTEXT.get({})
        if context:
            payload.update(_sanitize_value(context))
        extra = _extract_extra(record)
        if extra:
            payload.update(_sanitize_value(extra))
        if record.exc_info and record.exc_info[0]:
            payload["exc_type"] = record.exc_info[0].__name__
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(RedactingJsonFormatter())
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)
    # Pixel API URLs carry access tokens in the query string.
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
