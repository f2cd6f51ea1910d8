import hashlib
import re

_NON_DIGITS_RE = re.compile(r"\D+")


def digits_only(value: str | None) -> str:
    if not value:
        return ""
    return _NON_DIGITS_RE.sub("", value)


def mask_ssn(ssn: str | None) -> str | None:
    digits = digits_only(ssn)
    if not digits:
        return None
    return f"***-**-{digits[-4:]}"


def mask_email(email: str | None) -> str | None:
    if not email or "@" not in email:
        return email
    local, _, domain = email.partition("@")
    if len(local) <= 1:
        return f"*@{domain}"
    return f"{local[0]}***@{domain}"


def normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    normalized = email.strip().lower()
    return normalized or None


def normalize_phone_e164(phone: str | None, default_country_code: str = "1") -> str | None:
    """Best-effort E.164 normalization; ten digit numbers get ``default_country_code``."""
    if not phone:
        return None
    digits = digits_only(phone)
    if not digits:
        return None
    if phone.strip().startswith("+"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+{default_country_code}{digits}"
    if len(digits) == 11 and digits.startswith(default_country_code):
        return f"+{digits}"
    return f"+{digits}"


def normalize_name(name: str | None) -> str | None:
    if name is None:
        return None
    normalized = name.strip().lower()
    return normalized or None


def sha256_hex(value: str | None) -> str | None:
    if value is None:
        return None
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
