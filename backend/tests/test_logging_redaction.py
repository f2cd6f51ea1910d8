import json
import logging

from glasswallet.infra.logging import clear_log_context, configure_logging, redact_pii, update_log_context


def _last_payload(capsys) -> dict:
    captured = capsys.readouterr()
    stream = (captured.out or captured.err).strip().splitlines()
    assert stream
    return json.loads(stream[-1])


def test_logging_masks_lead_identity_and_drops_credentials(capsys):
    configure_logging()
    logger = logging.getLogger("pii-test")

    logger.info(
        "sensitive log",
        extra={
            "authorization": "Bearer super-secret",
            "extra": {
                "ssn": "123-45-6789",
                "email": "jane@example.com",
                "phone": "555-010-2000",
                "access_token": "EAAB-token",
                "url": "https://graph.example.com/events?access_token=abc123&sig=signed",
            },
        },
    )

    payload = _last_payload(capsys)
    assert payload["authorization"] == "[REDACTED]"
    assert payload["access_token"] == "[REDACTED]"
    assert payload["ssn"] == "***-**-6789"
    assert payload["email"] == "j***@example.com"
    assert payload["phone"] == "(***) ***-2000"
    assert "abc123" not in payload["url"]
    assert "signed" not in payload["url"]
    assert "access_token=[REDACTED_TOKEN]" in payload["url"]


def test_log_context_is_merged_and_cleared(capsys):
    configure_logging()
    logger = logging.getLogger("context-test")

    update_log_context(request_id="req-9", user_id=None)
    logger.info("with context")
    with_context = _last_payload(capsys)
    clear_log_context()
    logger.info("without context")
    without_context = _last_payload(capsys)

    assert with_context["request_id"] == "req-9"
    assert "user_id" not in with_context
    assert "request_id" not in without_context


def test_redact_pii_keeps_last_four_digits():
    text = redact_pii(
        "lead jane@example.com lives at 42 Main Street, ssn 123-45-6789, phone (555) 010-2000, "
        "card 4111 1111 1111 1111, header Authorization: abc"
    )

    assert "j***@example.com" in text
    assert "[REDACTED_ADDRESS]" in text
    assert "***-**-6789" in text
    assert "(***) ***-2000" in text
    assert "****-****-****-1111" in text
    assert "authorization=[REDACTED_TOKEN]" in text
    assert "123-45" not in text
    assert "010-2000" not in text
