import json
import logging

from ordersync.infra.logging import (
    RedactingJsonFormatter,
    bound_log_context,
    clear_log_context,
    configure_logging,
    redact_pii,
    sanitize_value,
    update_log_context,
)


def _format(message: str, **extra) -> dict:
    record = logging.LogRecord("ordersync.test", logging.INFO, __file__, 1, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return json.loads(RedactingJsonFormatter().format(record))


def test_redact_pii_masks_contact_details_and_tokens():
    text = (
        "customer ada@example.com called from +1 555-555-0100 "
        "see https://provider.test/cb?token=abc123&signature=sig with Bearer xyz"
    )

    redacted = redact_pii(text)

    assert "ada@example.com" not in redacted
    assert "555-0100" not in redacted
    assert "abc123" not in redacted
    assert "token=[REDACTED_TOKEN]" in redacted
    assert "xyz" not in redacted


def test_sanitize_value_redacts_sensitive_keys_recursively():
    payload = {
        "event_id": "evt-1",
        "email": "ada@example.com",
        "recipient": {"phone": "+15555550100", "display_name": "Ada"},
        "notes": ["reach me at ada@example.com"],
        "signature": "abc",
    }

    sanitized = sanitize_value(payload)

    assert sanitized["event_id"] == "evt-1"
    assert sanitized["email"] == "[REDACTED]"
    assert sanitized["recipient"] == {"phone": "[REDACTED]", "display_name": "Ada"}
    assert sanitized["notes"] == ["reach me at [REDACTED_EMAIL]"]
    assert sanitized["signature"] == "[REDACTED]"


def test_formatter_flattens_nested_extra_and_redacts():
    payload = _format(
        "webhook_rejected",
        extra={"event_id": "evt-9", "reason": "invalid_signature", "signature_header": "deadbeef"},
        authorization="Bearer secret",
    )

    assert payload["message"] == "webhook_rejected"
    assert payload["level"] == "INFO"
    assert payload["event_id"] == "evt-9"
    assert payload["signature_header"] == "[REDACTED]"
    assert payload["authorization"] == "[REDACTED]"


def test_bound_log_context_restores_previous_values():
    clear_log_context()
    update_log_context(request_id="req-1")

    with bound_log_context(event_id="evt-1", worker_id=None):
        inside = _format("handler_started")
    outside = _format("handler_done")
    clear_log_context()

    assert inside["request_id"] == "req-1"
    assert inside["event_id"] == "evt-1"
    assert "worker_id" not in inside
    assert outside["request_id"] == "req-1"
    assert "event_id" not in outside


def test_configured_logging_emits_json(capsys):
    configure_logging()
    logger = logging.getLogger("ordersync.test")

    logger.warning("ops_auth_failed", extra={"extra": {"path": "/v1/ops/queue", "email": "ada@example.com"}})

    captured = capsys.readouterr()
    lines = (captured.out or captured.err).strip().splitlines()
    payload = json.loads(lines[-1])
    assert payload["message"] == "ops_auth_failed"
    assert payload["path"] == "/v1/ops/queue"
    assert payload["email"] == "[REDACTED]"
