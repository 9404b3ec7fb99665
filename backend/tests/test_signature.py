from datetime import datetime, timedelta, timezone

from ordersync.domain.webhooks.signature import (
    VerificationReason,
    compute_signature,
    parse_timestamp,
    signing_message,
    verify_signature,
)

SECRET = "sig-key"
BODY = b'{"eventId":"evt-1","type":"payment.updated"}'
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _ts(moment: datetime) -> str:
    return str(int(moment.timestamp()))


def _sign(body: bytes, timestamp: str, secret: str = SECRET) -> str:
    return compute_signature(secret, signing_message(body, timestamp))


def test_valid_signature_accepted():
    timestamp = _ts(NOW - timedelta(minutes=1))
    result = verify_signature(BODY, _sign(BODY, timestamp), timestamp, SECRET, now=NOW)

    assert result.ok is True
    assert result.reason == VerificationReason.OK
    assert result.flagged is False
    assert result.signed_at == NOW - timedelta(minutes=1)


def test_tampered_body_rejected():
    timestamp = _ts(NOW)
    signature = _sign(BODY, timestamp)

    result = verify_signature(BODY.replace(b"evt-1", b"evt-2"), signature, timestamp, SECRET, now=NOW)

    assert result.ok is False
    assert result.reason == VerificationReason.INVALID_SIGNATURE


def test_stale_timestamp_rejected():
    timestamp = _ts(NOW - timedelta(minutes=10))
    result = verify_signature(BODY, _sign(BODY, timestamp), timestamp, SECRET, now=NOW, tolerance_seconds=300)

    assert result.ok is False
    assert result.reason == VerificationReason.EXPIRED_TIMESTAMP


def test_future_timestamp_beyond_skew_rejected():
    ahead = _ts(NOW + timedelta(seconds=120))
    result = verify_signature(BODY, _sign(BODY, ahead), ahead, SECRET, now=NOW, future_skew_seconds=60)
    assert result.reason == VerificationReason.EXPIRED_TIMESTAMP

    slightly_ahead = _ts(NOW + timedelta(seconds=30))
    result = verify_signature(
        BODY, _sign(BODY, slightly_ahead), slightly_ahead, SECRET, now=NOW, future_skew_seconds=60
    )
    assert result.ok is True


def test_signature_checked_before_freshness():
    timestamp = _ts(NOW - timedelta(hours=1))
    result = verify_signature(BODY, "bm90LXRoZS1zaWduYXR1cmU=", timestamp, SECRET, now=NOW)

    assert result.reason == VerificationReason.INVALID_SIGNATURE


def test_missing_signature_strict_and_permissive():
    strict = verify_signature(BODY, None, _ts(NOW), SECRET, now=NOW, policy="strict")
    permissive = verify_signature(BODY, "  ", _ts(NOW), SECRET, now=NOW, policy="permissive")

    assert strict.ok is False
    assert strict.reason == VerificationReason.MISSING_SIGNATURE
    assert permissive.ok is True
    assert permissive.flagged is True
    assert permissive.reason == VerificationReason.MISSING_SIGNATURE


def test_missing_secret_flagged_when_permissive():
    timestamp = _ts(NOW)
    signature = _sign(BODY, timestamp)

    strict = verify_signature(BODY, signature, timestamp, "", now=NOW)
    permissive = verify_signature(BODY, signature, timestamp, None, now=NOW, policy="permissive")

    assert strict.reason == VerificationReason.MISSING_SECRET
    assert strict.ok is False
    assert permissive.ok is True
    assert permissive.flagged is True


def test_malformed_timestamp_rejected():
    result = verify_signature(BODY, _sign(BODY, "yesterday"), "yesterday", SECRET, now=NOW)

    assert result.ok is False
    assert result.reason == VerificationReason.MALFORMED_TIMESTAMP


def test_secret_whitespace_is_trimmed():
    timestamp = _ts(NOW)
    signature = _sign(BODY, timestamp, secret=SECRET)

    result = verify_signature(BODY, signature, timestamp, f"  {SECRET}\n", now=NOW)

    assert result.ok is True


def test_notification_url_scheme_without_timestamp():
    url = "https://orders.example.com/v1/webhooks/square"
    signature = compute_signature(SECRET, signing_message(BODY, None, scheme="notification_url", notification_url=url))

    accepted = verify_signature(
        BODY, signature, None, SECRET, now=NOW, scheme="notification_url", notification_url=url
    )
    wrong_url = verify_signature(
        BODY, signature, None, SECRET, now=NOW, scheme="notification_url", notification_url=url + "/other"
    )

    assert accepted.ok is True
    assert accepted.signed_at is None
    assert wrong_url.reason == VerificationReason.INVALID_SIGNATURE


def test_parse_timestamp_formats():
    assert parse_timestamp("1767268800") == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert parse_timestamp("1767268800000") == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert parse_timestamp("2026-01-01T12:00:00Z") == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert parse_timestamp("nan") is None
    assert parse_timestamp("") is None
    assert parse_timestamp(None) is None
