"""HMAC verification for inbound provider notifications.

The verifier is a pure function of its inputs and a clock reading. It never
raises on bad input; every outcome is a ``VerificationResult`` with a reason.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Literal

SignatureScheme = Literal["timestamp", "notification_url"]
SignaturePolicy = Literal["strict", "permissive"]


class VerificationReason(str, Enum):
    OK = "OK"
    MISSING_SIGNATURE = "MISSING_SIGNATURE"
    MISSING_SECRET = "MISSING_SECRET"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    EXPIRED_TIMESTAMP = "EXPIRED_TIMESTAMP"
    MALFORMED_TIMESTAMP = "MALFORMED_TIMESTAMP"


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    reason: VerificationReason
    flagged: bool = False
    signed_at: datetime | None = None


def compute_signature(secret: str, message: bytes) -> str:
    digest = hmac.new(secret.strip().encode("utf-8"), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def signing_message(
    raw_body: bytes,
    timestamp: str | None,
    *,
    scheme: SignatureScheme = "timestamp",
    notification_url: str | None = None,
) -> bytes:
    if scheme == "notification_url":
        return (notification_url or "").encode("utf-8") + raw_body
    return (timestamp or "").encode("utf-8") + b"." + raw_body


def parse_timestamp(value: str | None) -> datetime | None:
    """Accepts unix seconds, unix milliseconds or ISO-8601. Returns None when unparsable."""
    if value is None:
        return None
    candidate = value.strip()
    if not candidate:
        return None
    try:
        numeric = float(candidate)
    except ValueError:
        numeric = None
    if numeric is not None:
        if not math.isfinite(numeric):
            return None
        if numeric > 1e12:
            numeric /= 1000.0
        try:
            return datetime.fromtimestamp(numeric, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        parsed = datetime.fromisoformat(candidate.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def check_freshness(
    signed_at: datetime,
    now: datetime,
    *,
    tolerance_seconds: int = 300,
    future_skew_seconds: int = 60,
) -> bool:
    age = now - signed_at
    if age > timedelta(seconds=tolerance_seconds):
        return False
    return -age <= timedelta(seconds=future_skew_seconds)


def verify_signature(
    raw_body: bytes,
    signature_header: str | None,
    timestamp_header: str | None,
    secret: str | None,
    *,
    now: datetime | None = None,
    tolerance_seconds: int = 300,
    future_skew_seconds: int = 60,
    scheme: SignatureScheme = "timestamp",
    notification_url: str | None = None,
    policy: SignaturePolicy = "strict",
) -> VerificationResult:
    now = now or datetime.now(tz=timezone.utc)
    signature = (signature_header or "").strip()
    secret = (secret or "").strip()

    if not signature:
        if policy == "permissive":
            return VerificationResult(ok=True, reason=VerificationReason.MISSING_SIGNATURE, flagged=True)
        return VerificationResult(ok=False, reason=VerificationReason.MISSING_SIGNATURE)
    if not secret:
        if policy == "permissive":
            return VerificationResult(ok=True, reason=VerificationReason.MISSING_SECRET, flagged=True)
        return VerificationResult(ok=False, reason=VerificationReason.MISSING_SECRET)

    signed_at = parse_timestamp(timestamp_header)
    timestamp_required = scheme == "timestamp"
    if signed_at is None and (timestamp_required or (timestamp_header or "").strip()):
        return VerificationResult(ok=False, reason=VerificationReason.MALFORMED_TIMESTAMP)

    expected = compute_signature(
        secret,
        signing_message(raw_body, (timestamp_header or "").strip(), scheme=scheme, notification_url=notification_url),
    )
    if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8", "replace")):
        return VerificationResult(ok=False, reason=VerificationReason.INVALID_SIGNATURE, signed_at=signed_at)

    if signed_at is not None and not check_freshness(
        signed_at, now, tolerance_seconds=tolerance_seconds, future_skew_seconds=future_skew_seconds
    ):
        return VerificationResult(ok=False, reason=VerificationReason.EXPIRED_TIMESTAMP, signed_at=signed_at)

    return VerificationResult(ok=True, reason=VerificationReason.OK, signed_at=signed_at)
