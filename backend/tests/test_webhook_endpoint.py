import asyncio
from datetime import datetime, timedelta, timezone

import sqlalchemy as sa

from ordersync.domain.events.db_models import EventLedgerEntry, InboundEvent
from ordersync.domain.queue.db_models import ProcessingRecord, ProcessingStatus
from ordersync.settings import settings
from tests.conftest import WEBHOOK_URL, encode, make_event, payment_event, signed_headers


def _rows(async_session_maker, model):
    async def _fetch():
        async with async_session_maker() as session:
            return list((await session.execute(sa.select(model))).scalars().all())

    return asyncio.run(_fetch())


def test_signed_delivery_is_stored_and_queued(client, async_session_maker):
    body = encode(payment_event("evt-1"))

    response = client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))

    assert response.status_code == 200
    assert response.json() == {"received": True, "duplicate": False, "event_id": "evt-1"}
    events = _rows(async_session_maker, InboundEvent)
    records = _rows(async_session_maker, ProcessingRecord)
    assert [event.event_id for event in events] == ["evt-1"]
    assert events[0].signature_valid is True
    assert events[0].partition_key == "ord1"
    assert records[0].status == ProcessingStatus.QUEUED


def test_redelivery_is_acknowledged_as_duplicate(client, async_session_maker):
    body = encode(payment_event("evt-dup"))
    headers = signed_headers(body)

    first = client.post(WEBHOOK_URL, content=body, headers=headers)
    second = client.post(WEBHOOK_URL, content=body, headers=headers)

    assert first.json()["duplicate"] is False
    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert len(_rows(async_session_maker, ProcessingRecord)) == 1
    assert _rows(async_session_maker, EventLedgerEntry)[0].delivery_count == 2


def test_tampered_body_rejected(client, async_session_maker):
    body = encode(payment_event("evt-tamper"))
    headers = signed_headers(body)

    response = client.post(WEBHOOK_URL, content=body.replace(b"5826", b"1"), headers=headers)

    assert response.status_code == 401
    problem = response.json()
    assert problem["type"].endswith("/authentication")
    assert problem["errors"][0]["message"] == "invalid_signature"
    assert _rows(async_session_maker, InboundEvent) == []


def test_stale_timestamp_rejected(client):
    body = encode(payment_event("evt-stale"))
    stale = str(int((datetime.now(tz=timezone.utc) - timedelta(minutes=10)).timestamp()))

    response = client.post(WEBHOOK_URL, content=body, headers=signed_headers(body, timestamp=stale))

    assert response.status_code == 401
    assert response.json()["errors"][0]["message"] == "expired_timestamp"


def test_missing_signature_strict_vs_permissive(client, async_session_maker, monkeypatch):
    body = encode(payment_event("evt-unsigned"))
    headers = {"content-type": "application/json"}

    rejected = client.post(WEBHOOK_URL, content=body, headers=headers)
    assert rejected.status_code == 401

    monkeypatch.setattr(settings, "webhook_signature_policy", "permissive")
    accepted = client.post(WEBHOOK_URL, content=body, headers=headers)

    assert accepted.status_code == 200
    events = _rows(async_session_maker, InboundEvent)
    assert events[0].signature_flagged is True
    assert events[0].signature_valid is False


def test_oversized_body_rejected(client, monkeypatch):
    monkeypatch.setattr(settings, "webhook_max_body_bytes", 64)
    body = encode(payment_event("evt-big"))

    response = client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))

    assert response.status_code == 413
    assert response.json()["title"] == "Payload Too Large"


def test_malformed_json_rejected(client):
    body = b"{not json"

    response = client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))

    assert response.status_code == 400
    assert response.json()["errors"][0]["message"] == "malformed_json"


def test_envelope_without_event_id_rejected(client):
    body = encode({"type": "payment.updated", "data": {}})

    response = client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))

    assert response.status_code == 400
    assert response.json()["errors"][0]["message"] == "invalid_envelope"


def test_event_older_than_max_age_rejected(client, monkeypatch):
    monkeypatch.setattr(settings, "webhook_max_event_age_seconds", 3600)
    old = datetime.now(tz=timezone.utc) - timedelta(days=2)
    body = encode(make_event("payment.updated", "evt-old", {"id": "p1"}, created_at=old))

    response = client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))

    assert response.status_code == 400
    assert response.json()["errors"][0]["message"] == "event_too_old"


def test_reused_event_id_with_other_payload_rejected(client):
    original = encode(payment_event("evt-same", amount=100))
    altered = encode(payment_event("evt-same", amount=200))

    assert client.post(WEBHOOK_URL, content=original, headers=signed_headers(original)).status_code == 200
    response = client.post(WEBHOOK_URL, content=altered, headers=signed_headers(altered))

    assert response.status_code == 400
    assert response.json()["errors"][0]["message"] == "payload_mismatch"


def test_sandbox_environment_uses_sandbox_key(client, monkeypatch):
    monkeypatch.setattr(settings, "webhook_sandbox_signature_key", "sandbox-key")
    body = encode(payment_event("evt-sandbox"))

    headers = signed_headers(body, secret="sandbox-key")
    headers[settings.webhook_environment_header] = "sandbox"
    accepted = client.post(WEBHOOK_URL, content=body, headers=headers)

    production_headers = signed_headers(body, secret="sandbox-key")
    rejected = client.post(WEBHOOK_URL, content=body, headers=production_headers)

    assert accepted.status_code == 200
    assert rejected.status_code == 401


def test_response_carries_request_id(client):
    body = encode(payment_event("evt-rid"))
    headers = {**signed_headers(body), "X-Request-ID": "req-123"}

    response = client.post(WEBHOOK_URL, content=body, headers=headers)

    assert response.headers["X-Request-ID"] == "req-123"
