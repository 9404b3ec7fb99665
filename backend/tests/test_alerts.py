import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from ordersync.domain.alerts.dispatcher import AlertDispatcher
from ordersync.domain.alerts.monitor import (
    MonitorThresholds,
    collect_health_snapshot,
    evaluate_health,
    evaluate_reconciliation,
)
from ordersync.domain.alerts.schemas import Alert, AlertSeverity, AlertType, HealthSnapshot
from ordersync.domain.events import service as event_service
from ordersync.domain.queue import service as queue_service
from ordersync.domain.queue.db_models import ProcessingStatus
from ordersync.domain.reconciliation.db_models import SyncRunStatus
from ordersync.domain.reconciliation.schemas import (
    FindingAction,
    FindingKind,
    ReconciliationFinding,
    ReconciliationReport,
)
from ordersync.domain.webhooks.schemas import envelope_from_payload
from ordersync.infra.alerting import EmailAlertChannel, LogAlertChannel, WebhookAlertChannel, build_channels
from ordersync.infra.db import utcnow
from ordersync.settings import settings
from tests.conftest import payment_event


class RecordingChannel:
    def __init__(self, name="recording", fail=False):
        self.name = name
        self.fail = fail
        self.sent = []

    async def send(self, alert):
        if self.fail:
            raise RuntimeError("channel down")
        self.sent.append(alert)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _alert(severity=AlertSeverity.HIGH, **kwargs):
    kwargs.setdefault("alert_type", AlertType.DEAD_LETTER)
    kwargs.setdefault("title", "Events in dead letter")
    kwargs.setdefault("description", "2 event(s) need manual review.")
    return Alert(severity=severity, **kwargs)


@pytest.mark.anyio
async def test_dispatcher_drops_alerts_below_min_severity():
    channel = RecordingChannel()
    dispatcher = AlertDispatcher([channel], min_severity="HIGH")

    assert await dispatcher.dispatch(_alert(AlertSeverity.MEDIUM)) is False
    assert await dispatcher.dispatch(_alert(AlertSeverity.CRITICAL, title="Run failed")) is True
    assert [alert.title for alert in channel.sent] == ["Run failed"]


@pytest.mark.anyio
async def test_dispatcher_suppresses_repeats_within_cooldown():
    channel = RecordingChannel()
    clock = FakeClock()
    dispatcher = AlertDispatcher([channel], cooldown_seconds=60, clock=clock)

    assert await dispatcher.dispatch(_alert(dedupe_key="dead_letter")) is True
    clock.now += 30
    assert await dispatcher.dispatch(_alert(dedupe_key="dead_letter")) is False
    assert await dispatcher.dispatch(_alert(dedupe_key="queue_backlog")) is True
    clock.now += 31
    assert await dispatcher.dispatch(_alert(dedupe_key="dead_letter")) is True
    assert len(channel.sent) == 3


@pytest.mark.anyio
async def test_dispatcher_forgets_keys_once_cooldown_expires():
    channel = RecordingChannel()
    clock = FakeClock()
    dispatcher = AlertDispatcher([channel], cooldown_seconds=60, clock=clock)

    for index in range(20):
        await dispatcher.dispatch(_alert(dedupe_key=f"drift:EXTERNAL_DRIFT:order-{index}"))
    assert len(dispatcher._last_sent) == 20

    clock.now += 45
    await dispatcher.dispatch(_alert(dedupe_key="dead_letter"))
    assert len(dispatcher._last_sent) == 21

    clock.now += 20
    await dispatcher.dispatch(_alert(dedupe_key="queue_backlog"))
    assert set(dispatcher._last_sent) == {"dead_letter", "queue_backlog"}
    assert len(channel.sent) == 22


@pytest.mark.anyio
async def test_failing_channel_does_not_block_others():
    broken = RecordingChannel(name="broken", fail=True)
    healthy = RecordingChannel(name="healthy")
    dispatcher = AlertDispatcher([broken, healthy])

    sent = await dispatcher.dispatch_all([_alert(dedupe_key="a"), _alert(dedupe_key="b")])

    assert sent == 2
    assert len(healthy.sent) == 2


@pytest.mark.anyio
async def test_webhook_channel_posts_slack_blocks():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200)

    channel = WebhookAlertChannel(
        "https://hooks.example.com/alerts", fmt="slack", transport=httpx.MockTransport(handler)
    )
    await channel.send(_alert(data={"dead_letter_count": 2, "email": "ada@example.com"}))

    assert bodies[0]["text"] == "[HIGH] Events in dead letter"
    rendered = json.dumps(bodies[0])
    assert "dead_letter_count" in rendered
    assert "ada@example.com" not in rendered


@pytest.mark.anyio
async def test_webhook_channel_discord_embed_and_http_errors():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(500)

    channel = WebhookAlertChannel(
        "https://discord.example.com/hook", fmt="discord", transport=httpx.MockTransport(handler)
    )
    with pytest.raises(httpx.HTTPStatusError):
        await channel.send(_alert(AlertSeverity.CRITICAL))

    embed = bodies[0]["embeds"][0]
    assert embed["title"] == "[CRITICAL] Events in dead letter"
    assert embed["color"] == 0xC0392B


@pytest.mark.anyio
async def test_email_channel_sends_to_each_recipient():
    sent = []

    class FakeEmailAdapter:
        async def send_email(self, recipient, subject, body):
            sent.append((recipient, subject))
            return True

    channel = EmailAlertChannel(FakeEmailAdapter(), ["ops@example.com", "oncall@example.com"])
    await channel.send(_alert())

    assert sent == [
        ("ops@example.com", "[HIGH] Events in dead letter"),
        ("oncall@example.com", "[HIGH] Events in dead letter"),
    ]


def test_build_channels_from_settings(monkeypatch):
    monkeypatch.setattr(settings, "alert_webhook_url", None)
    assert [channel.name for channel in build_channels(settings)] == ["log"]

    monkeypatch.setattr(settings, "alert_webhook_url", "https://hooks.example.com/alerts")
    monkeypatch.setattr(settings, "alert_email_recipients_raw", "ops@example.com")
    channels = build_channels(settings, email_adapter=object())
    assert [channel.name for channel in channels] == ["log", "webhook", "email"]
    assert isinstance(channels[0], LogAlertChannel)


def test_evaluate_health_thresholds():
    thresholds = MonitorThresholds(dead_letter=1, queue_backlog=10, oldest_queued_minutes=15)
    snapshot = HealthSnapshot(
        queue_counts={ProcessingStatus.QUEUED: 12, ProcessingStatus.DEAD_LETTER: 2},
        oldest_queued_seconds=20 * 60,
        dead_letter_count=2,
        flagged_signatures=1,
        failed_payments=1,
        paid_pending_orders=["o1"],
    )

    alerts = evaluate_health(snapshot, thresholds)
    keys = {alert.key: alert for alert in alerts}

    assert set(keys) == {
        "dead_letter",
        "queue_backlog:size",
        "queue_backlog:age",
        "signature_flagged",
        "payment_failure",
        "stuck_order:paid_pending",
    }
    assert keys["signature_flagged"].severity == AlertSeverity.HIGH
    assert keys["payment_failure"].severity == AlertSeverity.MEDIUM


def test_quiet_snapshot_raises_nothing():
    assert evaluate_health(HealthSnapshot()) == []


def test_collect_health_snapshot_counts_flagged_and_dead_letters(async_session_maker):
    async def _run():
        now = utcnow()
        async with async_session_maker() as session:
            for event_id, flagged in (("evt-flagged", True), ("evt-dead", False)):
                payload = payment_event(event_id, payment_id=f"pay-{event_id}", order_id=f"ord-{event_id}")
                result = await event_service.record_event(
                    session,
                    envelope_from_payload(payload),
                    payload,
                    signature_valid=not flagged,
                    signature_flagged=flagged,
                    now=now,
                )
                await queue_service.enqueue(session, result.event, now=now - timedelta(minutes=20))
            await session.commit()
        async with async_session_maker() as session:
            await queue_service.force_fail(session, "evt-dead", "poison")
            await session.commit()
        async with async_session_maker() as session:
            return await collect_health_snapshot(session, MonitorThresholds(), now=now)

    snapshot = asyncio.run(_run())
    assert snapshot.flagged_signatures == 1
    assert snapshot.queue_counts[ProcessingStatus.QUEUED] == 1
    assert snapshot.queue_counts[ProcessingStatus.FAILED] == 1
    assert snapshot.dead_letter_count == 0
    assert snapshot.oldest_queued_seconds >= 20 * 60


def test_reconciliation_alerts_for_reported_and_failed_runs():
    report = ReconciliationReport(
        run_id="run-1",
        status=SyncRunStatus.FAILED,
        dry_run=False,
        findings=[
            ReconciliationFinding(
                kind=FindingKind.ORPHANED_PAID_FLAG,
                resource_type="order",
                resource_id="o1",
                action=FindingAction.REPORTED,
                detail="no payment",
            ),
            ReconciliationFinding(
                kind=FindingKind.STUCK_PROCESSING_RECORD,
                resource_type="processing_record",
                resource_id="evt-1",
                action=FindingAction.CORRECTED,
                detail="PROCESSING for 61 minutes",
            ),
            ReconciliationFinding(
                kind=FindingKind.DRIFT_CHECK_FAILED,
                resource_type="order",
                resource_id="o2",
                action=FindingAction.SKIPPED,
                detail="Provider lookup failed: TransientExternalError",
            ),
        ],
    )

    alerts = evaluate_reconciliation(report)

    assert [alert.alert_type for alert in alerts] == [
        AlertType.HEALTH_CHECK_FAIL,
        AlertType.RECONCILIATION_DRIFT,
        AlertType.API_ERROR,
    ]
    assert alerts[0].severity == AlertSeverity.CRITICAL
    assert alerts[1].data["resource_id"] == "o1"
