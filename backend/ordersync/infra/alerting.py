"""Alert sinks. Each channel exposes ``name`` and ``async send(alert)``."""

from __future__ import annotations

import json
import logging
from typing import Protocol

import httpx

from ordersync.domain.alerts.schemas import Alert, AlertSeverity
from ordersync.infra.logging import sanitize_value
from ordersync.shared.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

SEVERITY_COLORS = {
    AlertSeverity.LOW: 0x2E86DE,
    AlertSeverity.MEDIUM: 0xF1C40F,
    AlertSeverity.HIGH: 0xE67E22,
    AlertSeverity.CRITICAL: 0xC0392B,
}


class AlertChannel(Protocol):
    name: str

    async def send(self, alert: Alert) -> None: ...


class LogAlertChannel:
    name = "log"

    async def send(self, alert: Alert) -> None:
        log = logger.error if alert.severity == AlertSeverity.CRITICAL else logger.warning
        log(
            "alert",
            extra={
                "extra": {
                    "alert_type": alert.alert_type.value,
                    "severity": alert.severity.value,
                    "title": alert.title,
                    "data": sanitize_value(alert.data),
                }
            },
        )


def _format_slack(alert: Alert) -> dict:
    fields = [{"type": "mrkdwn", "text": f"*{key}*\n{value}"} for key, value in list(alert.data.items())[:10]]
    blocks: list[dict] = [
        {"type": "header", "text": {"type": "plain_text", "text": f"[{alert.severity.value}] {alert.title}"}},
        {"type": "section", "text": {"type": "mrkdwn", "text": alert.description}},
    ]
    if fields:
        blocks.append({"type": "section", "fields": fields})
    return {"text": f"[{alert.severity.value}] {alert.title}", "blocks": blocks}


def _format_discord(alert: Alert) -> dict:
    return {
        "embeds": [
            {
                "title": f"[{alert.severity.value}] {alert.title}",
                "description": alert.description,
                "color": SEVERITY_COLORS[alert.severity],
                "fields": [
                    {"name": str(key), "value": str(value)[:1024], "inline": True}
                    for key, value in list(alert.data.items())[:10]
                ],
                "timestamp": alert.created_at.isoformat(),
            }
        ]
    }


class WebhookAlertChannel:
    name = "webhook"

    def __init__(
        self,
        url: str,
        *,
        fmt: str = "slack",
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.url = url
        self.fmt = fmt
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._breaker = breaker or CircuitBreaker(name="alert_webhook", failure_threshold=3, recovery_time=60.0)

    def payload(self, alert: Alert) -> dict:
        alert = alert.model_copy(update={"data": sanitize_value(alert.data)})
        return _format_discord(alert) if self.fmt == "discord" else _format_slack(alert)

    async def _post(self, body: dict) -> None:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.post(self.url, json=body)
        response.raise_for_status()

    async def send(self, alert: Alert) -> None:
        await self._breaker.call(self._post, self.payload(alert))


class EmailAlertChannel:
    name = "email"

    def __init__(self, email_adapter, recipients: list[str]) -> None:
        self._email_adapter = email_adapter
        self.recipients = recipients

    async def send(self, alert: Alert) -> None:
        subject = f"[{alert.severity.value}] {alert.title}"
        body = "\n\n".join(
            [
                alert.description,
                json.dumps(sanitize_value(alert.data), indent=2, default=str),
                f"Type: {alert.alert_type.value}",
            ]
        )
        for recipient in self.recipients:
            await self._email_adapter.send_email(recipient, subject, body)


def build_channels(
    app_settings, *, email_adapter=None, transport: httpx.AsyncBaseTransport | None = None
) -> list[AlertChannel]:
    channels: list[AlertChannel] = [LogAlertChannel()]
    if app_settings.alert_webhook_url:
        channels.append(
            WebhookAlertChannel(
                app_settings.alert_webhook_url,
                fmt=app_settings.alert_webhook_format,
                timeout_seconds=app_settings.alert_webhook_timeout_seconds,
                transport=transport,
            )
        )
    if email_adapter is not None and app_settings.alert_email_recipients:
        channels.append(EmailAlertChannel(email_adapter, app_settings.alert_email_recipients))
    return channels
