from __future__ import annotations

import logging
import time
from typing import Callable, Iterable

from ordersync.domain.alerts.schemas import Alert, AlertSeverity
from ordersync.infra.metrics import metrics

logger = logging.getLogger(__name__)


class AlertDispatcher:
    """Fans alerts out to every channel.

    Alerts below ``min_severity`` are dropped, and an alert whose key was sent
    within ``cooldown_seconds`` is suppressed. A failing channel never stops
    the others and never raises into the caller.
    """

    def __init__(
        self,
        channels: Iterable,
        *,
        min_severity: AlertSeverity | str = AlertSeverity.HIGH,
        cooldown_seconds: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.channels = list(channels)
        self.min_severity = AlertSeverity(min_severity)
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._last_sent: dict[str, float] = {}

    @classmethod
    def from_settings(cls, channels: Iterable, app_settings) -> "AlertDispatcher":
        return cls(
            channels,
            min_severity=app_settings.alert_min_severity,
            cooldown_seconds=app_settings.alert_cooldown_seconds,
        )

    def _suppressed(self, alert: Alert, now: float) -> bool:
        sent_at = self._last_sent.get(alert.key)
        return sent_at is not None and now - sent_at < self.cooldown_seconds

    def _prune(self, now: float) -> None:
        expired = [key for key, sent_at in self._last_sent.items() if now - sent_at >= self.cooldown_seconds]
        for key in expired:
            del self._last_sent[key]

    async def dispatch(self, alert: Alert) -> bool:
        if alert.severity.rank < self.min_severity.rank:
            metrics.record_alert("all", "below_threshold")
            return False
        now = self._clock()
        self._prune(now)
        if self._suppressed(alert, now):
            metrics.record_alert("all", "suppressed")
            logger.debug("alert_suppressed", extra={"extra": {"key": alert.key}})
            return False
        self._last_sent[alert.key] = now
        delivered = False
        for channel in self.channels:
            try:
                await channel.send(alert)
            except Exception as exc:  # noqa: BLE001
                metrics.record_alert(channel.name, "error")
                logger.warning(
                    "alert_channel_failed",
                    extra={"extra": {"channel": channel.name, "error": type(exc).__name__}},
                )
                continue
            metrics.record_alert(channel.name, "sent")
            delivered = True
        return delivered

    async def dispatch_all(self, alerts: Iterable[Alert]) -> int:
        sent = 0
        for alert in alerts:
            if await self.dispatch(alert):
                sent += 1
        return sent
