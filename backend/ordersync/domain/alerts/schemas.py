from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ordersync.infra.db import utcnow


class AlertSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK = {
    AlertSeverity.LOW: 0,
    AlertSeverity.MEDIUM: 1,
    AlertSeverity.HIGH: 2,
    AlertSeverity.CRITICAL: 3,
}


class AlertType(str, Enum):
    STUCK_ORDER = "STUCK_ORDER"
    PAYMENT_FAILURE = "PAYMENT_FAILURE"
    API_ERROR = "API_ERROR"
    HEALTH_CHECK_FAIL = "HEALTH_CHECK_FAIL"
    DEAD_LETTER = "DEAD_LETTER"
    QUEUE_BACKLOG = "QUEUE_BACKLOG"
    RECONCILIATION_DRIFT = "RECONCILIATION_DRIFT"
    SIGNATURE_FLAGGED = "SIGNATURE_FLAGGED"
    WEBHOOK_SECURITY = "WEBHOOK_SECURITY"


class Alert(BaseModel):
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    description: str
    data: dict[str, Any] = Field(default_factory=dict)
    dedupe_key: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return self.dedupe_key or f"{self.alert_type.value}:{self.title}"


class HealthSnapshot(BaseModel):
    queue_counts: dict[str, int] = Field(default_factory=dict)
    oldest_queued_seconds: float | None = None
    dead_letter_count: int = 0
    flagged_signatures: int = 0
    failed_payments: int = 0
    stuck_pending_orders: list[str] = Field(default_factory=list)
    paid_pending_orders: list[str] = Field(default_factory=list)
    collected_at: datetime = Field(default_factory=utcnow)
