from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ordersync.domain.alerts.schemas import Alert, AlertSeverity, AlertType, HealthSnapshot
from ordersync.domain.errors import ReconciliationDriftError
from ordersync.domain.events.db_models import InboundEvent
from ordersync.domain.orders.db_models import OrderRecord, OrderStatus, PaymentRecord, PaymentStatus
from ordersync.domain.queue import service as queue_service
from ordersync.domain.queue.db_models import ProcessingStatus
from ordersync.domain.reconciliation.db_models import SyncRunStatus
from ordersync.domain.reconciliation.schemas import FindingKind, ReconciliationReport
from ordersync.infra.db import utcnow

STUCK_ORDER_SAMPLE = 50


@dataclass(frozen=True)
class MonitorThresholds:
    dead_letter: int = 1
    queue_backlog: int = 100
    oldest_queued_minutes: int = 15
    stuck_order_minutes: int = 60
    lookback_hours: int = 24

    @classmethod
    def from_settings(cls, app_settings) -> "MonitorThresholds":
        return cls(
            dead_letter=app_settings.monitor_dead_letter_threshold,
            queue_backlog=app_settings.monitor_queue_backlog_threshold,
            oldest_queued_minutes=app_settings.monitor_oldest_queued_minutes,
            stuck_order_minutes=app_settings.monitor_stuck_order_minutes,
            lookback_hours=app_settings.monitor_lookback_hours,
        )


async def _count(session: AsyncSession, model, *conditions) -> int:
    return int(await session.scalar(select(func.count()).select_from(model).where(*conditions)) or 0)


async def collect_health_snapshot(
    session: AsyncSession,
    thresholds: MonitorThresholds | None = None,
    *,
    now: datetime | None = None,
) -> HealthSnapshot:
    thresholds = thresholds or MonitorThresholds()
    now = now or utcnow()
    since = now - timedelta(hours=thresholds.lookback_hours)
    stats = await queue_service.queue_stats(session, now=now)

    flagged = await _count(
        session, InboundEvent, InboundEvent.signature_flagged.is_(True), InboundEvent.received_at >= since
    )
    failed_payments = await _count(
        session, PaymentRecord, PaymentRecord.status == PaymentStatus.FAILED, PaymentRecord.updated_at >= since
    )
    stuck_cutoff = now - timedelta(minutes=thresholds.stuck_order_minutes)
    stuck_pending = (
        await session.execute(
            select(OrderRecord.order_id)
            .where(
                OrderRecord.status == OrderStatus.PENDING,
                OrderRecord.created_at < stuck_cutoff,
                OrderRecord.created_at >= since,
            )
            .order_by(OrderRecord.created_at)
            .limit(STUCK_ORDER_SAMPLE)
        )
    ).scalars().all()
    paid_pending = (
        await session.execute(
            select(OrderRecord.order_id)
            .where(
                OrderRecord.status == OrderStatus.PENDING,
                OrderRecord.payment_status == PaymentStatus.PAID,
                OrderRecord.updated_at >= since,
            )
            .limit(STUCK_ORDER_SAMPLE)
        )
    ).scalars().all()
    return HealthSnapshot(
        queue_counts=stats.counts,
        oldest_queued_seconds=stats.oldest_queued_seconds,
        dead_letter_count=stats.counts.get(ProcessingStatus.DEAD_LETTER, 0),
        flagged_signatures=flagged,
        failed_payments=failed_payments,
        stuck_pending_orders=list(stuck_pending),
        paid_pending_orders=list(paid_pending),
        collected_at=now,
    )


def evaluate_health(snapshot: HealthSnapshot, thresholds: MonitorThresholds | None = None) -> list[Alert]:
    thresholds = thresholds or MonitorThresholds()
    alerts: list[Alert] = []

    if thresholds.dead_letter and snapshot.dead_letter_count >= thresholds.dead_letter:
        alerts.append(
            Alert(
                alert_type=AlertType.DEAD_LETTER,
                severity=AlertSeverity.HIGH,
                title="Events in dead letter",
                description=f"{snapshot.dead_letter_count} event(s) need manual review.",
                data={"dead_letter_count": snapshot.dead_letter_count},
                dedupe_key="dead_letter",
            )
        )

    queued = snapshot.queue_counts.get(ProcessingStatus.QUEUED, 0)
    if queued >= thresholds.queue_backlog:
        alerts.append(
            Alert(
                alert_type=AlertType.QUEUE_BACKLOG,
                severity=AlertSeverity.HIGH,
                title="Dispatch queue backlog",
                description=f"{queued} events are waiting to be processed.",
                data={"queued": queued},
                dedupe_key="queue_backlog:size",
            )
        )
    oldest = snapshot.oldest_queued_seconds
    if oldest is not None and oldest >= thresholds.oldest_queued_minutes * 60:
        alerts.append(
            Alert(
                alert_type=AlertType.QUEUE_BACKLOG,
                severity=AlertSeverity.HIGH,
                title="Dispatch queue is not draining",
                description=f"Oldest queued event has waited {int(oldest // 60)} minutes.",
                data={"oldest_queued_seconds": int(oldest)},
                dedupe_key="queue_backlog:age",
            )
        )

    if snapshot.flagged_signatures:
        alerts.append(
            Alert(
                alert_type=AlertType.SIGNATURE_FLAGGED,
                severity=AlertSeverity.HIGH,
                title="Webhooks accepted without a verified signature",
                description=(
                    f"{snapshot.flagged_signatures} webhook(s) were accepted under the permissive signature policy."
                ),
                data={"flagged": snapshot.flagged_signatures, "lookback_hours": thresholds.lookback_hours},
                dedupe_key="signature_flagged",
            )
        )

    if snapshot.failed_payments:
        alerts.append(
            Alert(
                alert_type=AlertType.PAYMENT_FAILURE,
                severity=AlertSeverity.HIGH if snapshot.failed_payments >= 5 else AlertSeverity.MEDIUM,
                title="Failed payments",
                description=f"{snapshot.failed_payments} payment(s) failed in the lookback window.",
                data={"failed_payments": snapshot.failed_payments},
                dedupe_key="payment_failure",
            )
        )

    if snapshot.paid_pending_orders:
        alerts.append(
            Alert(
                alert_type=AlertType.STUCK_ORDER,
                severity=AlertSeverity.HIGH,
                title="Paid orders still pending",
                description=f"{len(snapshot.paid_pending_orders)} paid order(s) have not advanced.",
                data={"order_ids": snapshot.paid_pending_orders[:10]},
                dedupe_key="stuck_order:paid_pending",
            )
        )
    if snapshot.stuck_pending_orders:
        alerts.append(
            Alert(
                alert_type=AlertType.STUCK_ORDER,
                severity=AlertSeverity.MEDIUM,
                title="Orders pending too long",
                description=(
                    f"{len(snapshot.stuck_pending_orders)} order(s) pending longer than "
                    f"{thresholds.stuck_order_minutes} minutes."
                ),
                data={"order_ids": snapshot.stuck_pending_orders[:10]},
                dedupe_key="stuck_order:pending",
            )
        )
    return alerts


def evaluate_reconciliation(report: ReconciliationReport) -> list[Alert]:
    alerts: list[Alert] = []
    if report.status == SyncRunStatus.FAILED:
        alerts.append(
            Alert(
                alert_type=AlertType.HEALTH_CHECK_FAIL,
                severity=AlertSeverity.CRITICAL,
                title="Reconciliation run failed",
                description=f"Run {report.run_id} did not complete.",
                data={"run_id": report.run_id},
                dedupe_key="reconciliation_failed",
            )
        )

    for finding in report.findings:
        if not finding.needs_review:
            continue
        drift = ReconciliationDriftError(
            finding.detail,
            resource_id=finding.resource_id,
            data={"kind": finding.kind, "resource_type": finding.resource_type, "run_id": report.run_id},
        )
        alerts.append(
            Alert(
                alert_type=AlertType.RECONCILIATION_DRIFT,
                severity=AlertSeverity.HIGH,
                title=f"Reconciliation needs review: {finding.kind}",
                description=str(drift),
                data={**drift.data, "resource_id": drift.resource_id},
                dedupe_key=f"drift:{finding.kind}:{finding.resource_id}",
            )
        )

    failed_checks = report.findings_of(FindingKind.DRIFT_CHECK_FAILED)
    if failed_checks:
        alerts.append(
            Alert(
                alert_type=AlertType.API_ERROR,
                severity=AlertSeverity.MEDIUM,
                title="Provider lookups failed during reconciliation",
                description=f"{len(failed_checks)} drift check(s) could not reach the provider.",
                data={"run_id": report.run_id, "details": sorted({finding.detail for finding in failed_checks})},
                dedupe_key="reconciliation_api_error",
            )
        )
    return alerts
