"""Periodic sweep that compares local orders with the ledger and the provider.

A run is a ``SyncRun`` row. Orders are scanned in ``order_id`` order and the
cursor is committed after each batch, so a cancelled run can be resumed
without revisiting orders it already handled. Corrections are conditional
updates, so repeating one is harmless.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

import anyio
import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ordersync.domain.audit.db_models import AuditSource
from ordersync.domain.audit.service import record_audit
from ordersync.domain.errors import ProcessingError, StaleRecordError
from ordersync.domain.events import service as event_service
from ordersync.domain.events.db_models import InboundEvent
from ordersync.domain.handlers.common import changed_values
from ordersync.domain.handlers.orders import map_order_state, order_details
from ordersync.domain.handlers.payments import apply_payment, map_payment_status
from ordersync.domain.orders import service as orders_service
from ordersync.domain.orders.db_models import OrderRecord, OrderStatus, PaymentStatus
from ordersync.domain.queue import service as queue_service
from ordersync.domain.queue.db_models import ProcessingStatus
from ordersync.domain.reconciliation.db_models import SyncRun, SyncRunStatus, SyncType
from ordersync.domain.reconciliation.schemas import (
    FindingAction,
    FindingKind,
    ReconciliationFinding,
    ReconciliationReport,
)
from ordersync.infra.db import as_utc, utcnow
from ordersync.infra.metrics import metrics
from ordersync.infra.provider_client import ProviderClient
from ordersync.shared.circuit_breaker import CircuitBreakerOpenError

logger = logging.getLogger(__name__)

MAX_DRIFT_SAMPLE = 50
PAYMENT_EVENT_TYPES = ("payment.created", "payment.updated")


class ReconciliationEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: ProviderClient | None = None,
        *,
        stuck_threshold: timedelta = timedelta(minutes=60),
        batch_size: int = 100,
        drift_sample_size: int = 25,
        drift_lookback: timedelta = timedelta(hours=24),
        stub_age: timedelta = timedelta(minutes=30),
        finalize_drafts: bool = False,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider
        self.stuck_threshold = stuck_threshold
        self.batch_size = max(1, batch_size)
        self.drift_sample_size = max(0, min(drift_sample_size, MAX_DRIFT_SAMPLE))
        self.drift_lookback = drift_lookback
        self.stub_age = stub_age
        self.finalize_drafts = finalize_drafts

    @classmethod
    def from_settings(cls, session_factory, provider: ProviderClient | None, app_settings) -> "ReconciliationEngine":
        return cls(
            session_factory,
            provider,
            stuck_threshold=timedelta(minutes=app_settings.reconciliation_stuck_threshold_minutes),
            batch_size=app_settings.reconciliation_batch_size,
            drift_sample_size=app_settings.reconciliation_drift_sample_size,
            drift_lookback=timedelta(hours=app_settings.reconciliation_drift_lookback_hours),
            stub_age=timedelta(minutes=app_settings.reconciliation_stub_age_minutes),
            finalize_drafts=app_settings.reconciliation_finalize_drafts,
        )

    @property
    def _provider_available(self) -> bool:
        return self._provider is not None and self._provider.configured

    async def run(
        self,
        *,
        dry_run: bool = False,
        resume: bool = False,
        should_stop: Callable[[], bool] | None = None,
    ) -> ReconciliationReport:
        should_stop = should_stop or (lambda: False)
        now = utcnow()
        report = await self._start_run(dry_run=dry_run, resume=resume, now=now)
        logger.info(
            "reconciliation_started",
            extra={"extra": {"run_id": report.run_id, "dry_run": dry_run, "resumed_from": report.resumed_from}},
        )
        try:
            await self._detect_stuck(report, now)
            finished = await self._scan_orders(report, should_stop, now)
            if finished:
                finished = await self._check_drift(report, should_stop, now)
        except anyio.get_cancelled_exc_class():
            with anyio.CancelScope(shield=True):
                await self._finish(report, SyncRunStatus.CANCELLED)
            raise
        except Exception as exc:
            logger.exception("reconciliation_failed", extra={"extra": {"run_id": report.run_id}})
            await self._finish(report, SyncRunStatus.FAILED, error=f"{type(exc).__name__}: {exc}")
            raise
        await self._finish(report, SyncRunStatus.COMPLETED if finished else SyncRunStatus.CANCELLED)
        return report

    async def _start_run(self, *, dry_run: bool, resume: bool, now: datetime) -> ReconciliationReport:
        async with self._session_factory() as session:
            cursor = None
            resumed_from = None
            if resume:
                last = await session.scalar(
                    select(SyncRun)
                    .where(SyncRun.sync_type == SyncType.RECONCILIATION, SyncRun.status != SyncRunStatus.RUNNING)
                    .order_by(SyncRun.started_at.desc())
                    .limit(1)
                )
                if last is not None and last.status == SyncRunStatus.CANCELLED and last.cursor:
                    cursor = last.cursor
                    resumed_from = last.run_id
            run = SyncRun(
                sync_type=SyncType.RECONCILIATION,
                status=SyncRunStatus.RUNNING,
                dry_run=dry_run,
                cursor=cursor,
                resumed_from=resumed_from,
                started_at=now,
            )
            session.add(run)
            await session.commit()
            return ReconciliationReport(
                run_id=run.run_id,
                status=SyncRunStatus.RUNNING,
                dry_run=dry_run,
                cursor=cursor,
                resumed_from=resumed_from,
            )

    async def _finish(self, report: ReconciliationReport, status: str, *, error: str | None = None) -> None:
        report.status = status
        async with self._session_factory() as session:
            await session.execute(
                update(SyncRun)
                .where(SyncRun.run_id == report.run_id)
                .values(
                    status=status,
                    cursor=report.cursor,
                    items_scanned=report.orders_scanned,
                    findings_count=len(report.findings),
                    corrections_count=report.corrections,
                    error_message=error,
                    finished_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        logger.info(
            "reconciliation_finished",
            extra={
                "extra": {
                    "run_id": report.run_id,
                    "status": status,
                    "findings": len(report.findings),
                    "corrections": report.corrections,
                }
            },
        )

    async def _record(
        self, session: AsyncSession, report: ReconciliationReport, finding: ReconciliationFinding
    ) -> None:
        if report.dry_run:
            finding.action = FindingAction.DRY_RUN
        report.findings.append(finding)
        metrics.record_reconciliation_finding(finding.kind, finding.action)
        await record_audit(
            session,
            source=AuditSource.RECONCILIATION,
            kind=finding.kind,
            action=finding.action,
            resource_type=finding.resource_type,
            resource_id=finding.resource_id,
            detail=finding.detail,
            before=finding.before,
            after=finding.after,
            run_id=report.run_id,
        )
        log = logger.warning if finding.needs_review else logger.info
        log(
            "reconciliation_finding",
            extra={
                "extra": {
                    "run_id": report.run_id,
                    "kind": finding.kind,
                    "action": finding.action,
                    "resource_id": finding.resource_id,
                }
            },
        )

    async def _detect_stuck(self, report: ReconciliationReport, now: datetime) -> None:
        async with self._session_factory() as session:
            stuck = await queue_service.list_stuck(session, threshold=self.stuck_threshold, now=now)
            failed_ids: set[int] = set()
            if stuck and not report.dry_run:
                failed = await queue_service.fail_stuck(session, threshold=self.stuck_threshold, now=now)
                failed_ids = {record.sequence for record in failed}
            for record in stuck:
                minutes = int((now - as_utc(record.started_at)).total_seconds() // 60)
                corrected = record.sequence in failed_ids
                if corrected:
                    await event_service.mark_failed(
                        session, record.event_id, f"Stuck in PROCESSING for {minutes} minutes", terminal=False
                    )
                before = record.snapshot()
                await self._record(
                    session,
                    report,
                    ReconciliationFinding(
                        kind=FindingKind.STUCK_PROCESSING_RECORD,
                        resource_type="processing_record",
                        resource_id=record.event_id,
                        action=FindingAction.CORRECTED if corrected else FindingAction.SKIPPED,
                        detail=f"PROCESSING for {minutes} minutes",
                        before=before,
                        after={**before, "status": ProcessingStatus.FAILED} if corrected else None,
                    ),
                )

            cutoff = now - self.stuck_threshold
            stuck_runs = (
                await session.execute(
                    select(SyncRun).where(
                        SyncRun.status == SyncRunStatus.RUNNING,
                        SyncRun.started_at < cutoff,
                        SyncRun.run_id != report.run_id,
                    )
                )
            ).scalars().all()
            for run in stuck_runs:
                minutes = int((now - as_utc(run.started_at)).total_seconds() // 60)
                message = f"Marked failed by reconciliation after {minutes} minutes in RUNNING"
                corrected = False
                if not report.dry_run:
                    result = await session.execute(
                        update(SyncRun)
                        .where(SyncRun.run_id == run.run_id, SyncRun.status == SyncRunStatus.RUNNING)
                        .values(status=SyncRunStatus.FAILED, error_message=message, finished_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    corrected = result.rowcount == 1
                await self._record(
                    session,
                    report,
                    ReconciliationFinding(
                        kind=FindingKind.STUCK_SYNC_RUN,
                        resource_type="sync_run",
                        resource_id=run.run_id,
                        action=FindingAction.CORRECTED if corrected else FindingAction.SKIPPED,
                        detail=message,
                        before={"status": SyncRunStatus.RUNNING, "sync_type": run.sync_type},
                        after={"status": SyncRunStatus.FAILED} if corrected else None,
                    ),
                )
            await session.commit()

    async def _scan_orders(
        self, report: ReconciliationReport, should_stop: Callable[[], bool], now: datetime
    ) -> bool:
        while True:
            if should_stop():
                logger.info("reconciliation_stop_requested", extra={"extra": {"run_id": report.run_id}})
                return False
            async with self._session_factory() as session:
                stmt = select(OrderRecord).order_by(OrderRecord.order_id).limit(self.batch_size)
                if report.cursor:
                    stmt = stmt.where(OrderRecord.order_id > report.cursor)
                orders = list((await session.execute(stmt)).scalars().all())
                if not orders:
                    return True
                for order in orders:
                    await self._check_order(session, report, order, now)
                report.cursor = orders[-1].order_id
                report.orders_scanned += len(orders)
                await session.execute(
                    update(SyncRun)
                    .where(SyncRun.run_id == report.run_id)
                    .values(
                        cursor=report.cursor,
                        items_scanned=report.orders_scanned,
                        findings_count=len(report.findings),
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

    async def _check_order(
        self, session: AsyncSession, report: ReconciliationReport, order: OrderRecord, now: datetime
    ) -> None:
        paid_payments = await orders_service.count_paid_payments(session, order.order_id)
        if order.payment_status == PaymentStatus.PAID and paid_payments == 0:
            await self._repair_orphaned_paid_flag(session, report, order)
        elif paid_payments and order.status == OrderStatus.PENDING:
            await self._advance_paid_order(session, report, order)

        created_at = as_utc(order.created_at)
        if order.is_stub and created_at is not None and created_at < now - self.stub_age:
            await self._merge_stub(session, report, order)

    async def _paid_payment_from_ledger(self, session: AsyncSession, external_order_id: str | None) -> dict | None:
        if not external_order_id:
            return None
        events = (
            await session.execute(
                select(InboundEvent)
                .where(
                    InboundEvent.partition_key == external_order_id,
                    InboundEvent.event_type.in_(PAYMENT_EVENT_TYPES),
                )
                .order_by(InboundEvent.received_at.desc())
            )
        ).scalars().all()
        for event in events:
            obj = ((event.payload_json or {}).get("data") or {}).get("object") or {}
            payment = obj.get("payment") if isinstance(obj, dict) else None
            if isinstance(payment, dict) and map_payment_status(payment.get("status")) == PaymentStatus.PAID:
                recovered = dict(payment)
                recovered.setdefault("id", (event.payload_json.get("data") or {}).get("id"))
                recovered.setdefault("order_id", external_order_id)
                return recovered
        return None

    async def _repair_orphaned_paid_flag(
        self, session: AsyncSession, report: ReconciliationReport, order: OrderRecord
    ) -> None:
        before = order.snapshot()
        recovered = await self._paid_payment_from_ledger(session, order.external_order_id)
        if recovered is None or not recovered.get("id"):
            await self._record(
                session,
                report,
                ReconciliationFinding(
                    kind=FindingKind.ORPHANED_PAID_FLAG,
                    resource_type="order",
                    resource_id=order.order_id,
                    action=FindingAction.REPORTED,
                    detail="Order is marked PAID but has no PAID payment and none is recorded in the ledger",
                    before=before,
                ),
            )
            return
        action = FindingAction.CORRECTED
        detail = f"Linked payment {recovered['id']} recovered from the event ledger"
        if not report.dry_run:
            try:
                await apply_payment(session, recovered)
            except StaleRecordError:
                action = FindingAction.SKIPPED
                detail = "Order changed during reconciliation; retried next run"
        await self._record(
            session,
            report,
            ReconciliationFinding(
                kind=FindingKind.ORPHANED_PAID_FLAG,
                resource_type="order",
                resource_id=order.order_id,
                action=action,
                detail=detail,
                before=before,
                after=order.snapshot() if action == FindingAction.CORRECTED else None,
            ),
        )

    async def _advance_paid_order(
        self, session: AsyncSession, report: ReconciliationReport, order: OrderRecord
    ) -> None:
        before = order.snapshot()
        action = FindingAction.CORRECTED
        if not report.dry_run:
            values = {"status": OrderStatus.PROCESSING}
            if order.payment_status == PaymentStatus.PENDING:
                values["payment_status"] = PaymentStatus.PAID
            try:
                await orders_service.update_order(session, order, **values)
            except StaleRecordError:
                action = FindingAction.SKIPPED
        await self._record(
            session,
            report,
            ReconciliationFinding(
                kind=FindingKind.PAID_ORDER_STILL_PENDING,
                resource_type="order",
                resource_id=order.order_id,
                action=action,
                detail="Order has a PAID payment but is still PENDING",
                before=before,
                after=order.snapshot() if action == FindingAction.CORRECTED else None,
            ),
        )

    async def _merge_stub(self, session: AsyncSession, report: ReconciliationReport, order: OrderRecord) -> None:
        before = order.snapshot()
        finding = ReconciliationFinding(
            kind=FindingKind.STUB_ORDER,
            resource_type="order",
            resource_id=order.order_id,
            action=FindingAction.REPORTED,
            detail="Placeholder order never received its order.created event",
            before=before,
        )
        if not self._provider_available or not order.external_order_id:
            await self._record(session, report, finding)
            return
        try:
            snapshot = await self._provider.get_order(order.external_order_id)
        except (CircuitBreakerOpenError, ProcessingError, httpx.HTTPError) as exc:
            finding.detail = f"Placeholder order could not be fetched from provider: {type(exc).__name__}"
            await self._record(session, report, finding)
            return

        values = order_details(snapshot.raw)
        values["is_stub"] = False
        if snapshot.state:
            values["external_state"] = snapshot.state.upper()
        if snapshot.version is not None:
            values["external_version"] = snapshot.version
        target = map_order_state(snapshot.state)
        if orders_service.advances(order.status, target):
            values["status"] = target
        values = changed_values(order, values)
        finding.action = FindingAction.CORRECTED
        finding.detail = "Placeholder order merged from provider snapshot"
        if not report.dry_run:
            try:
                await orders_service.update_order(session, order, **values)
            except StaleRecordError:
                finding.action = FindingAction.SKIPPED
                finding.detail = "Order changed during reconciliation; retried next run"
        finding.after = order.snapshot() if finding.action == FindingAction.CORRECTED else None
        await self._record(session, report, finding)

    async def _check_drift(
        self, report: ReconciliationReport, should_stop: Callable[[], bool], now: datetime
    ) -> bool:
        if not self._provider_available or self.drift_sample_size == 0:
            return True
        async with self._session_factory() as session:
            sample = (
                await session.execute(
                    select(OrderRecord)
                    .where(
                        OrderRecord.external_order_id.is_not(None),
                        OrderRecord.is_stub.is_(False),
                        OrderRecord.updated_at >= now - self.drift_lookback,
                    )
                    .order_by(OrderRecord.updated_at.desc())
                    .limit(self.drift_sample_size)
                )
            ).scalars().all()
            for order in sample:
                if should_stop():
                    await session.commit()
                    return False
                try:
                    snapshot = await self._provider.get_order(order.external_order_id)
                except CircuitBreakerOpenError:
                    await self._record(session, report, self._drift_failed(order, "provider circuit open"))
                    break
                except (ProcessingError, httpx.HTTPError) as exc:
                    await self._record(session, report, self._drift_failed(order, type(exc).__name__))
                    continue
                await self._compare(session, report, order, snapshot)
                await session.commit()
            await session.commit()
        return True

    @staticmethod
    def _drift_failed(order: OrderRecord, reason: str) -> ReconciliationFinding:
        return ReconciliationFinding(
            kind=FindingKind.DRIFT_CHECK_FAILED,
            resource_type="order",
            resource_id=order.order_id,
            action=FindingAction.SKIPPED,
            detail=f"Provider lookup failed: {reason}",
        )

    async def _compare(
        self, session: AsyncSession, report: ReconciliationReport, order: OrderRecord, snapshot
    ) -> None:
        external_state = (snapshot.state or "").upper()
        before = order.snapshot()
        open_statuses = (OrderStatus.PENDING, OrderStatus.PROCESSING, OrderStatus.PAID)

        paid_and_open = order.payment_status == PaymentStatus.PAID and order.status in open_statuses
        if external_state == "COMPLETED" and paid_and_open:
            action = FindingAction.CORRECTED
            if not report.dry_run:
                try:
                    await orders_service.update_order(
                        session,
                        order,
                        status=OrderStatus.COMPLETED,
                        external_state=external_state,
                        external_version=snapshot.version,
                    )
                except StaleRecordError:
                    action = FindingAction.SKIPPED
            await self._record(
                session,
                report,
                ReconciliationFinding(
                    kind=FindingKind.EXTERNAL_DRIFT,
                    resource_type="order",
                    resource_id=order.order_id,
                    action=action,
                    detail="Provider order is COMPLETED",
                    before=before,
                    after=order.snapshot() if action == FindingAction.CORRECTED else None,
                ),
            )
        elif external_state in ("CANCELED", "CANCELLED") and order.status != OrderStatus.CANCELLED:
            await self._record(
                session,
                report,
                ReconciliationFinding(
                    kind=FindingKind.EXTERNAL_DRIFT,
                    resource_type="order",
                    resource_id=order.order_id,
                    action=FindingAction.REPORTED,
                    detail=f"Provider order is CANCELED while local order is {order.status}",
                    before=before,
                ),
            )
        elif external_state == "DRAFT" and order.payment_status == PaymentStatus.PAID:
            await self._finalize_draft(session, report, order, snapshot)

        if (
            snapshot.total_cents is not None
            and order.total_cents
            and int(snapshot.total_cents) != order.total_cents
        ):
            await self._record(
                session,
                report,
                ReconciliationFinding(
                    kind=FindingKind.EXTERNAL_DRIFT,
                    resource_type="order",
                    resource_id=order.order_id,
                    action=FindingAction.REPORTED,
                    detail=f"Total mismatch: local {order.total_cents}, provider {snapshot.total_cents}",
                    before=before,
                ),
            )

    async def _finalize_draft(
        self, session: AsyncSession, report: ReconciliationReport, order: OrderRecord, snapshot
    ) -> None:
        finding = ReconciliationFinding(
            kind=FindingKind.UNFINALIZED_EXTERNAL_ORDER,
            resource_type="order",
            resource_id=order.order_id,
            action=FindingAction.REPORTED,
            detail="Provider order is still DRAFT for a paid local order",
            before=order.snapshot(),
        )
        if self.finalize_drafts and not report.dry_run:
            try:
                updated = await self._provider.update_order(
                    order.external_order_id,
                    {"state": "OPEN"},
                    version=snapshot.version,
                    idempotency_key=f"finalize-{order.order_id}-{snapshot.version}",
                )
            except (CircuitBreakerOpenError, ProcessingError, httpx.HTTPError) as exc:
                finding.detail = f"Finalizing provider order failed: {type(exc).__name__}"
            else:
                finding.action = FindingAction.CORRECTED
                finding.detail = "Provider order finalized to OPEN"
                finding.after = {"external_state": updated.state, "external_version": updated.version}
        await self._record(session, report, finding)
