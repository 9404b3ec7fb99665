from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ordersync.domain.handlers.payments import apply_payment
from ordersync.domain.reconciliation.db_models import SyncRun, SyncRunStatus, SyncType
from ordersync.domain.reconciliation.schemas import PaymentSyncReport
from ordersync.infra.db import utcnow
from ordersync.infra.provider_client import ProviderClient

logger = logging.getLogger(__name__)


async def _finish_run(
    session_factory: async_sessionmaker[AsyncSession], report: PaymentSyncReport, status: str
) -> None:
    report.status = status
    async with session_factory() as session:
        await session.execute(
            update(SyncRun)
            .where(SyncRun.run_id == report.run_id)
            .values(
                status=status,
                items_processed=report.processed,
                items_failed=report.failed,
                error_message=report.error,
                finished_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()


async def sync_recent_payments(
    session_factory: async_sessionmaker[AsyncSession],
    provider: ProviderClient,
    *,
    lookback_minutes: int,
) -> PaymentSyncReport:
    """Pull payments created in the lookback window and upsert them locally.

    Each payment is applied in its own transaction; one bad payment does not
    stop the rest.
    """
    now = utcnow()
    async with session_factory() as session:
        run = SyncRun(sync_type=SyncType.PAYMENT_SYNC, status=SyncRunStatus.RUNNING, started_at=now)
        session.add(run)
        await session.commit()
    report = PaymentSyncReport(run_id=run.run_id, status=SyncRunStatus.RUNNING)

    try:
        payments = await provider.list_payments(begin_time=now - timedelta(minutes=lookback_minutes), end_time=now)
    except Exception as exc:
        report.error = f"{type(exc).__name__}: {exc}"
        await _finish_run(session_factory, report, SyncRunStatus.FAILED)
        logger.warning("payment_sync_failed", extra={"extra": {"run_id": report.run_id, "error": type(exc).__name__}})
        raise

    for payment in payments:
        async with session_factory() as session:
            try:
                await apply_payment(session, payment)
                await session.commit()
            except Exception as exc:  # noqa: BLE001
                await session.rollback()
                report.failed += 1
                logger.warning(
                    "payment_sync_item_failed",
                    extra={"extra": {"payment_id": payment.get("id"), "error": type(exc).__name__}},
                )
                continue
        report.processed += 1

    await _finish_run(session_factory, report, SyncRunStatus.COMPLETED)
    logger.info(
        "payment_sync_completed",
        extra={"extra": {"run_id": report.run_id, "processed": report.processed, "failed": report.failed}},
    )
    return report
