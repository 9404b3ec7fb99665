import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta

from ordersync.domain.alerts.monitor import (
    MonitorThresholds,
    collect_health_snapshot,
    evaluate_health,
    evaluate_reconciliation,
)
from ordersync.domain.events import service as event_service
from ordersync.domain.reconciliation.payment_sync import sync_recent_payments
from ordersync.domain.reconciliation.service import ReconciliationEngine
from ordersync.infra.db import utcnow
from ordersync.infra.logging import bound_log_context, configure_logging
from ordersync.infra.tracing import configure_tracing
from ordersync.jobs.heartbeat import JOBS_RUNNER, record_heartbeat, record_job_result
from ordersync.services import AppServices, build_app_services
from ordersync.settings import settings

logger = logging.getLogger(__name__)

JobRunner = Callable[[AppServices], Awaitable[dict[str, int]]]
DEFAULT_JOBS = ("reconciliation", "monitor", "payment-sync", "retention")


async def run_reconciliation(services: AppServices) -> dict[str, int]:
    engine = ReconciliationEngine.from_settings(services.session_factory, services.provider, services.app_settings)
    report = await engine.run(resume=True)
    alerts = await services.alert_dispatcher.dispatch_all(evaluate_reconciliation(report))
    return {
        "orders_scanned": report.orders_scanned,
        "findings": len(report.findings),
        "corrections": report.corrections,
        "alerts": alerts,
    }


async def run_monitor(services: AppServices) -> dict[str, int]:
    thresholds = MonitorThresholds.from_settings(services.app_settings)
    async with services.session_factory() as session:
        snapshot = await collect_health_snapshot(session, thresholds)
    alerts = evaluate_health(snapshot, thresholds)
    sent = await services.alert_dispatcher.dispatch_all(alerts)
    return {"alerts": len(alerts), "sent": sent}


async def run_payment_sync(services: AppServices) -> dict[str, int]:
    if not services.provider.configured:
        logger.info("payment_sync_skipped", extra={"extra": {"reason": "provider_not_configured"}})
        return {"skipped": 1}
    report = await sync_recent_payments(
        services.session_factory,
        services.provider,
        lookback_minutes=services.app_settings.payment_sync_lookback_minutes,
    )
    return {"processed": report.processed, "failed": report.failed}


async def run_retention(services: AppServices) -> dict[str, int]:
    app_settings = services.app_settings
    now = utcnow()
    replay_window = timedelta(
        seconds=2 * (app_settings.webhook_timestamp_tolerance_seconds + app_settings.webhook_future_skew_seconds)
    )
    async with services.session_factory() as session:
        purged = await event_service.purge_expired(
            session,
            older_than=now - timedelta(days=app_settings.retention_event_days),
            replay_older_than=now - replay_window,
        )
        await session.commit()
    return purged


JOBS: dict[str, JobRunner] = {
    "reconciliation": run_reconciliation,
    "monitor": run_monitor,
    "payment-sync": run_payment_sync,
    "retention": run_retention,
}


def _job_runner(name: str) -> JobRunner:
    try:
        return JOBS[name]
    except KeyError:
        raise ValueError(f"unknown_job:{name}") from None


async def run_job(name: str, services: AppServices) -> bool:
    """Run one job and record its outcome. Failures are logged, never raised."""
    runner = _job_runner(name)
    with bound_log_context(job=name):
        try:
            result = await runner(services)
        except Exception as exc:  # noqa: BLE001
            logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}}, exc_info=exc)
            await record_job_result(services.session_factory, name, success=False, error_reason=type(exc).__name__)
            return False
        logger.info("job_complete", extra={"extra": {"job": name, **result}})
        await record_job_result(services.session_factory, name, success=True)
        return True


async def run_loop(services: AppServices, job_names: list[str], *, interval: int, once: bool) -> None:
    for name in job_names:
        _job_runner(name)
    while True:
        for name in job_names:
            await run_job(name, services)
        await record_heartbeat(services.session_factory, name=JOBS_RUNNER)
        if once:
            break
        await asyncio.sleep(max(interval, 1))


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run periodic ordersync jobs")
    parser.add_argument("--job", action="append", dest="jobs", choices=sorted(JOBS), help="Job name to run")
    parser.add_argument("--interval", type=int, default=60, help="Seconds between loops when not using --once")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    parser.add_argument("--create-schema", action="store_true", help="Create missing tables and exit")
    args = parser.parse_args(argv)

    configure_logging()
    configure_tracing(service_name="ordersync-jobs")
    services = build_app_services(settings)
    await services.open()
    try:
        if args.create_schema:
            await services.database.create_all()
            logger.info("schema_created")
            return
        await run_loop(services, args.jobs or list(DEFAULT_JOBS), interval=args.interval, once=args.once)
    finally:
        await services.close()


if __name__ == "__main__":
    asyncio.run(main())
