"""Runs the dispatch worker pool: ``python -m ordersync.jobs.workers``."""

import argparse
import asyncio
import logging

from ordersync.domain.queue.worker import WorkerPool
from ordersync.infra.logging import configure_logging
from ordersync.infra.tracing import configure_tracing
from ordersync.jobs.heartbeat import WORKERS_RUNNER, record_heartbeat, record_job_result
from ordersync.services import AppServices, build_app_services
from ordersync.settings import settings

logger = logging.getLogger(__name__)


async def supervise(pool: WorkerPool, services: AppServices, *, heartbeat_interval: float) -> None:
    await pool.start()
    try:
        while True:
            try:
                await record_heartbeat(services.session_factory, name=WORKERS_RUNNER, runner_id=pool.name)
            except Exception as exc:  # noqa: BLE001
                logger.warning("worker_heartbeat_failed", extra={"extra": {"reason": type(exc).__name__}})
            await asyncio.sleep(heartbeat_interval)
    finally:
        await pool.close()


async def drain_once(pool: WorkerPool, services: AppServices) -> int:
    try:
        handled = await pool.drain()
    except Exception as exc:
        await record_job_result(
            services.session_factory, WORKERS_RUNNER, success=False, error_reason=type(exc).__name__
        )
        raise
    await record_heartbeat(services.session_factory, name=WORKERS_RUNNER, runner_id=pool.name)
    logger.info("worker_pool_drained", extra={"extra": {"handled": handled}})
    return handled


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run the dispatch worker pool")
    parser.add_argument("--concurrency", type=int, default=None, help="Override WORKER_CONCURRENCY")
    parser.add_argument("--once", action="store_true", help="Process until the queue is empty and exit")
    args = parser.parse_args(argv)

    configure_logging()
    configure_tracing(service_name="ordersync-workers")
    services = build_app_services(settings)
    await services.open()
    pool = WorkerPool.from_settings(services.session_factory, services.registry, settings)
    if args.concurrency:
        pool.concurrency = max(1, args.concurrency)
    try:
        if args.once:
            await drain_once(pool, services)
        else:
            await supervise(pool, services, heartbeat_interval=max(settings.worker_poll_interval_seconds, 1.0))
    finally:
        await services.close()


if __name__ == "__main__":
    asyncio.run(main())
