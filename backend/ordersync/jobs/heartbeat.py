import socket

from sqlalchemy.ext.asyncio import async_sessionmaker

from ordersync.domain.ops.db_models import JobHeartbeat
from ordersync.infra.db import utcnow
from ordersync.infra.metrics import metrics

JOBS_RUNNER = "jobs-runner"
WORKERS_RUNNER = "dispatch-workers"


def _resolve_runner_id(runner_id: str | None = None) -> str:
    if runner_id and runner_id.strip():
        return runner_id.strip()
    return socket.gethostname()


async def record_heartbeat(
    session_factory: async_sessionmaker, name: str = JOBS_RUNNER, *, runner_id: str | None = None
) -> None:
    await record_job_result(session_factory, name, success=True, runner_id=runner_id)
    metrics.record_job_heartbeat(name, utcnow().timestamp())


async def record_job_result(
    session_factory: async_sessionmaker,
    name: str,
    *,
    success: bool,
    error_reason: str | None = None,
    runner_id: str | None = None,
) -> JobHeartbeat:
    """Upsert the heartbeat row for ``name`` and export the matching metrics."""
    now = utcnow()
    resolved_runner_id = _resolve_runner_id(runner_id)
    async with session_factory() as session:
        record = await session.get(JobHeartbeat, name)
        if record is None:
            record = JobHeartbeat(name=name, consecutive_failures=0)
            session.add(record)
        record.last_heartbeat = now
        record.runner_id = resolved_runner_id
        record.updated_at = now
        if success:
            record.last_success_at = now
            record.consecutive_failures = 0
            record.last_error = None
            record.last_error_at = None
        else:
            record.consecutive_failures = (record.consecutive_failures or 0) + 1
            record.last_error = (error_reason or "unknown")[:255]
            record.last_error_at = now
        await session.commit()
    if success:
        metrics.record_job_success(name, now.timestamp())
    else:
        metrics.record_job_error(name, error_reason or "unknown")
    return record
