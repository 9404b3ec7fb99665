import asyncio
from datetime import timedelta

from ordersync.domain.ops.db_models import JobHeartbeat
from ordersync.infra.db import utcnow
from ordersync.jobs.heartbeat import JOBS_RUNNER, WORKERS_RUNNER, record_heartbeat
from ordersync.settings import settings


def _checks(response) -> dict:
    return {check["name"]: check for check in response.json()["checks"]}


def test_healthz_is_static(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert client.head("/healthz").status_code == 200


def test_readyz_ok_when_heartbeats_not_required(client, monkeypatch):
    monkeypatch.setattr(settings, "job_heartbeat_required", False)

    response = client.get("/readyz")

    assert response.status_code == 200
    checks = _checks(response)
    assert checks["db"]["ok"] is True
    assert checks["jobs"]["detail"]["enabled"] is False


def test_readyz_fails_when_heartbeats_missing(client, monkeypatch):
    monkeypatch.setattr(settings, "job_heartbeat_required", True)

    response = client.get("/readyz")

    assert response.status_code == 503
    runners = _checks(response)["jobs"]["detail"]["runners"]
    assert runners[JOBS_RUNNER] == {"message": "job heartbeat missing"}
    assert runners[WORKERS_RUNNER] == {"message": "job heartbeat missing"}


def test_readyz_ok_with_fresh_heartbeats(client, async_session_maker, monkeypatch):
    monkeypatch.setattr(settings, "job_heartbeat_required", True)
    monkeypatch.setattr(settings, "job_heartbeat_ttl_seconds", 300)

    async def _beat():
        await record_heartbeat(async_session_maker, JOBS_RUNNER, runner_id="runner-a")
        await record_heartbeat(async_session_maker, WORKERS_RUNNER, runner_id="runner-b")

    asyncio.run(_beat())
    response = client.get("/readyz")

    assert response.status_code == 200
    runners = _checks(response)["jobs"]["detail"]["runners"]
    assert runners[JOBS_RUNNER]["consecutive_failures"] == 0


def test_readyz_fails_with_stale_heartbeat(client, async_session_maker, monkeypatch):
    monkeypatch.setattr(settings, "job_heartbeat_required", True)
    monkeypatch.setattr(settings, "job_heartbeat_ttl_seconds", 60)

    async def _seed():
        stale = utcnow() - timedelta(minutes=10)
        async with async_session_maker() as session:
            session.add(JobHeartbeat(name=JOBS_RUNNER, last_heartbeat=stale, updated_at=stale, consecutive_failures=0))
            await session.commit()
        await record_heartbeat(async_session_maker, WORKERS_RUNNER)

    asyncio.run(_seed())
    response = client.get("/readyz")

    assert response.status_code == 503
    assert _checks(response)["jobs"]["detail"]["runners"][JOBS_RUNNER]["age_seconds"] > 60
