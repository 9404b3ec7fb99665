import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import select, text

from ordersync.domain.ops.db_models import JobHeartbeat
from ordersync.infra.db import as_utc
from ordersync.jobs.heartbeat import JOBS_RUNNER, WORKERS_RUNNER

router = APIRouter()
logger = logging.getLogger(__name__)

_DB_CHECK_TIMEOUT_SECONDS = 2.0
REQUIRED_HEARTBEATS = (JOBS_RUNNER, WORKERS_RUNNER)


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.head("/healthz")
async def healthz_head() -> Response:
    return Response(status_code=200)


async def _db_check(request: Request) -> tuple[bool, dict[str, Any]]:
    session_factory = getattr(request.app.state, "db_session_factory", None)
    if session_factory is None:
        return False, {"message": "database session factory unavailable"}

    async def _ping_db():
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))

    try:
        await asyncio.wait_for(_ping_db(), timeout=_DB_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        return False, {"message": "database check timed out", "timeout_seconds": _DB_CHECK_TIMEOUT_SECONDS}
    except Exception as exc:  # noqa: BLE001
        logger.debug("database_check_failed", exc_info=exc)
        return False, {"message": "database check failed", "error": exc.__class__.__name__}

    return True, {"message": "database reachable"}


async def _jobs_status(request: Request) -> tuple[bool, dict[str, Any]]:
    app_settings = getattr(request.app.state, "app_settings", None)
    heartbeat_required = bool(getattr(app_settings, "job_heartbeat_required", False)) if app_settings else False
    if not heartbeat_required:
        return True, {"enabled": False, "message": "job heartbeat check disabled"}

    session_factory = getattr(request.app.state, "db_session_factory", None)
    if session_factory is None:
        return False, {"enabled": True, "message": "database session factory unavailable"}

    ttl_seconds = int(getattr(app_settings, "job_heartbeat_ttl_seconds", 300))

    async def _fetch_heartbeats():
        async with session_factory() as session:
            result = await session.execute(select(JobHeartbeat).where(JobHeartbeat.name.in_(REQUIRED_HEARTBEATS)))
            return {record.name: record for record in result.scalars().all()}

    try:
        records = await asyncio.wait_for(_fetch_heartbeats(), timeout=_DB_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        return False, {
            "enabled": True,
            "message": "job heartbeat check timed out",
            "timeout_seconds": _DB_CHECK_TIMEOUT_SECONDS,
        }
    except Exception as exc:  # noqa: BLE001
        logger.debug("jobs_check_failed", exc_info=exc)
        return False, {"enabled": True, "message": "job heartbeat check failed", "error": type(exc).__name__}

    now = datetime.now(tz=timezone.utc)
    runners: dict[str, Any] = {}
    ok = True
    for name in REQUIRED_HEARTBEATS:
        record = records.get(name)
        if record is None:
            ok = False
            runners[name] = {"message": "job heartbeat missing"}
            continue
        last_seen = as_utc(record.last_heartbeat)
        age_seconds = (now - last_seen).total_seconds()
        fresh = age_seconds <= ttl_seconds
        ok = ok and fresh
        runners[name] = {
            "last_heartbeat": last_seen.isoformat(),
            "age_seconds": age_seconds,
            "consecutive_failures": record.consecutive_failures,
        }
    return ok, {"enabled": True, "threshold_seconds": ttl_seconds, "runners": runners}


async def _run_check(name: str, check_fn) -> dict[str, Any]:  # noqa: ANN001
    start = time.perf_counter()
    try:
        ok, detail = await check_fn()
    except Exception as exc:  # noqa: BLE001
        logger.exception("readiness_check_failed", extra={"extra": {"check": name}})
        ok = False
        detail = {"message": "unexpected error", "error": type(exc).__name__}
    elapsed_ms = (time.perf_counter() - start) * 1000
    return {"name": name, "ok": bool(ok), "ms": round(elapsed_ms, 2), "detail": detail}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    checks = [
        await _run_check("db", lambda: _db_check(request)),
        await _run_check("jobs", lambda: _jobs_status(request)),
    ]
    overall_ok = all(check["ok"] for check in checks)
    return JSONResponse(status_code=200 if overall_ok else 503, content={"ok": overall_ok, "checks": checks})
