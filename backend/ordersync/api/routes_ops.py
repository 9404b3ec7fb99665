import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ordersync.api.bearer import bearer_token, token_matches
from ordersync.domain.alerts.monitor import evaluate_reconciliation
from ordersync.domain.audit.db_models import AuditEntry, AuditSource
from ordersync.domain.audit.service import list_audit_entries, record_audit
from ordersync.domain.errors import PermanentExternalError, TransientExternalError
from ordersync.domain.events import service as event_service
from ordersync.domain.queue import service as queue_service
from ordersync.domain.queue.db_models import ProcessingRecord, ProcessingStatus
from ordersync.domain.reconciliation.payment_sync import sync_recent_payments
from ordersync.domain.reconciliation.service import ReconciliationEngine
from ordersync.infra.db import get_db_session, get_session_factory
from ordersync.services import resolve_services
from ordersync.settings import settings
from ordersync.shared.circuit_breaker import CircuitBreakerOpenError

logger = logging.getLogger(__name__)

OPS_ACTOR = "ops-api"


class ForceFailRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=255)


class ReconciliationRunRequest(BaseModel):
    dry_run: bool = False
    resume: bool = False


class PaymentSyncRequest(BaseModel):
    lookback_minutes: int | None = Field(None, ge=1, le=7 * 24 * 60)


def _app_settings(request: Request):
    return getattr(request.app.state, "app_settings", None) or settings


async def require_ops_token(request: Request) -> None:
    app_settings = _app_settings(request)
    token = (app_settings.ops_api_token or "").strip()
    if not token:
        if app_settings.app_env == "prod":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Ops API disabled")
        return
    if not token_matches(bearer_token(request), token):
        logger.warning("ops_auth_failed", extra={"extra": {"path": request.url.path}})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


def _services(request: Request):
    services = resolve_services(request.app)
    if services is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Services not started")
    return services


def _record_view(record: ProcessingRecord) -> dict:
    return {
        "sequence": record.sequence,
        "event_id": record.event_id,
        "event_type": record.event_type,
        "partition_key": record.partition_key,
        "status": record.status,
        "attempts": record.attempts,
        "last_error": record.last_error,
        "error_kind": record.error_kind,
        "next_retry_at": record.next_retry_at,
        "lock_owner": record.lock_owner,
        "lock_expires_at": record.lock_expires_at,
        "started_at": record.started_at,
        "completed_at": record.completed_at,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def _audit_view(entry: AuditEntry) -> dict:
    return {
        "audit_id": entry.audit_id,
        "source": entry.source,
        "kind": entry.kind,
        "action": entry.action,
        "actor": entry.actor,
        "resource_type": entry.resource_type,
        "resource_id": entry.resource_id,
        "run_id": entry.run_id,
        "detail": entry.detail,
        "before": entry.before,
        "after": entry.after,
        "created_at": entry.created_at,
    }


router = APIRouter(prefix="/v1/ops", tags=["ops"], dependencies=[Depends(require_ops_token)])


@router.get("/queue")
async def queue_overview(session: AsyncSession = Depends(get_db_session)) -> dict:
    stats = await queue_service.queue_stats(session)
    return stats.as_dict()


@router.get("/processing")
async def list_processing(
    status_filter: str | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    session: AsyncSession = Depends(get_db_session),
) -> dict:
    if status_filter and status_filter not in ProcessingStatus.ALL:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown status {status_filter}")
    records = await queue_service.list_records(session, status=status_filter, limit=limit)
    return {"items": [_record_view(record) for record in records]}


@router.get("/processing/{event_id}")
async def get_processing(event_id: str, session: AsyncSession = Depends(get_db_session)) -> dict:
    record = await queue_service.get_record(session, event_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Processing record not found")
    ledger = await event_service.get_ledger_entry(session, event_id)
    return {
        "record": _record_view(record),
        "ledger": None
        if ledger is None
        else {
            "outcome": ledger.outcome,
            "delivery_count": ledger.delivery_count,
            "first_seen_at": ledger.first_seen_at,
            "last_seen_at": ledger.last_seen_at,
            "outcome_at": ledger.outcome_at,
            "last_error": ledger.last_error,
        },
    }


@router.post("/processing/{event_id}/force-fail")
async def force_fail_processing(
    event_id: str, body: ForceFailRequest, session: AsyncSession = Depends(get_db_session)
) -> dict:
    existing = await queue_service.get_record(session, event_id)
    before = existing.snapshot() if existing is not None else None
    try:
        record = await queue_service.force_fail(session, event_id, body.reason)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Processing record not found") from exc
    except queue_service.InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    await event_service.mark_failed(session, event_id, body.reason, terminal=False)
    await record_audit(
        session,
        source=AuditSource.OPERATOR,
        kind="force_fail",
        action="force_failed",
        resource_type="processing_record",
        resource_id=event_id,
        detail=body.reason,
        before=before,
        after=record.snapshot(),
        actor=OPS_ACTOR,
    )
    await session.commit()
    return _record_view(record)


@router.post("/processing/{event_id}/replay")
async def replay_processing(event_id: str, session: AsyncSession = Depends(get_db_session)) -> dict:
    existing = await queue_service.get_record(session, event_id)
    before = existing.snapshot() if existing is not None else None
    try:
        record = await queue_service.replay(session, event_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Processing record not found") from exc
    except queue_service.InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    await record_audit(
        session,
        source=AuditSource.OPERATOR,
        kind="replay",
        action="requeued",
        resource_type="processing_record",
        resource_id=event_id,
        before=before,
        after=record.snapshot(),
        actor=OPS_ACTOR,
    )
    await session.commit()
    return _record_view(record)


@router.post("/reconciliation/run")
async def run_reconciliation(request: Request, body: ReconciliationRunRequest | None = None) -> dict:
    body = body or ReconciliationRunRequest()
    services = _services(request)
    engine = ReconciliationEngine.from_settings(get_session_factory(request), services.provider, _app_settings(request))
    report = await engine.run(dry_run=body.dry_run, resume=body.resume)
    await services.alert_dispatcher.dispatch_all(evaluate_reconciliation(report))
    logger.info(
        "reconciliation_triggered",
        extra={"extra": {"run_id": report.run_id, "dry_run": body.dry_run, "findings": len(report.findings)}},
    )
    return report.as_dict()


@router.get("/audit")
async def list_audit(
    source: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    session: AsyncSession = Depends(get_db_session),
) -> dict:
    entries = await list_audit_entries(session, source=source, limit=limit)
    return {"items": [_audit_view(entry) for entry in entries]}


@router.post("/payments/sync")
async def sync_payments(request: Request, body: PaymentSyncRequest | None = None) -> dict:
    body = body or PaymentSyncRequest()
    services = _services(request)
    if not services.provider.configured:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Provider client not configured")
    lookback = body.lookback_minutes or _app_settings(request).payment_sync_lookback_minutes
    try:
        report = await sync_recent_payments(get_session_factory(request), services.provider, lookback_minutes=lookback)
    except (CircuitBreakerOpenError, TransientExternalError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Provider unavailable") from exc
    except PermanentExternalError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return report.as_dict()
