from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ordersync.domain.audit.db_models import AuditEntry
from ordersync.infra.logging import sanitize_value


def _sanitize_snapshot(payload: Any) -> Any:
    if payload is None:
        return None
    return sanitize_value(payload)


async def record_audit(
    session: AsyncSession,
    *,
    source: str,
    kind: str,
    action: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    detail: str | None = None,
    before: dict | None = None,
    after: dict | None = None,
    actor: str | None = None,
    run_id: str | None = None,
) -> AuditEntry:
    entry = AuditEntry(
        source=source,
        kind=kind,
        action=action,
        actor=actor,
        resource_type=resource_type,
        resource_id=resource_id,
        run_id=run_id,
        detail=detail,
        before=_sanitize_snapshot(before),
        after=_sanitize_snapshot(after),
    )
    session.add(entry)
    await session.flush()
    return entry


async def list_audit_entries(
    session: AsyncSession, *, source: str | None = None, limit: int = 50
) -> list[AuditEntry]:
    stmt = select(AuditEntry).order_by(AuditEntry.created_at.desc()).limit(limit)
    if source:
        stmt = stmt.where(AuditEntry.source == source)
    return list((await session.execute(stmt)).scalars().all())
