"""Durable dispatch queue over ``ProcessingRecord`` rows.

This module is the only writer of processing records. Every transition is a
conditional UPDATE so that several worker processes can share one table.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from ordersync.domain.errors import ClassifiedError, ErrorKind, classify_exception
from ordersync.domain.events.db_models import InboundEvent
from ordersync.domain.queue.db_models import ProcessingRecord, ProcessingStatus
from ordersync.domain.retry.classifier import RetryDecision, RetryPolicy, should_retry
from ordersync.infra.db import as_utc, insert_if_absent, utcnow
from ordersync.infra.metrics import metrics

logger = logging.getLogger(__name__)

CLAIM_BATCH = 10


class LeaseLostError(RuntimeError):
    def __init__(self, event_id: str, worker_id: str) -> None:
        super().__init__(f"lease_lost:{event_id}")
        self.event_id = event_id
        self.worker_id = worker_id


class InvalidTransitionError(RuntimeError):
    def __init__(self, event_id: str, status: str, action: str) -> None:
        super().__init__(f"cannot {action} record in status {status}")
        self.event_id = event_id
        self.status = status
        self.action = action


@dataclass(frozen=True)
class FailureOutcome:
    status: str
    decision: RetryDecision
    error: ClassifiedError


@dataclass(frozen=True)
class QueueStats:
    counts: dict[str, int]
    oldest_queued_seconds: float | None

    def as_dict(self) -> dict:
        return {"counts": dict(self.counts), "oldest_queued_seconds": self.oldest_queued_seconds}


async def enqueue(session: AsyncSession, event: InboundEvent, *, now: datetime | None = None) -> bool:
    """Create the processing record for a freshly stored event.

    The record passes RECEIVED and VALIDATED within the same transaction and is
    persisted as QUEUED. Returns False when the event already has a record.
    """
    now = now or utcnow()
    created = await insert_if_absent(
        session,
        ProcessingRecord,
        {
            "event_id": event.event_id,
            "event_type": event.event_type,
            "partition_key": event.partition_key,
            "status": ProcessingStatus.QUEUED,
            "attempts": 0,
            "version": 1,
            "next_retry_at": now,
            "created_at": now,
            "updated_at": now,
        },
        index_elements=["event_id"],
    )
    if created:
        logger.info(
            "event_queued",
            extra={"extra": {"event_id": event.event_id, "partition_key": event.partition_key}},
        )
    return created


def _claimable(now: datetime):
    blocker = aliased(ProcessingRecord)
    open_predecessor = (
        select(blocker.sequence)
        .where(
            blocker.partition_key == ProcessingRecord.partition_key,
            blocker.sequence < ProcessingRecord.sequence,
            blocker.status.in_(ProcessingStatus.OPEN),
        )
        .exists()
    )
    due = or_(
        and_(
            ProcessingRecord.status == ProcessingStatus.QUEUED,
            or_(ProcessingRecord.next_retry_at.is_(None), ProcessingRecord.next_retry_at <= now),
        ),
        and_(
            ProcessingRecord.status == ProcessingStatus.PROCESSING,
            ProcessingRecord.lock_expires_at.is_not(None),
            ProcessingRecord.lock_expires_at < now,
        ),
    )
    return and_(due, ~open_predecessor)


async def claim_next(
    session: AsyncSession,
    worker_id: str,
    *,
    lease_seconds: float,
    now: datetime | None = None,
) -> ProcessingRecord | None:
    """Lease the oldest claimable record, or return None when nothing is due.

    The caller commits the claim before running the handler.
    """
    now = now or utcnow()
    candidates = (
        await session.execute(
            select(ProcessingRecord.sequence, ProcessingRecord.version, ProcessingRecord.status)
            .where(_claimable(now))
            .order_by(ProcessingRecord.sequence)
            .limit(CLAIM_BATCH)
        )
    ).all()
    for sequence, version, status in candidates:
        result = await session.execute(
            update(ProcessingRecord)
            .where(ProcessingRecord.sequence == sequence, ProcessingRecord.version == version)
            .values(
                status=ProcessingStatus.PROCESSING,
                lock_owner=worker_id,
                lock_expires_at=now + timedelta(seconds=lease_seconds),
                attempts=ProcessingRecord.attempts + 1,
                version=ProcessingRecord.version + 1,
                started_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            continue
        record = await session.get(ProcessingRecord, sequence, populate_existing=True)
        if status == ProcessingStatus.PROCESSING:
            logger.warning(
                "processing_lease_reclaimed",
                extra={"extra": {"event_id": record.event_id, "worker_id": worker_id}},
            )
        return record
    return None


async def complete(
    session: AsyncSession,
    record: ProcessingRecord,
    worker_id: str,
    *,
    now: datetime | None = None,
) -> None:
    """Mark a leased record COMPLETED in the caller's transaction.

    Raises ``LeaseLostError`` when another worker took the lease over; the caller
    must roll back so the handler's effects are discarded.
    """
    now = now or utcnow()
    result = await session.execute(
        update(ProcessingRecord)
        .where(
            ProcessingRecord.sequence == record.sequence,
            ProcessingRecord.status == ProcessingStatus.PROCESSING,
            ProcessingRecord.lock_owner == worker_id,
        )
        .values(
            status=ProcessingStatus.COMPLETED,
            completed_at=now,
            lock_owner=None,
            lock_expires_at=None,
            next_retry_at=None,
            last_error=None,
            error_kind=None,
            version=ProcessingRecord.version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise LeaseLostError(record.event_id, worker_id)


async def fail(
    session: AsyncSession,
    record: ProcessingRecord,
    worker_id: str,
    exc: BaseException,
    *,
    policy: RetryPolicy | None = None,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> FailureOutcome | None:
    """Requeue with backoff or dead-letter a leased record after a handler failure.

    Returns None when the lease was lost in the meantime.
    """
    now = now or utcnow()
    classified = classify_exception(exc)
    decision = should_retry(classified, record.event_type, attempt=record.attempts, policy=policy, rng=rng)
    if decision.retry:
        status = ProcessingStatus.QUEUED
        next_retry_at = now + decision.backoff
    elif decision.terminal:
        status = ProcessingStatus.DEAD_LETTER
        next_retry_at = None
    else:
        # duplicate effect already applied
        status = ProcessingStatus.COMPLETED
        next_retry_at = None

    values = {
        "status": status,
        "next_retry_at": next_retry_at,
        "lock_owner": None,
        "lock_expires_at": None,
        "last_error": classified.message,
        "error_kind": classified.kind.value,
        "version": ProcessingRecord.version + 1,
        "updated_at": now,
    }
    if status == ProcessingStatus.COMPLETED:
        values["completed_at"] = now
    result = await session.execute(
        update(ProcessingRecord)
        .where(
            ProcessingRecord.sequence == record.sequence,
            ProcessingRecord.status == ProcessingStatus.PROCESSING,
            ProcessingRecord.lock_owner == worker_id,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning(
            "processing_lease_lost",
            extra={"extra": {"event_id": record.event_id, "worker_id": worker_id}},
        )
        return None

    log_extra = {
        "event_id": record.event_id,
        "event_type": record.event_type,
        "attempt": record.attempts,
        "error_kind": classified.kind.value,
        "status": status,
    }
    if status == ProcessingStatus.DEAD_LETTER:
        logger.error("processing_dead_lettered", extra={"extra": {**log_extra, "reason": decision.reason}})
    elif status == ProcessingStatus.QUEUED:
        log_extra["backoff_seconds"] = decision.backoff.total_seconds()
        logger.warning("processing_requeued", extra={"extra": log_extra})
    return FailureOutcome(status=status, decision=decision, error=classified)


async def get_record(session: AsyncSession, event_id: str) -> ProcessingRecord | None:
    return await session.scalar(
        select(ProcessingRecord)
        .where(ProcessingRecord.event_id == event_id)
        .execution_options(populate_existing=True)
    )


async def list_records(
    session: AsyncSession, *, status: str | None = None, limit: int = 50
) -> list[ProcessingRecord]:
    stmt = select(ProcessingRecord).order_by(ProcessingRecord.sequence.desc()).limit(limit)
    if status:
        stmt = stmt.where(ProcessingRecord.status == status)
    return list((await session.execute(stmt)).scalars().all())


async def force_fail(
    session: AsyncSession,
    event_id: str,
    reason: str,
    *,
    now: datetime | None = None,
) -> ProcessingRecord:
    """Move an open record to FAILED. Raises ``InvalidTransitionError`` for terminal records."""
    now = now or utcnow()
    record = await get_record(session, event_id)
    if record is None:
        raise LookupError(event_id)
    if record.status not in ProcessingStatus.OPEN:
        raise InvalidTransitionError(event_id, record.status, "force-fail")
    result = await session.execute(
        update(ProcessingRecord)
        .where(ProcessingRecord.sequence == record.sequence, ProcessingRecord.version == record.version)
        .values(
            status=ProcessingStatus.FAILED,
            last_error=reason,
            error_kind=ErrorKind.HANDLER_LOGIC.value,
            lock_owner=None,
            lock_expires_at=None,
            next_retry_at=None,
            version=ProcessingRecord.version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidTransitionError(event_id, record.status, "force-fail")
    logger.warning("processing_force_failed", extra={"extra": {"event_id": event_id, "reason": reason}})
    return await get_record(session, event_id)


async def replay(session: AsyncSession, event_id: str, *, now: datetime | None = None) -> ProcessingRecord:
    now = now or utcnow()
    record = await get_record(session, event_id)
    if record is None:
        raise LookupError(event_id)
    if record.status not in (ProcessingStatus.FAILED, ProcessingStatus.DEAD_LETTER):
        raise InvalidTransitionError(event_id, record.status, "replay")
    result = await session.execute(
        update(ProcessingRecord)
        .where(ProcessingRecord.sequence == record.sequence, ProcessingRecord.version == record.version)
        .values(
            status=ProcessingStatus.QUEUED,
            attempts=0,
            next_retry_at=now,
            completed_at=None,
            version=ProcessingRecord.version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidTransitionError(event_id, record.status, "replay")
    logger.info("processing_replayed", extra={"extra": {"event_id": event_id}})
    return await get_record(session, event_id)


async def list_stuck(
    session: AsyncSession, *, threshold: timedelta, now: datetime | None = None
) -> list[ProcessingRecord]:
    cutoff = (now or utcnow()) - threshold
    result = await session.execute(
        select(ProcessingRecord)
        .where(ProcessingRecord.status == ProcessingStatus.PROCESSING, ProcessingRecord.started_at < cutoff)
        .order_by(ProcessingRecord.sequence)
    )
    return list(result.scalars().all())


async def fail_stuck(
    session: AsyncSession,
    *,
    threshold: timedelta,
    now: datetime | None = None,
) -> list[ProcessingRecord]:
    """FAIL every record that has been PROCESSING for longer than ``threshold``."""
    now = now or utcnow()
    stuck = await list_stuck(session, threshold=threshold, now=now)
    failed: list[ProcessingRecord] = []
    for record in stuck:
        minutes = int((now - as_utc(record.started_at)).total_seconds() // 60)
        result = await session.execute(
            update(ProcessingRecord)
            .where(ProcessingRecord.sequence == record.sequence, ProcessingRecord.version == record.version)
            .values(
                status=ProcessingStatus.FAILED,
                last_error=f"Stuck in PROCESSING for {minutes} minutes",
                error_kind=ErrorKind.TRANSIENT_EXTERNAL.value,
                lock_owner=None,
                lock_expires_at=None,
                version=ProcessingRecord.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            failed.append(record)
    return failed


async def queue_stats(session: AsyncSession, *, now: datetime | None = None) -> QueueStats:
    now = now or utcnow()
    rows = (
        await session.execute(
            select(ProcessingRecord.status, func.count()).group_by(ProcessingRecord.status)
        )
    ).all()
    counts = {status: 0 for status in ProcessingStatus.ALL}
    for status, count in rows:
        counts[status] = int(count)
    oldest = await session.scalar(
        select(func.min(ProcessingRecord.created_at)).where(
            ProcessingRecord.status == ProcessingStatus.QUEUED,
            or_(ProcessingRecord.next_retry_at.is_(None), ProcessingRecord.next_retry_at <= now),
        )
    )
    oldest_seconds = None
    if oldest is not None:
        oldest_seconds = max(0.0, (now - as_utc(oldest)).total_seconds())
    for status, count in counts.items():
        metrics.set_queue_depth(status, count)
    return QueueStats(counts=counts, oldest_queued_seconds=oldest_seconds)
