from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ordersync.domain.errors import AuthenticationError, ValidationError
from ordersync.domain.events.db_models import EventLedgerEntry, InboundEvent, LedgerOutcome, SignatureReplay
from ordersync.domain.queue.db_models import ProcessingRecord
from ordersync.domain.webhooks.schemas import WebhookEnvelope
from ordersync.infra.db import insert_if_absent, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordResult:
    is_new: bool
    event: InboundEvent
    ledger: EventLedgerEntry | None = None


def payload_hash(payload: dict) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


async def record_event(
    session: AsyncSession,
    envelope: WebhookEnvelope,
    payload: dict,
    *,
    signature_valid: bool,
    signature_flagged: bool = False,
    signed_at: datetime | None = None,
    now: datetime | None = None,
) -> RecordResult:
    """Insert the event unless its ID is already known.

    A known ID counts as another delivery on the ledger. A known ID carrying a
    different payload raises ``ValidationError``.
    """
    now = now or utcnow()
    digest = payload_hash(payload)
    created = await insert_if_absent(
        session,
        InboundEvent,
        {
            "event_id": envelope.event_id,
            "event_type": envelope.type,
            "merchant_id": envelope.merchant_id,
            "partition_key": envelope.partition_key(),
            "payload_json": payload,
            "payload_hash": digest,
            "signature_valid": signature_valid,
            "signature_flagged": signature_flagged,
            "event_created_at": envelope.created_at,
            "signed_at": signed_at,
            "received_at": now,
        },
        index_elements=["event_id"],
    )
    event = await session.scalar(
        select(InboundEvent).where(InboundEvent.event_id == envelope.event_id).execution_options(populate_existing=True)
    )
    if event is None:
        raise RuntimeError("inbound_event_missing_after_insert")

    if created:
        ledger = EventLedgerEntry(
            event_id=event.event_id,
            outcome=LedgerOutcome.PENDING,
            delivery_count=1,
            first_seen_at=now,
            last_seen_at=now,
        )
        session.add(ledger)
        await session.flush()
        return RecordResult(is_new=True, event=event, ledger=ledger)

    if event.payload_hash != digest:
        logger.warning(
            "webhook_payload_mismatch",
            extra={"extra": {"event_id": event.event_id, "event_type": envelope.type}},
        )
        raise ValidationError(
            "Event ID was already received with a different payload", reason="payload_mismatch"
        )

    await session.execute(
        update(EventLedgerEntry)
        .where(EventLedgerEntry.event_id == event.event_id)
        .values(delivery_count=EventLedgerEntry.delivery_count + 1, last_seen_at=now)
        .execution_options(synchronize_session=False)
    )
    ledger = await session.get(EventLedgerEntry, event.event_id, populate_existing=True)
    logger.info(
        "webhook_duplicate_delivery",
        extra={"extra": {"event_id": event.event_id, "delivery_count": ledger.delivery_count if ledger else None}},
    )
    return RecordResult(is_new=False, event=event, ledger=ledger)


async def check_signature_replay(
    session: AsyncSession,
    *,
    signature: str,
    signed_timestamp: str | None,
    event_id: str,
    now: datetime | None = None,
) -> bool:
    """Remember a ``(signature, timestamp)`` pair.

    Returns True when the pair was already seen for the same event, which is a
    provider redelivery. Raises ``AuthenticationError`` when the pair is reused
    by a different event.
    """
    created = await insert_if_absent(
        session,
        SignatureReplay,
        {
            "signature": signature,
            "signed_timestamp": signed_timestamp or "",
            "event_id": event_id,
            "seen_at": now or utcnow(),
        },
        index_elements=["signature", "signed_timestamp"],
    )
    if created:
        return False
    seen_event_id = await session.scalar(
        select(SignatureReplay.event_id).where(
            SignatureReplay.signature == signature,
            SignatureReplay.signed_timestamp == (signed_timestamp or ""),
        )
    )
    if seen_event_id is not None and seen_event_id != event_id:
        logger.warning(
            "webhook_signature_replay",
            extra={"extra": {"event_id": event_id, "original_event_id": seen_event_id}},
        )
        raise AuthenticationError("Signature was already used by another event", reason="signature_replay")
    return True


async def mark_completed(session: AsyncSession, event_id: str, *, now: datetime | None = None) -> None:
    await session.execute(
        update(EventLedgerEntry)
        .where(EventLedgerEntry.event_id == event_id)
        .values(outcome=LedgerOutcome.COMPLETED, outcome_at=now or utcnow(), last_error=None)
        .execution_options(synchronize_session=False)
    )


async def mark_failed(
    session: AsyncSession,
    event_id: str,
    error: str,
    *,
    terminal: bool,
    now: datetime | None = None,
) -> None:
    outcome = LedgerOutcome.DEAD_LETTER if terminal else LedgerOutcome.FAILED
    await session.execute(
        update(EventLedgerEntry)
        .where(EventLedgerEntry.event_id == event_id)
        .values(outcome=outcome, outcome_at=now or utcnow(), last_error=error)
        .execution_options(synchronize_session=False)
    )


async def get_ledger_entry(session: AsyncSession, event_id: str) -> EventLedgerEntry | None:
    return await session.get(EventLedgerEntry, event_id)


async def purge_expired(
    session: AsyncSession,
    *,
    older_than: datetime,
    replay_older_than: datetime,
) -> dict[str, int]:
    """Delete completed events received before ``older_than``. Dead letters stay."""
    expired_ids = select(EventLedgerEntry.event_id).where(
        EventLedgerEntry.outcome == LedgerOutcome.COMPLETED,
        EventLedgerEntry.event_id.in_(
            select(InboundEvent.event_id).where(InboundEvent.received_at < older_than)
        ),
    )
    event_ids = list((await session.execute(expired_ids)).scalars().all())
    counts = {"events": 0, "signature_replays": 0}
    if event_ids:
        await session.execute(
            delete(ProcessingRecord)
            .where(ProcessingRecord.event_id.in_(event_ids))
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            delete(EventLedgerEntry)
            .where(EventLedgerEntry.event_id.in_(event_ids))
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(
            delete(InboundEvent)
            .where(InboundEvent.event_id.in_(event_ids))
            .execution_options(synchronize_session=False)
        )
        counts["events"] = result.rowcount or 0
    replay_result = await session.execute(
        delete(SignatureReplay)
        .where(SignatureReplay.seen_at < replay_older_than)
        .execution_options(synchronize_session=False)
    )
    counts["signature_replays"] = replay_result.rowcount or 0
    logger.info("event_retention_purged", extra={"extra": counts})
    return counts
