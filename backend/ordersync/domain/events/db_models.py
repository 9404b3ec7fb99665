from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column

from ordersync.infra.db import Base, utcnow


class LedgerOutcome:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class InboundEvent(Base):
    __tablename__ = "inbound_events"

    event_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    merchant_id: Mapped[str | None] = mapped_column(String(64))
    partition_key: Mapped[str] = mapped_column(String(160), nullable=False)
    payload_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    signature_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    signature_flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    event_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_inbound_events_partition", "partition_key", "event_type"),
        Index("ix_inbound_events_received", "received_at"),
        Index("ix_inbound_events_flagged", "signature_flagged", "received_at"),
    )


@event.listens_for(InboundEvent, "before_update", propagate=True)
def _prevent_inbound_event_updates(mapper, connection, target) -> None:  # noqa: ARG001
    raise ValueError("Inbound events are immutable")


@event.listens_for(InboundEvent, "before_delete", propagate=True)
def _prevent_inbound_event_deletes(mapper, connection, target) -> None:  # noqa: ARG001
    raise ValueError("Inbound events are removed by retention only")


class EventLedgerEntry(Base):
    __tablename__ = "event_ledger"

    event_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("inbound_events.event_id", ondelete="CASCADE"), primary_key=True
    )
    outcome: Mapped[str] = mapped_column(String(16), nullable=False, default=LedgerOutcome.PENDING)
    delivery_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    outcome_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (Index("ix_event_ledger_outcome", "outcome", "outcome_at"),)


class SignatureReplay(Base):
    __tablename__ = "signature_replays"

    replay_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    signature: Mapped[str] = mapped_column(String(128), nullable=False)
    signed_timestamp: Mapped[str] = mapped_column(String(64), nullable=False)
    event_id: Mapped[str] = mapped_column(String(128), nullable=False)
    seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_signature_replays_pair", "signature", "signed_timestamp", unique=True),
        Index("ix_signature_replays_seen", "seen_at"),
    )
