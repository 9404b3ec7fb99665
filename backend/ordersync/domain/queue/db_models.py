from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ordersync.infra.db import Base, utcnow


class ProcessingStatus:
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    DEAD_LETTER = "DEAD_LETTER"

    ALL = (RECEIVED, VALIDATED, QUEUED, PROCESSING, COMPLETED, FAILED, DEAD_LETTER)
    # still owed processing; these block later events in the same partition
    OPEN = (RECEIVED, VALIDATED, QUEUED, PROCESSING)
    TERMINAL = (COMPLETED, FAILED, DEAD_LETTER)


class ProcessingRecord(Base):
    __tablename__ = "processing_records"

    # receipt order within a partition
    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("inbound_events.event_id", ondelete="CASCADE"), nullable=False, unique=True
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    partition_key: Mapped[str] = mapped_column(String(160), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ProcessingStatus.RECEIVED)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_error: Mapped[str | None] = mapped_column(Text)
    error_kind: Mapped[str | None] = mapped_column(String(32))
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    lock_owner: Mapped[str | None] = mapped_column(String(128))
    lock_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("ix_processing_records_status_due", "status", "next_retry_at"),
        Index("ix_processing_records_partition", "partition_key", "sequence"),
        Index("ix_processing_records_lease", "status", "lock_expires_at"),
    )

    def snapshot(self) -> dict:
        return {
            "event_id": self.event_id,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "error_kind": self.error_kind,
            "lock_owner": self.lock_owner,
        }
