import uuid
from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from ordersync.infra.db import Base, utcnow


class AuditSource:
    RECONCILIATION = "reconciliation"
    OPERATOR = "operator"
    SYSTEM = "system"


class AuditEntry(Base):
    __tablename__ = "audit_entries"

    audit_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    actor: Mapped[str | None] = mapped_column(String(100))
    resource_type: Mapped[str | None] = mapped_column(String(64))
    resource_id: Mapped[str | None] = mapped_column(String(128))
    run_id: Mapped[str | None] = mapped_column(String(36))
    detail: Mapped[str | None] = mapped_column(Text)
    before: Mapped[dict | None] = mapped_column(JSON)
    after: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_audit_entries_source_created", "source", "created_at"),
        Index("ix_audit_entries_resource", "resource_type", "resource_id"),
        Index("ix_audit_entries_run", "run_id"),
    )


@event.listens_for(AuditEntry, "before_update", propagate=True)
def _prevent_audit_updates(mapper, connection, target) -> None:  # noqa: ARG001
    raise ValueError("Audit entries are immutable")


@event.listens_for(AuditEntry, "before_delete", propagate=True)
def _prevent_audit_deletes(mapper, connection, target) -> None:  # noqa: ARG001
    raise ValueError("Audit entries cannot be deleted")
