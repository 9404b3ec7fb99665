from __future__ import annotations

from dataclasses import asdict, dataclass, field


class FindingKind:
    STUCK_PROCESSING_RECORD = "STUCK_PROCESSING_RECORD"
    STUCK_SYNC_RUN = "STUCK_SYNC_RUN"
    ORPHANED_PAID_FLAG = "ORPHANED_PAID_FLAG"
    PAID_ORDER_STILL_PENDING = "PAID_ORDER_STILL_PENDING"
    STUB_ORDER = "STUB_ORDER"
    EXTERNAL_DRIFT = "EXTERNAL_DRIFT"
    UNFINALIZED_EXTERNAL_ORDER = "UNFINALIZED_EXTERNAL_ORDER"
    DRIFT_CHECK_FAILED = "DRIFT_CHECK_FAILED"


class FindingAction:
    CORRECTED = "corrected"
    REPORTED = "reported"
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"


@dataclass
class ReconciliationFinding:
    kind: str
    resource_type: str
    resource_id: str
    action: str
    detail: str
    before: dict | None = None
    after: dict | None = None

    @property
    def needs_review(self) -> bool:
        return self.action == FindingAction.REPORTED

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class ReconciliationReport:
    run_id: str
    status: str
    dry_run: bool
    cursor: str | None = None
    resumed_from: str | None = None
    orders_scanned: int = 0
    findings: list[ReconciliationFinding] = field(default_factory=list)

    @property
    def corrections(self) -> int:
        return sum(1 for finding in self.findings if finding.action == FindingAction.CORRECTED)

    def findings_of(self, kind: str) -> list[ReconciliationFinding]:
        return [finding for finding in self.findings if finding.kind == kind]

    def as_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "dry_run": self.dry_run,
            "cursor": self.cursor,
            "resumed_from": self.resumed_from,
            "orders_scanned": self.orders_scanned,
            "corrections": self.corrections,
            "findings": [finding.as_dict() for finding in self.findings],
        }


@dataclass
class PaymentSyncReport:
    run_id: str
    status: str
    processed: int = 0
    failed: int = 0
    error: str | None = None

    def as_dict(self) -> dict:
        return asdict(self)
