import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.webhook_events = None
            self.webhook_errors = None
            self.webhook_signature_flagged = None
            self.queue_depth = None
            self.handler_outcomes = None
            self.handler_latency = None
            self.retry_decisions = None
            self.reconciliation_findings = None
            self.alerts_sent = None
            self.http_5xx = None
            self.http_latency = None
            self.job_heartbeat = None
            self.job_last_success = None
            self.job_errors = None
            self.circuit_state = None
            self.email_adapter = None
            self.provider_requests = None
            return

        self.webhook_events = Counter(
            "webhook_events_total",
            "Inbound webhook deliveries by result (queued/duplicate/rejected).",
            ["result"],
            registry=self.registry,
        )
        self.webhook_errors = Counter(
            "webhook_errors_total",
            "Webhook rejections by reason (low cardinality).",
            ["type"],
            registry=self.registry,
        )
        self.webhook_signature_flagged = Counter(
            "webhook_signature_flagged_total",
            "Webhooks accepted without a signature under the permissive policy.",
            registry=self.registry,
        )
        self.queue_depth = Gauge(
            "dispatch_queue_records",
            "Processing records by status.",
            ["status"],
            registry=self.registry,
        )
        self.handler_outcomes = Counter(
            "handler_outcomes_total",
            "Handler executions by event type and outcome.",
            ["event_type", "outcome"],
            registry=self.registry,
        )
        self.handler_latency = Histogram(
            "handler_latency_seconds",
            "Handler execution time by event type.",
            ["event_type"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
            registry=self.registry,
        )
        self.retry_decisions = Counter(
            "retry_decisions_total",
            "Retry classifier decisions by error kind.",
            ["kind", "decision"],
            registry=self.registry,
        )
        self.reconciliation_findings = Counter(
            "reconciliation_findings_total",
            "Reconciliation findings by kind and action.",
            ["kind", "action"],
            registry=self.registry,
        )
        self.alerts_sent = Counter(
            "alerts_sent_total",
            "Alert channel deliveries by channel and status.",
            ["channel", "status"],
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "path"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency in seconds.",
            ["method", "path", "status_class"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
            registry=self.registry,
        )
        self.job_heartbeat = Gauge(
            "job_last_heartbeat_timestamp",
            "Unix timestamp for the latest job heartbeat.",
            ["job"],
            registry=self.registry,
        )
        self.job_last_success = Gauge(
            "job_last_success_timestamp",
            "Unix timestamp for the latest successful job loop.",
            ["job"],
            registry=self.registry,
        )
        self.job_errors = Counter(
            "job_errors_total",
            "Job execution errors by job and reason.",
            ["job", "reason"],
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "circuit_state",
            "Circuit breaker state (0=closed, 0.5=half-open, 1=open).",
            ["circuit"],
            registry=self.registry,
        )
        self.email_adapter = Counter(
            "email_adapter_outcomes_total",
            "Email adapter outcomes by status.",
            ["status"],
            registry=self.registry,
        )
        self.provider_requests = Counter(
            "provider_requests_total",
            "Provider API calls by operation and outcome.",
            ["operation", "outcome"],
            registry=self.registry,
        )

    def record_webhook(self, result: str) -> None:
        if not self.enabled or self.webhook_events is None:
            return
        self.webhook_events.labels(result=result or "unknown").inc()

    def record_webhook_error(self, error_type: str) -> None:
        if not self.enabled or self.webhook_errors is None:
            return
        self.webhook_errors.labels(type=error_type or "unknown").inc()

    def record_signature_flagged(self) -> None:
        if not self.enabled or self.webhook_signature_flagged is None:
            return
        self.webhook_signature_flagged.inc()

    def set_queue_depth(self, status: str, count: int) -> None:
        if not self.enabled or self.queue_depth is None:
            return
        self.queue_depth.labels(status=status or "unknown").set(max(0, count))

    def record_handler(self, event_type: str, outcome: str, duration_seconds: float | None = None) -> None:
        if not self.enabled or self.handler_outcomes is None:
            return
        safe_type = event_type or "unknown"
        self.handler_outcomes.labels(event_type=safe_type, outcome=outcome or "unknown").inc()
        if duration_seconds is not None and self.handler_latency is not None:
            self.handler_latency.labels(event_type=safe_type).observe(max(0.0, float(duration_seconds)))

    def record_retry_decision(self, kind: str, decision: str) -> None:
        if not self.enabled or self.retry_decisions is None:
            return
        self.retry_decisions.labels(kind=kind or "unknown", decision=decision).inc()

    def record_reconciliation_finding(self, kind: str, action: str) -> None:
        if not self.enabled or self.reconciliation_findings is None:
            return
        self.reconciliation_findings.labels(kind=kind, action=action).inc()

    def record_alert(self, channel: str, status: str) -> None:
        if not self.enabled or self.alerts_sent is None:
            return
        self.alerts_sent.labels(channel=channel, status=status).inc()

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(
            max(0.0, float(duration_seconds))
        )

    def record_job_heartbeat(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_heartbeat is None:
            return
        self.job_heartbeat.labels(job=job).set(timestamp if timestamp is not None else time.time())

    def record_job_success(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_last_success is None:
            return
        self.job_last_success.labels(job=job).set(timestamp if timestamp is not None else time.time())

    def record_job_error(self, job: str, reason: str) -> None:
        if not self.enabled or self.job_errors is None:
            return
        self.job_errors.labels(job=job, reason=reason or "unknown").inc()

    def record_circuit_state(self, circuit: str, state: str) -> None:
        if not self.enabled or self.circuit_state is None:
            return
        value = {"closed": 0, "half_open": 0.5, "open": 1}.get(state, -1)
        self.circuit_state.labels(circuit=circuit).set(value)

    def record_email_adapter(self, status: str) -> None:
        if not self.enabled or self.email_adapter is None:
            return
        self.email_adapter.labels(status=status).inc()

    def record_provider_request(self, operation: str, outcome: str) -> None:
        if not self.enabled or self.provider_requests is None:
            return
        self.provider_requests.labels(operation=operation, outcome=outcome).inc()

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
