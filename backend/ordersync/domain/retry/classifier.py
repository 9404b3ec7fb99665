from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import timedelta

from ordersync.domain.errors import ClassifiedError, ErrorKind, classify_exception
from ordersync.infra.metrics import metrics

logger = logging.getLogger(__name__)

_NO_DELAY = timedelta(0)

# kinds that never heal on their own
_TERMINAL_KINDS = {
    ErrorKind.AUTHENTICATION,
    ErrorKind.VALIDATION,
    ErrorKind.PERMANENT_EXTERNAL,
    ErrorKind.HANDLER_LOGIC,
    ErrorKind.RECONCILIATION_DRIFT,
}


@dataclass(frozen=True)
class RetryPolicy:
    base_backoff_seconds: float = 2.0
    max_attempts: int = 5
    jitter_ratio: float = 0.2
    max_backoff_seconds: float = 300.0

    @classmethod
    def from_settings(cls, app_settings) -> "RetryPolicy":
        return cls(
            base_backoff_seconds=app_settings.retry_base_backoff_seconds,
            max_attempts=app_settings.retry_max_attempts,
            jitter_ratio=app_settings.retry_jitter_ratio,
            max_backoff_seconds=app_settings.retry_max_backoff_seconds,
        )


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    backoff: timedelta
    terminal: bool
    reason: str


def backoff_delay(attempt: int, policy: RetryPolicy, rng: random.Random | None = None) -> timedelta:
    """Exponential delay for the given 1-based attempt with +/- jitter."""
    delay = policy.base_backoff_seconds * (2 ** max(0, attempt - 1))
    delay = min(delay, policy.max_backoff_seconds)
    if policy.jitter_ratio:
        source = rng or random
        delay *= 1 + source.uniform(-policy.jitter_ratio, policy.jitter_ratio)
    return timedelta(seconds=max(0.0, delay))


def _decide(
    error: ClassifiedError, attempt: int, policy: RetryPolicy, rng: random.Random | None
) -> RetryDecision:
    if error.kind == ErrorKind.DUPLICATE:
        return RetryDecision(retry=False, backoff=_NO_DELAY, terminal=False, reason="duplicate")

    status_code = error.status_code
    if status_code is not None and 400 <= status_code < 500 and status_code != 429:
        return RetryDecision(retry=False, backoff=_NO_DELAY, terminal=True, reason=f"status_{status_code}")

    retryable = error.kind == ErrorKind.TRANSIENT_EXTERNAL or (
        status_code is not None and (status_code == 429 or status_code >= 500)
    )
    if not retryable:
        reason = error.kind.value if error.kind in _TERMINAL_KINDS else "unclassified"
        return RetryDecision(retry=False, backoff=_NO_DELAY, terminal=True, reason=reason)

    if attempt >= policy.max_attempts:
        return RetryDecision(retry=False, backoff=_NO_DELAY, terminal=True, reason="attempts_exhausted")

    if status_code == 429 and error.retry_after is not None:
        return RetryDecision(
            retry=True,
            backoff=timedelta(seconds=max(0.0, error.retry_after)),
            terminal=False,
            reason="rate_limited",
        )
    reason = "rate_limited" if status_code == 429 else ("upstream_5xx" if status_code else "transient")
    return RetryDecision(retry=True, backoff=backoff_delay(attempt, policy, rng), terminal=False, reason=reason)


def should_retry(
    error: ClassifiedError | BaseException,
    event_type: str | None = None,
    *,
    attempt: int = 1,
    policy: RetryPolicy | None = None,
    rng: random.Random | None = None,
) -> RetryDecision:
    """Decide whether a failed attempt is retried, and after how long.

    ``attempt`` is the 1-based number of the attempt that just failed. Once it
    reaches ``policy.max_attempts`` a retryable error becomes terminal.
    """
    classified = error if isinstance(error, ClassifiedError) else classify_exception(error)
    decision = _decide(classified, attempt, policy or RetryPolicy(), rng)
    metrics.record_retry_decision(
        classified.kind.value, "retry" if decision.retry else ("dead_letter" if decision.terminal else "drop")
    )
    logger.debug(
        "retry_decision",
        extra={
            "extra": {
                "event_type": event_type,
                "kind": classified.kind.value,
                "status_code": classified.status_code,
                "attempt": attempt,
                "retry": decision.retry,
                "reason": decision.reason,
            }
        },
    )
    return decision
