import asyncio
import random
from datetime import timedelta

import httpx
import pytest

from ordersync.domain.errors import (
    DuplicateEvent,
    ErrorKind,
    HandlerLogicError,
    PermanentExternalError,
    StaleRecordError,
    TransientExternalError,
    ValidationError,
    classify_exception,
)
from ordersync.domain.retry.classifier import RetryPolicy, backoff_delay, should_retry


def test_merchant_mismatch_is_not_retried():
    decision = should_retry(PermanentExternalError("merchant mismatch", status_code=403), "payment.updated")

    assert decision.retry is False
    assert decision.terminal is True
    assert decision.reason == "status_403"


def test_rate_limit_honours_retry_after():
    error = TransientExternalError("slow down", status_code=429, retry_after=30)

    decision = should_retry(error, "order.updated", attempt=1)

    assert decision.retry is True
    assert decision.backoff == timedelta(seconds=30)
    assert decision.reason == "rate_limited"


def test_unclassified_error_is_terminal():
    decision = should_retry(RuntimeError("boom"))

    assert decision.retry is False
    assert decision.terminal is True
    assert decision.reason == "unclassified"


@pytest.mark.parametrize(
    "error",
    [ValidationError("bad", reason="missing_order_id"), HandlerLogicError("bug")],
)
def test_logic_and_validation_errors_are_terminal(error):
    decision = should_retry(error)

    assert decision.retry is False
    assert decision.terminal is True


def test_duplicate_is_dropped_without_dead_letter():
    decision = should_retry(DuplicateEvent("already applied"))

    assert decision.retry is False
    assert decision.terminal is False


def test_transient_errors_retry_until_attempts_exhausted():
    policy = RetryPolicy(max_attempts=3, jitter_ratio=0)
    error = TransientExternalError("upstream 503", status_code=503)

    assert should_retry(error, attempt=1, policy=policy).retry is True
    assert should_retry(error, attempt=2, policy=policy).reason == "upstream_5xx"
    exhausted = should_retry(error, attempt=3, policy=policy)
    assert exhausted.retry is False
    assert exhausted.terminal is True
    assert exhausted.reason == "attempts_exhausted"


def test_stale_record_and_timeouts_are_transient():
    assert should_retry(StaleRecordError("changed")).retry is True
    assert should_retry(asyncio.TimeoutError()).retry is True
    assert should_retry(httpx.ConnectError("refused")).retry is True


def test_backoff_is_exponential_and_capped():
    policy = RetryPolicy(base_backoff_seconds=2, jitter_ratio=0, max_backoff_seconds=20)

    assert backoff_delay(1, policy) == timedelta(seconds=2)
    assert backoff_delay(2, policy) == timedelta(seconds=4)
    assert backoff_delay(3, policy) == timedelta(seconds=8)
    assert backoff_delay(10, policy) == timedelta(seconds=20)


def test_backoff_jitter_stays_within_ratio():
    policy = RetryPolicy(base_backoff_seconds=10, jitter_ratio=0.2)
    rng = random.Random(7)

    for _ in range(20):
        delay = backoff_delay(1, policy, rng).total_seconds()
        assert 8.0 <= delay <= 12.0


def test_classify_exception_keeps_status_and_retry_after():
    classified = classify_exception(TransientExternalError("rate limited", status_code=429, retry_after=12.5))

    assert classified.kind == ErrorKind.TRANSIENT_EXTERNAL
    assert classified.status_code == 429
    assert classified.retry_after == 12.5
    assert classify_exception(KeyError("x")).kind == ErrorKind.UNKNOWN
