import asyncio

import anyio
import pytest

from ordersync.domain.errors import PermanentExternalError, TransientExternalError
from ordersync.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError


def _raise(exc: Exception):
    raise exc


@pytest.mark.anyio
async def test_opens_after_threshold_and_rejects_calls():
    breaker = CircuitBreaker(name="provider", failure_threshold=2, recovery_time=5, window_seconds=10)

    for _ in range(2):
        with pytest.raises(TransientExternalError):
            await breaker.call(_raise, TransientExternalError("503", status_code=503))

    assert breaker.state == "open"
    with pytest.raises(CircuitBreakerOpenError) as exc_info:
        await breaker.call(lambda: "ok")
    assert exc_info.value.name == "provider"


@pytest.mark.anyio
async def test_half_open_trial_success_closes():
    breaker = CircuitBreaker(name="provider", failure_threshold=1, recovery_time=0.05)

    with pytest.raises(RuntimeError):
        await breaker.call(_raise, RuntimeError("down"))
    await anyio.sleep(0.08)

    async def trial():
        return "recovered"

    assert await breaker.call(trial) == "recovered"
    assert breaker.state == "closed"


@pytest.mark.anyio
async def test_half_open_trial_failure_reopens():
    breaker = CircuitBreaker(name="provider", failure_threshold=1, recovery_time=0.05)

    with pytest.raises(RuntimeError):
        await breaker.call(_raise, RuntimeError("down"))
    await anyio.sleep(0.08)
    with pytest.raises(RuntimeError):
        await breaker.call(_raise, RuntimeError("still down"))

    assert breaker.state == "open"


@pytest.mark.anyio
async def test_half_open_limits_concurrent_trials():
    breaker = CircuitBreaker(name="provider", failure_threshold=1, recovery_time=0.05, half_open_max_calls=1)
    release = asyncio.Event()

    async def slow_trial():
        await release.wait()
        return "ok"

    with pytest.raises(RuntimeError):
        await breaker.call(_raise, RuntimeError("down"))
    await anyio.sleep(0.08)

    first = asyncio.create_task(breaker.call(slow_trial))
    await asyncio.sleep(0)
    with pytest.raises(CircuitBreakerOpenError) as exc_info:
        await breaker.call(lambda: "second")
    assert exc_info.value.state == "half_open"
    release.set()
    assert await first == "ok"
    assert breaker.state == "closed"


@pytest.mark.anyio
async def test_cancelled_half_open_call_returns_its_slot():
    breaker = CircuitBreaker(name="provider", failure_threshold=1, recovery_time=0.05, half_open_max_calls=1)

    async def hang():
        await asyncio.Event().wait()

    with pytest.raises(RuntimeError):
        await breaker.call(_raise, RuntimeError("down"))
    await anyio.sleep(0.08)

    stuck = asyncio.create_task(breaker.call(hang))
    await asyncio.sleep(0)
    assert breaker.state == "half_open"
    stuck.cancel()
    with pytest.raises(asyncio.CancelledError):
        await stuck

    assert breaker.state == "half_open"
    assert await breaker.call(lambda: "ok") == "ok"
    assert breaker.state == "closed"


@pytest.mark.anyio
async def test_cancelled_call_while_closed_leaves_breaker_closed():
    breaker = CircuitBreaker(name="provider", failure_threshold=1)

    task = asyncio.create_task(breaker.call(asyncio.sleep, 5))
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert breaker.state == "closed"
    assert await breaker.call(lambda: "ok") == "ok"


@pytest.mark.anyio
async def test_permanent_errors_do_not_count_as_failures():
    breaker = CircuitBreaker(
        name="provider",
        failure_threshold=1,
        is_failure=lambda exc: not isinstance(exc, PermanentExternalError),
    )

    for _ in range(3):
        with pytest.raises(PermanentExternalError):
            await breaker.call(_raise, PermanentExternalError("not found", status_code=404))

    assert breaker.state == "closed"


@pytest.mark.anyio
async def test_failures_outside_window_are_forgotten():
    breaker = CircuitBreaker(name="provider", failure_threshold=2, window_seconds=0.05)

    with pytest.raises(RuntimeError):
        await breaker.call(_raise, RuntimeError("blip"))
    await anyio.sleep(0.08)
    with pytest.raises(RuntimeError):
        await breaker.call(_raise, RuntimeError("blip"))

    assert breaker.state == "closed"


@pytest.mark.anyio
async def test_timeout_counts_as_failure():
    breaker = CircuitBreaker(name="provider", failure_threshold=1, recovery_time=5, timeout_seconds=0.01)

    with pytest.raises(asyncio.TimeoutError):
        await breaker.call(asyncio.sleep, 0.2)

    assert breaker.state == "open"
