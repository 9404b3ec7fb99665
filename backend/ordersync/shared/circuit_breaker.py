from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Generic, TypeVar

from ordersync.infra.metrics import metrics

logger = logging.getLogger("ordersync.circuit")

T = TypeVar("T")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitBreakerOpenError(RuntimeError):
    def __init__(self, name: str, state: str) -> None:
        super().__init__(f"circuit_{state}:{name}")
        self.name = name
        self.state = state


class CircuitBreaker(Generic[T]):
    """Counts failures in a sliding window and short-circuits calls while open.

    After ``recovery_time`` the breaker lets ``half_open_max_calls`` trial calls through;
    one success closes it again, one failure re-opens it.
    """

    def __init__(
        self,
        *,
        name: str,
        failure_threshold: int = 5,
        recovery_time: float = 30.0,
        window_seconds: float = 60.0,
        half_open_max_calls: int = 1,
        timeout_seconds: float | None = None,
        is_failure: Callable[[BaseException], bool] | None = None,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_time = max(0.01, recovery_time)
        self.window_seconds = max(0.01, window_seconds)
        self.half_open_max_calls = max(1, half_open_max_calls)
        self.timeout_seconds = None if timeout_seconds is None else max(0.01, timeout_seconds)
        self._is_failure = is_failure or (lambda exc: True)
        self._state = CLOSED
        self._opened_at = 0.0
        self._failures: Deque[float] = deque()
        self._half_open_calls = 0
        self._lock = asyncio.Lock()
        metrics.record_circuit_state(self.name, self._state)

    async def call(self, fn: Callable[..., T | Awaitable[T]], *args, **kwargs) -> T:
        await self._acquire()
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                if self.timeout_seconds is None:
                    result = await result
                else:
                    result = await asyncio.wait_for(result, timeout=self.timeout_seconds)
        except Exception as exc:
            if self._is_failure(exc):
                await self._record_failure()
                logger.warning(
                    "circuit_failure",
                    extra={"extra": {"name": self.name, "state": self._state, "error": type(exc).__name__}},
                )
            else:
                await self._record_success()
            raise
        except BaseException:
            self._release_half_open_slot()
            raise
        await self._record_success()
        return result  # type: ignore[return-value]

    def _release_half_open_slot(self) -> None:
        # a cancelled trial call gives its half-open slot back
        if self._state == HALF_OPEN and self._half_open_calls > 0:
            self._half_open_calls -= 1
            logger.info("circuit_half_open_slot_released", extra={"extra": {"name": self.name}})

    async def _acquire(self) -> None:
        async with self._lock:
            if self._state == OPEN:
                if time.monotonic() - self._opened_at < self.recovery_time:
                    raise CircuitBreakerOpenError(self.name, OPEN)
                self._transition(HALF_OPEN)
            if self._state == HALF_OPEN:
                if self._half_open_calls >= self.half_open_max_calls:
                    raise CircuitBreakerOpenError(self.name, HALF_OPEN)
                self._half_open_calls += 1

    async def _record_failure(self) -> None:
        async with self._lock:
            now = time.monotonic()
            if self._state == HALF_OPEN:
                self._trip(now)
                return
            self._failures.append(now)
            while self._failures and self._failures[0] < now - self.window_seconds:
                self._failures.popleft()
            if len(self._failures) >= self.failure_threshold:
                self._trip(now)

    async def _record_success(self) -> None:
        async with self._lock:
            self._failures.clear()
            if self._state != CLOSED:
                logger.info("circuit_closed", extra={"extra": {"name": self.name}})
                self._transition(CLOSED)

    def _trip(self, now: float) -> None:
        self._opened_at = now
        self._failures.clear()
        self._transition(OPEN)
        logger.warning("circuit_opened", extra={"extra": {"name": self.name}})

    def _transition(self, state: str) -> None:
        self._state = state
        self._half_open_calls = 0
        metrics.record_circuit_state(self.name, state)

    @property
    def state(self) -> str:
        return self._state
