from __future__ import annotations

import asyncio
import logging
import socket
import time
import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ordersync.domain.events import service as event_service
from ordersync.domain.events.db_models import InboundEvent
from ordersync.domain.handlers.registry import HandlerRegistry
from ordersync.domain.queue import service as queue_service
from ordersync.domain.queue.db_models import ProcessingRecord, ProcessingStatus
from ordersync.domain.retry.classifier import RetryPolicy
from ordersync.infra.logging import bound_log_context
from ordersync.infra.metrics import metrics

logger = logging.getLogger(__name__)


class WorkerPool:
    """A fixed number of asyncio workers draining the dispatch queue.

    Each worker leases one record at a time, runs its handler under a timeout
    and commits the handler's effects together with the completion.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: HandlerRegistry,
        *,
        concurrency: int = 5,
        lease_seconds: float = 90.0,
        handler_timeout_seconds: float = 30.0,
        poll_interval_seconds: float = 1.0,
        retry_policy: RetryPolicy | None = None,
        name: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self.concurrency = max(1, concurrency)
        self.lease_seconds = lease_seconds
        self.handler_timeout_seconds = handler_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.retry_policy = retry_policy or RetryPolicy()
        self.name = name or f"{socket.gethostname()}-{uuid.uuid4().hex[:6]}"
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @classmethod
    def from_settings(cls, session_factory, registry: HandlerRegistry, app_settings) -> "WorkerPool":
        return cls(
            session_factory,
            registry,
            concurrency=app_settings.worker_concurrency,
            lease_seconds=app_settings.worker_lease_seconds,
            handler_timeout_seconds=app_settings.handler_timeout_seconds,
            poll_interval_seconds=app_settings.worker_poll_interval_seconds,
            retry_policy=RetryPolicy.from_settings(app_settings),
        )

    def worker_id(self, index: int) -> str:
        return f"{self.name}-{index}"

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._run_worker(self.worker_id(index)), name=self.worker_id(index))
            for index in range(self.concurrency)
        ]
        logger.info("worker_pool_started", extra={"extra": {"pool": self.name, "concurrency": self.concurrency}})

    async def close(self) -> None:
        self._stopping.set()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("worker_pool_stopped", extra={"extra": {"pool": self.name}})

    async def drain(self) -> int:
        """Process until nothing is claimable. Returns the number of records handled."""

        async def _drain_one(worker_id: str) -> int:
            handled = 0
            while await self.run_once(worker_id):
                handled += 1
            return handled

        results = await asyncio.gather(*(_drain_one(self.worker_id(index)) for index in range(self.concurrency)))
        return sum(results)

    async def _run_worker(self, worker_id: str) -> None:
        while not self._stopping.is_set():
            try:
                processed = await self.run_once(worker_id)
            except Exception:  # noqa: BLE001
                logger.exception("worker_poll_failed", extra={"extra": {"worker_id": worker_id}})
                processed = False
            if processed:
                continue
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def run_once(self, worker_id: str) -> bool:
        async with self._session_factory() as session:
            record = await queue_service.claim_next(session, worker_id, lease_seconds=self.lease_seconds)
            await session.commit()
        if record is None:
            return False
        with bound_log_context(event_id=record.event_id, event_type=record.event_type, worker_id=worker_id):
            await self._process(record, worker_id)
        return True

    async def _process(self, record: ProcessingRecord, worker_id: str) -> None:
        started = time.monotonic()
        async with self._session_factory() as session:
            try:
                event = await session.get(InboundEvent, record.event_id)
                if event is None:
                    raise LookupError(f"inbound event {record.event_id} is missing")
                outcome = await asyncio.wait_for(
                    self._registry.dispatch(session, event), timeout=self.handler_timeout_seconds
                )
                await queue_service.complete(session, record, worker_id)
                await event_service.mark_completed(session, record.event_id)
                await session.commit()
            except queue_service.LeaseLostError:
                await session.rollback()
                logger.warning("processing_lease_lost", extra={"extra": {"worker_id": worker_id}})
                metrics.record_handler(record.event_type, "lease_lost")
                return
            except Exception as exc:  # noqa: BLE001
                await session.rollback()
                await self._record_failure(record, worker_id, exc)
                metrics.record_handler(record.event_type, "failed", time.monotonic() - started)
                return
        duration = time.monotonic() - started
        metrics.record_handler(record.event_type, outcome, duration)
        logger.info(
            "event_processed",
            extra={"extra": {"outcome": outcome, "attempt": record.attempts, "duration_ms": int(duration * 1000)}},
        )

    async def _record_failure(self, record: ProcessingRecord, worker_id: str, exc: Exception) -> None:
        if isinstance(exc, asyncio.TimeoutError):
            logger.warning(
                "handler_timeout", extra={"extra": {"timeout_seconds": self.handler_timeout_seconds}}
            )
        else:
            logger.warning(
                "handler_failed", extra={"extra": {"error": type(exc).__name__}}, exc_info=exc
            )
        async with self._session_factory() as session:
            outcome = await queue_service.fail(session, record, worker_id, exc, policy=self.retry_policy)
            if outcome is not None:
                terminal = outcome.status == ProcessingStatus.DEAD_LETTER
                if outcome.status == ProcessingStatus.COMPLETED:
                    await event_service.mark_completed(session, record.event_id)
                else:
                    await event_service.mark_failed(
                        session, record.event_id, outcome.error.message, terminal=terminal
                    )
            await session.commit()
