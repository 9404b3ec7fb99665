import asyncio

import httpx
import pytest
import sqlalchemy as sa

from ordersync.domain.errors import TransientExternalError
from ordersync.domain.orders.db_models import OrderRecord, PaymentRecord, PaymentStatus
from ordersync.domain.reconciliation.db_models import SyncRun, SyncRunStatus, SyncType
from ordersync.domain.reconciliation.payment_sync import sync_recent_payments
from ordersync.infra.provider_client import ProviderClient


def _provider(handler) -> ProviderClient:
    return ProviderClient(
        base_url="https://provider.test",
        access_token="token",
        api_version="2024-10-17",
        transport=httpx.MockTransport(handler),
    )


async def _sync(session_maker, provider, lookback_minutes=60):
    await provider.open()
    try:
        return await sync_recent_payments(session_maker, provider, lookback_minutes=lookback_minutes)
    finally:
        await provider.close()


def test_sync_upserts_payments_and_counts_failures(async_session_maker):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "payments": [
                    {
                        "id": "pay-sync-1",
                        "order_id": "ord-sync",
                        "status": "COMPLETED",
                        "amount_money": {"amount": 1200, "currency": "USD"},
                    },
                    {"id": "pay-sync-2", "status": "COMPLETED"},
                ]
            },
        )

    async def _run():
        report = await _sync(async_session_maker, _provider(handler))
        async with async_session_maker() as session:
            payments = list((await session.execute(sa.select(PaymentRecord))).scalars().all())
            order = await session.scalar(sa.select(OrderRecord).where(OrderRecord.external_order_id == "ord-sync"))
            run = await session.get(SyncRun, report.run_id)
        return report, payments, order, run

    report, payments, order, run = asyncio.run(_run())
    assert report.status == SyncRunStatus.COMPLETED
    assert report.processed == 1
    assert report.failed == 1
    assert [payment.external_payment_id for payment in payments] == ["pay-sync-1"]
    assert order.is_stub is True
    assert order.payment_status == PaymentStatus.PAID
    assert run.sync_type == SyncType.PAYMENT_SYNC
    assert run.items_processed == 1
    assert run.items_failed == 1


def test_sync_is_idempotent(async_session_maker):
    body = {"payments": [{"id": "pay-1", "order_id": "ord-1", "status": "COMPLETED"}]}

    async def _run():
        await _sync(async_session_maker, _provider(lambda request: httpx.Response(200, json=body)))
        await _sync(async_session_maker, _provider(lambda request: httpx.Response(200, json=body)))
        async with async_session_maker() as session:
            return await session.scalar(sa.select(sa.func.count()).select_from(PaymentRecord))

    assert asyncio.run(_run()) == 1


def test_provider_outage_marks_run_failed(async_session_maker):
    async def _run():
        with pytest.raises(TransientExternalError):
            await _sync(async_session_maker, _provider(lambda request: httpx.Response(503)))
        async with async_session_maker() as session:
            return list((await session.execute(sa.select(SyncRun))).scalars().all())

    runs = asyncio.run(_run())
    assert len(runs) == 1
    assert runs[0].status == SyncRunStatus.FAILED
    assert "TransientExternalError" in runs[0].error_message
