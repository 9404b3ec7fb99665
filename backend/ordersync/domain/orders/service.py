from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ordersync.domain.errors import StaleRecordError
from ordersync.domain.orders.db_models import OrderRecord, OrderStatus, PaymentRecord, PaymentStatus
from ordersync.infra.db import insert_if_absent, utcnow

logger = logging.getLogger(__name__)

# higher ranks are later in the order lifecycle
ORDER_STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.PROCESSING: 1,
    OrderStatus.PAID: 2,
    OrderStatus.COMPLETED: 3,
    OrderStatus.CANCELLED: 3,
    OrderStatus.FAILED: 3,
}


def advances(current: str, target: str) -> bool:
    return ORDER_STATUS_RANK.get(target, 0) > ORDER_STATUS_RANK.get(current, 0)


async def get_order_by_external_id(session: AsyncSession, external_order_id: str) -> OrderRecord | None:
    return await session.scalar(
        select(OrderRecord)
        .where(OrderRecord.external_order_id == external_order_id)
        .execution_options(populate_existing=True)
    )


async def get_or_create_order(
    session: AsyncSession,
    external_order_id: str,
    *,
    now: datetime | None = None,
) -> tuple[OrderRecord, bool]:
    """Return the order for ``external_order_id``, creating a stub when absent."""
    now = now or utcnow()
    created = await insert_if_absent(
        session,
        OrderRecord,
        {
            "order_id": str(uuid.uuid4()),
            "external_order_id": external_order_id,
            "status": OrderStatus.PENDING,
            "payment_status": PaymentStatus.PENDING,
            "total_cents": 0,
            "currency": "USD",
            "is_stub": True,
            "version": 1,
            "created_at": now,
            "updated_at": now,
        },
        index_elements=["external_order_id"],
    )
    order = await get_order_by_external_id(session, external_order_id)
    if order is None:
        raise RuntimeError("order_missing_after_insert")
    if created:
        logger.info("order_stub_created", extra={"extra": {"external_order_id": external_order_id}})
    return order, created


async def update_order(
    session: AsyncSession,
    order: OrderRecord,
    *,
    now: datetime | None = None,
    **values: Any,
) -> OrderRecord:
    """Apply ``values`` only if the order still has the version we read.

    Raises ``StaleRecordError`` when a concurrent writer got there first.
    """
    if not values:
        return order
    expected_version = order.version
    result = await session.execute(
        update(OrderRecord)
        .where(OrderRecord.order_id == order.order_id, OrderRecord.version == expected_version)
        .values(**values, version=OrderRecord.version + 1, updated_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleRecordError(f"Order {order.order_id} changed since version {expected_version}")
    await session.refresh(order)
    return order


async def get_payment_by_external_id(session: AsyncSession, external_payment_id: str) -> PaymentRecord | None:
    return await session.scalar(
        select(PaymentRecord)
        .where(PaymentRecord.external_payment_id == external_payment_id)
        .execution_options(populate_existing=True)
    )


async def get_or_create_payment(
    session: AsyncSession,
    *,
    order: OrderRecord,
    external_payment_id: str,
    amount_cents: int,
    currency: str,
    now: datetime | None = None,
) -> tuple[PaymentRecord, bool]:
    now = now or utcnow()
    created = await insert_if_absent(
        session,
        PaymentRecord,
        {
            "payment_id": str(uuid.uuid4()),
            "order_id": order.order_id,
            "external_payment_id": external_payment_id,
            "status": PaymentStatus.PENDING,
            "amount_cents": amount_cents,
            "currency": currency,
            "version": 1,
            "created_at": now,
            "updated_at": now,
        },
        index_elements=["external_payment_id"],
    )
    payment = await get_payment_by_external_id(session, external_payment_id)
    if payment is None:
        raise RuntimeError("payment_missing_after_insert")
    return payment, created


async def update_payment(
    session: AsyncSession,
    payment: PaymentRecord,
    *,
    now: datetime | None = None,
    **values: Any,
) -> PaymentRecord:
    if not values:
        return payment
    expected_version = payment.version
    result = await session.execute(
        update(PaymentRecord)
        .where(PaymentRecord.payment_id == payment.payment_id, PaymentRecord.version == expected_version)
        .values(**values, version=PaymentRecord.version + 1, updated_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleRecordError(f"Payment {payment.payment_id} changed since version {expected_version}")
    await session.refresh(payment)
    return payment


async def count_paid_payments(session: AsyncSession, order_id: str) -> int:
    count = await session.scalar(
        select(func.count())
        .select_from(PaymentRecord)
        .where(PaymentRecord.order_id == order_id, PaymentRecord.status == PaymentStatus.PAID)
    )
    return int(count or 0)
