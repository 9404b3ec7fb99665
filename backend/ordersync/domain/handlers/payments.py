from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ordersync.domain.errors import ValidationError
from ordersync.domain.handlers.common import APPLIED, SKIPPED, changed_values, money_amount, money_currency
from ordersync.domain.orders import service as orders_service
from ordersync.domain.orders.db_models import OrderRecord, OrderStatus, PaymentStatus, RefundRecord
from ordersync.domain.webhooks.schemas import WebhookEnvelope
from ordersync.infra.db import insert_if_absent, utcnow

logger = logging.getLogger(__name__)

PROVIDER_PAYMENT_STATUS = {
    "COMPLETED": PaymentStatus.PAID,
    "CAPTURED": PaymentStatus.PAID,
    "APPROVED": PaymentStatus.PAID,
    "FAILED": PaymentStatus.FAILED,
    "CANCELED": PaymentStatus.FAILED,
    "CANCELLED": PaymentStatus.FAILED,
    "REFUNDED": PaymentStatus.REFUNDED,
}

# allowed forward moves; anything else would be a downgrade
PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.REFUNDED},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}


def map_payment_status(provider_status: str | None) -> str:
    return PROVIDER_PAYMENT_STATUS.get((provider_status or "").upper(), PaymentStatus.PENDING)


def payment_can_move(current: str, target: str) -> bool:
    return target in PAYMENT_TRANSITIONS.get(current, set())


async def apply_payment(
    session: AsyncSession,
    payment_data: dict,
    *,
    fallback_payment_id: str | None = None,
    now: datetime | None = None,
) -> str:
    """Upsert a provider payment and roll its status up to the owning order."""
    now = now or utcnow()
    external_payment_id = payment_data.get("id") or fallback_payment_id
    external_order_id = payment_data.get("order_id")
    if not external_payment_id:
        raise ValidationError("Payment is missing its id", reason="missing_payment_id")
    if not external_order_id:
        raise ValidationError("Payment is missing order_id", reason="missing_order_id")

    provider_status = (payment_data.get("status") or "").upper() or None
    target = map_payment_status(provider_status)
    amount_money = payment_data.get("amount_money")
    amount = money_amount(amount_money)
    currency = money_currency(amount_money)

    order, _ = await orders_service.get_or_create_order(session, str(external_order_id), now=now)
    payment, created = await orders_service.get_or_create_payment(
        session,
        order=order,
        external_payment_id=str(external_payment_id),
        amount_cents=amount or 0,
        currency=currency,
        now=now,
    )

    payment_values: dict = {"provider_status": provider_status, "raw_data": payment_data}
    if amount is not None:
        payment_values["amount_cents"] = amount
    if payment_can_move(payment.status, target):
        payment_values["status"] = target
    elif target != payment.status:
        logger.info(
            "payment_status_downgrade_ignored",
            extra={"extra": {"payment_id": external_payment_id, "current": payment.status, "incoming": target}},
        )
    payment_values = changed_values(payment, payment_values)
    if payment_values:
        payment = await orders_service.update_payment(session, payment, now=now, **payment_values)

    order_values: dict = {}
    if payment.status == PaymentStatus.PAID:
        if order.payment_status in (PaymentStatus.PENDING, PaymentStatus.FAILED):
            order_values["payment_status"] = PaymentStatus.PAID
        if order.status == OrderStatus.PENDING:
            order_values["status"] = OrderStatus.PROCESSING
    elif payment.status == PaymentStatus.FAILED:
        if order.payment_status == PaymentStatus.PENDING:
            order_values["payment_status"] = PaymentStatus.FAILED
    elif payment.status == PaymentStatus.REFUNDED:
        if order.payment_status == PaymentStatus.PAID:
            order_values["payment_status"] = PaymentStatus.REFUNDED
    if order.is_stub and not order.total_cents and amount:
        order_values["total_cents"] = amount
        order_values["currency"] = currency
    if order_values:
        await orders_service.update_order(session, order, now=now, **order_values)

    logger.info(
        "payment_applied",
        extra={
            "extra": {
                "payment_id": external_payment_id,
                "order_id": order.order_id,
                "status": payment.status,
                "created": created,
            }
        },
    )
    return APPLIED if (payment_values or order_values or created) else SKIPPED


async def handle_payment_event(session: AsyncSession, envelope: WebhookEnvelope) -> str:
    payment_data = envelope.object_section("payment")
    if not payment_data:
        raise ValidationError("Payment event has no payment object", reason="missing_payment")
    return await apply_payment(session, payment_data, fallback_payment_id=envelope.data.id)


async def handle_refund_event(session: AsyncSession, envelope: WebhookEnvelope) -> str:
    refund_data = envelope.object_section("refund")
    external_refund_id = refund_data.get("id") or envelope.data.id
    if not refund_data or not external_refund_id:
        raise ValidationError("Refund event has no refund id", reason="missing_refund_id")
    now = utcnow()
    external_payment_id = refund_data.get("payment_id")
    status = (refund_data.get("status") or "PENDING").upper()
    amount = money_amount(refund_data.get("amount_money"))

    payment = None
    if external_payment_id:
        payment = await orders_service.get_payment_by_external_id(session, str(external_payment_id))

    await insert_if_absent(
        session,
        RefundRecord,
        {
            "refund_id": str(uuid.uuid4()),
            "external_refund_id": str(external_refund_id),
            "external_payment_id": external_payment_id,
            "payment_id": payment.payment_id if payment else None,
            "status": status,
            "amount_cents": amount or 0,
            "reason": refund_data.get("reason"),
            "raw_data": refund_data,
            "created_at": now,
            "updated_at": now,
        },
        index_elements=["external_refund_id"],
    )
    refund = await session.scalar(
        select(RefundRecord)
        .where(RefundRecord.external_refund_id == str(external_refund_id))
        .execution_options(populate_existing=True)
    )
    refund_values = changed_values(
        refund,
        {
            "status": status,
            "payment_id": payment.payment_id if payment else refund.payment_id,
            "amount_cents": amount if amount is not None else refund.amount_cents,
            "raw_data": refund_data,
        },
    )
    if refund_values:
        await session.execute(
            update(RefundRecord)
            .where(RefundRecord.refund_id == refund.refund_id)
            .values(**refund_values, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    if status != "COMPLETED":
        return APPLIED

    order = None
    external_order_id = refund_data.get("order_id")
    if external_order_id:
        order = await orders_service.get_order_by_external_id(session, str(external_order_id))
    if order is None and payment is not None:
        order = await session.get(OrderRecord, payment.order_id, populate_existing=True)
    if payment is not None and payment_can_move(payment.status, PaymentStatus.REFUNDED):
        await orders_service.update_payment(session, payment, now=now, status=PaymentStatus.REFUNDED)
    if order is not None and order.payment_status != PaymentStatus.REFUNDED:
        await orders_service.update_order(session, order, now=now, payment_status=PaymentStatus.REFUNDED)
    elif order is None:
        logger.warning(
            "refund_order_unknown",
            extra={"extra": {"refund_id": external_refund_id, "payment_id": external_payment_id}},
        )
    return APPLIED
