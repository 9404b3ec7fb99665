from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ordersync.domain.errors import ValidationError
from ordersync.domain.handlers.common import APPLIED, SKIPPED, changed_values, money_amount, money_currency
from ordersync.domain.orders import service as orders_service
from ordersync.domain.orders.db_models import OrderRecord, OrderStatus, PaymentStatus
from ordersync.domain.webhooks.schemas import WebhookEnvelope

logger = logging.getLogger(__name__)

PROVIDER_ORDER_STATE = {
    "OPEN": OrderStatus.PROCESSING,
    "COMPLETED": OrderStatus.COMPLETED,
    "CANCELED": OrderStatus.CANCELLED,
    "CANCELLED": OrderStatus.CANCELLED,
}

FULFILLMENT_STATE = {
    "PROPOSED": "PROCESSING",
    "RESERVED": "PROCESSING",
    "PREPARED": "READY",
    "COMPLETED": "COMPLETED",
    "CANCELED": "CANCELLED",
    "CANCELLED": "CANCELLED",
    "FAILED": "FAILED",
}

RECIPIENT_SECTIONS = ("shipment_details", "pickup_details", "delivery_details")


def map_order_state(state: str | None) -> str:
    return PROVIDER_ORDER_STATE.get((state or "").upper(), OrderStatus.PENDING)


def _require_order_id(envelope: WebhookEnvelope) -> str:
    external_order_id = envelope.external_order_id()
    if not external_order_id:
        raise ValidationError(f"{envelope.type} event has no order id", reason="missing_order_id")
    return external_order_id


def _as_int(value) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _is_older_version(order: OrderRecord, version: int | None) -> bool:
    return version is not None and order.external_version is not None and version < order.external_version


def _recipient(order_data: dict) -> dict:
    fulfillments = order_data.get("fulfillments") or []
    if not fulfillments or not isinstance(fulfillments[0], dict):
        return {}
    for section in RECIPIENT_SECTIONS:
        recipient = (fulfillments[0].get(section) or {}).get("recipient")
        if isinstance(recipient, dict):
            return recipient
    return {}


def _line_items(order_data: dict) -> list[dict] | None:
    items = order_data.get("line_items")
    if not isinstance(items, list):
        return None
    parsed = []
    for item in items:
        if not isinstance(item, dict):
            continue
        parsed.append(
            {
                "name": item.get("name"),
                "quantity": item.get("quantity"),
                "base_price_cents": money_amount(item.get("base_price_money")),
                "total_cents": money_amount(item.get("total_money")),
            }
        )
    return parsed


def order_details(order_data: dict) -> dict:
    """Local order fields carried by a full provider order object."""
    values: dict = {}
    line_items = _line_items(order_data)
    if line_items is not None:
        values["line_items"] = line_items
    total = money_amount(order_data.get("total_money"))
    if total is not None:
        values["total_cents"] = total
        values["currency"] = money_currency(order_data.get("total_money"))
    recipient = _recipient(order_data)
    if recipient.get("display_name"):
        values["customer_name"] = recipient["display_name"]
    if recipient.get("email_address"):
        values["email"] = recipient["email_address"]
    if recipient.get("phone_number"):
        values["phone"] = recipient["phone_number"]
    return values


async def handle_order_created(session: AsyncSession, envelope: WebhookEnvelope) -> str:
    external_order_id = _require_order_id(envelope)
    summary = envelope.object_section("order_created")
    order_data = envelope.object_section("order")
    state = summary.get("state") or order_data.get("state")
    version = _as_int(summary.get("version", order_data.get("version")))

    order, created = await orders_service.get_or_create_order(session, external_order_id)
    was_stub = order.is_stub and not created

    values = order_details(order_data)
    values["is_stub"] = False
    if not _is_older_version(order, version):
        if state:
            values["external_state"] = state.upper()
        if version is not None:
            values["external_version"] = version
        target = map_order_state(state)
        if orders_service.advances(order.status, target):
            values["status"] = target
    values = changed_values(order, values)
    if not values:
        return SKIPPED
    await orders_service.update_order(session, order, **values)
    logger.info(
        "order_created_applied",
        extra={"extra": {"order_id": order.order_id, "merged_stub": was_stub, "status": order.status}},
    )
    return APPLIED


async def handle_order_updated(session: AsyncSession, envelope: WebhookEnvelope) -> str:
    external_order_id = _require_order_id(envelope)
    summary = envelope.object_section("order_updated") or envelope.object_section("order")
    state = (summary.get("state") or "").upper() or None
    version = _as_int(summary.get("version"))

    order, _ = await orders_service.get_or_create_order(session, external_order_id)
    if _is_older_version(order, version):
        logger.info(
            "order_update_out_of_date",
            extra={"extra": {"order_id": order.order_id, "version": version, "current": order.external_version}},
        )
        return SKIPPED

    values: dict = {}
    if state:
        values["external_state"] = state
    if version is not None:
        values["external_version"] = version
    if order.status not in OrderStatus.FINAL:
        if state == "COMPLETED":
            values["status"] = OrderStatus.COMPLETED
        elif state in ("CANCELED", "CANCELLED"):
            values["status"] = OrderStatus.CANCELLED
            if order.payment_status == PaymentStatus.PAID:
                values["payment_status"] = PaymentStatus.REFUNDED
    values = changed_values(order, values)
    if not values:
        return SKIPPED
    await orders_service.update_order(session, order, **values)
    return APPLIED


async def handle_fulfillment_updated(session: AsyncSession, envelope: WebhookEnvelope) -> str:
    external_order_id = _require_order_id(envelope)
    summary = envelope.object_section("order_fulfillment_updated")
    updates = summary.get("fulfillment_update") or []
    new_state = None
    if updates and isinstance(updates[0], dict):
        new_state = (updates[0].get("new_state") or "").upper() or None
    if not new_state:
        logger.info("fulfillment_update_without_state", extra={"extra": {"external_order_id": external_order_id}})
        return SKIPPED
    fulfillment_status = FULFILLMENT_STATE.get(new_state)
    if fulfillment_status is None:
        logger.info(
            "fulfillment_state_unmapped",
            extra={"extra": {"external_order_id": external_order_id, "state": new_state}},
        )
        return SKIPPED

    order, _ = await orders_service.get_or_create_order(session, external_order_id)
    values = changed_values(order, {"fulfillment_status": fulfillment_status})
    if not values:
        return SKIPPED
    await orders_service.update_order(session, order, **values)
    return APPLIED
