from __future__ import annotations

import logging
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from ordersync.domain.errors import PermanentExternalError
from ordersync.domain.events.db_models import InboundEvent
from ordersync.domain.handlers import orders, payments
from ordersync.domain.handlers.common import IGNORED
from ordersync.domain.webhooks.schemas import WebhookEnvelope, envelope_from_payload

logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, WebhookEnvelope], Awaitable[str]]


class HandlerRegistry:
    """Routes stored events to the handler registered for their type."""

    def __init__(self, *, merchant_id: str | None = None) -> None:
        self.merchant_id = merchant_id
        self._handlers: dict[str, Handler] = {}

    def register(self, event_type: str, handler: Handler) -> None:
        self._handlers[event_type] = handler

    def handler_for(self, event_type: str) -> Handler | None:
        return self._handlers.get(event_type)

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, session: AsyncSession, event: InboundEvent) -> str:
        envelope = envelope_from_payload(event.payload_json)
        if self.merchant_id and envelope.merchant_id and envelope.merchant_id != self.merchant_id:
            raise PermanentExternalError(
                f"Merchant mismatch for event {event.event_id}", status_code=403
            )
        handler = self.handler_for(envelope.type)
        if handler is None:
            logger.info("event_type_ignored", extra={"extra": {"event_type": envelope.type}})
            return IGNORED
        return await handler(session, envelope)


def build_registry(app_settings) -> HandlerRegistry:
    registry = HandlerRegistry(merchant_id=app_settings.provider_merchant_id)
    registry.register("order.created", orders.handle_order_created)
    registry.register("order.updated", orders.handle_order_updated)
    registry.register("order.fulfillment.updated", orders.handle_fulfillment_updated)
    registry.register("payment.created", payments.handle_payment_event)
    registry.register("payment.updated", payments.handle_payment_event)
    registry.register("refund.created", payments.handle_refund_event)
    registry.register("refund.updated", payments.handle_refund_event)
    logger.info("handler_registry_built", extra={"extra": {"event_types": registry.event_types}})
    return registry
