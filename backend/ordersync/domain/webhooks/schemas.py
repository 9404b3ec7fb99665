from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ordersync.domain.errors import ValidationError

ORDER_OBJECT_KEYS = ("order_created", "order_updated", "order_fulfillment_updated", "order")


class EventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str | None = None
    id: str | None = None
    object: dict[str, Any] = Field(default_factory=dict)
    deleted: bool = False


class WebhookEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    merchant_id: str | None = Field(None, validation_alias=AliasChoices("merchantId", "merchant_id"))
    type: str = Field(min_length=1, max_length=64)
    event_id: str = Field(min_length=1, max_length=128, validation_alias=AliasChoices("eventId", "event_id"))
    created_at: datetime | None = Field(None, validation_alias=AliasChoices("createdAt", "created_at"))
    data: EventData = Field(default_factory=EventData)

    def object_section(self, key: str) -> dict[str, Any]:
        section = self.data.object.get(key)
        return section if isinstance(section, dict) else {}

    def external_order_id(self) -> str | None:
        if self.type.startswith("order."):
            for key in ORDER_OBJECT_KEYS:
                section = self.object_section(key)
                order_id = section.get("order_id") or (section.get("id") if key == "order" else None)
                if order_id:
                    return str(order_id)
            return self.data.id
        if self.type.startswith("payment."):
            order_id = self.object_section("payment").get("order_id")
            return str(order_id) if order_id else None
        if self.type.startswith("refund."):
            order_id = self.object_section("refund").get("order_id")
            return str(order_id) if order_id else None
        return None

    def partition_key(self) -> str:
        """Events sharing a key are processed strictly in receipt order."""
        order_id = self.external_order_id()
        if order_id:
            return order_id
        if self.type.startswith("refund."):
            payment_id = self.object_section("refund").get("payment_id")
            if payment_id:
                return f"payment:{payment_id}"
        return f"event:{self.event_id}"


def parse_envelope(raw_body: bytes) -> WebhookEnvelope:
    try:
        payload = json.loads(raw_body or b"")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError("Webhook body is not valid JSON", reason="malformed_json") from exc
    return envelope_from_payload(payload)


def envelope_from_payload(payload: Any) -> WebhookEnvelope:
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object", reason="invalid_envelope")
    try:
        return WebhookEnvelope.model_validate(payload)
    except PydanticValidationError as exc:
        fields = ",".join(".".join(str(part) for part in error["loc"]) for error in exc.errors())
        raise ValidationError(f"Invalid webhook envelope: {fields}", reason="invalid_envelope") from exc
