"""HTTP client for the provider's orders and payments API."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from ordersync.domain.errors import PermanentExternalError, TransientExternalError
from ordersync.infra.metrics import metrics
from ordersync.shared.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderSnapshot:
    order_id: str
    state: str | None
    version: int | None
    total_cents: int | None = None
    currency: str | None = None
    customer_name: str | None = None
    email: str | None = None
    phone: str | None = None
    line_items: list[dict] | None = None
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, payload: dict) -> "OrderSnapshot":
        order = payload.get("order", payload)
        total = order.get("total_money") or {}
        recipient: dict = {}
        fulfillments = order.get("fulfillments") or []
        if fulfillments and isinstance(fulfillments[0], dict):
            for section in ("shipment_details", "pickup_details", "delivery_details"):
                candidate = (fulfillments[0].get(section) or {}).get("recipient")
                if isinstance(candidate, dict):
                    recipient = candidate
                    break
        version = order.get("version")
        return cls(
            order_id=str(order.get("id") or ""),
            state=(order.get("state") or None),
            version=int(version) if version is not None else None,
            total_cents=total.get("amount"),
            currency=total.get("currency"),
            customer_name=recipient.get("display_name"),
            email=recipient.get("email_address"),
            phone=recipient.get("phone_number"),
            line_items=order.get("line_items"),
            raw=order,
        )


def _retry_after_seconds(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(tz=timezone.utc)).total_seconds())


def _is_circuit_failure(exc: BaseException) -> bool:
    return not isinstance(exc, PermanentExternalError)


class ProviderClient:
    """Owns one ``httpx.AsyncClient``. Call ``open()`` before use and ``close()`` after."""

    def __init__(
        self,
        *,
        base_url: str,
        access_token: str | None,
        api_version: str,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._access_token = access_token
        self.api_version = api_version
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.breaker = breaker or CircuitBreaker(name="provider", is_failure=_is_circuit_failure)

    @classmethod
    def from_settings(cls, app_settings, *, transport: httpx.AsyncBaseTransport | None = None) -> "ProviderClient":
        breaker = CircuitBreaker(
            name="provider",
            failure_threshold=app_settings.provider_circuit_failure_threshold,
            recovery_time=app_settings.provider_circuit_recovery_seconds,
            window_seconds=app_settings.provider_circuit_window_seconds,
            half_open_max_calls=app_settings.provider_circuit_half_open_max_calls,
            is_failure=_is_circuit_failure,
        )
        return cls(
            base_url=app_settings.provider_base_url,
            access_token=app_settings.provider_access_token,
            api_version=app_settings.provider_api_version,
            timeout_seconds=app_settings.provider_timeout_seconds,
            transport=transport,
            breaker=breaker,
        )

    @property
    def configured(self) -> bool:
        return bool(self._access_token)

    async def open(self) -> None:
        if self._client is not None:
            return
        headers = {"Square-Version": self.api_version, "Accept": "application/json"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout_seconds,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None

    async def _send(self, operation: str, method: str, path: str, **kwargs: Any) -> dict:
        if self._client is None:
            raise RuntimeError("provider_client_not_open")
        response = await self._client.request(method, path, **kwargs)
        status = response.status_code
        if status == 429:
            raise TransientExternalError(
                f"{operation} rate limited",
                status_code=status,
                retry_after=_retry_after_seconds(response.headers.get("Retry-After")),
            )
        if status >= 500:
            raise TransientExternalError(f"{operation} failed upstream with {status}", status_code=status)
        if status >= 400:
            raise PermanentExternalError(f"{operation} rejected with {status}", status_code=status)
        return response.json() if response.content else {}

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> dict:
        try:
            payload = await self.breaker.call(self._send, operation, method, path, **kwargs)
        except Exception as exc:
            metrics.record_provider_request(operation, type(exc).__name__)
            logger.warning(
                "provider_request_failed",
                extra={"extra": {"operation": operation, "error": type(exc).__name__}},
            )
            raise
        metrics.record_provider_request(operation, "ok")
        return payload

    async def get_order(self, external_order_id: str) -> OrderSnapshot:
        payload = await self._request("get_order", "GET", f"/v2/orders/{external_order_id}")
        return OrderSnapshot.from_payload(payload)

    async def update_order(
        self,
        external_order_id: str,
        patch: dict,
        *,
        version: int | None,
        idempotency_key: str,
    ) -> OrderSnapshot:
        order = dict(patch)
        if version is not None:
            order["version"] = version
        payload = await self._request(
            "update_order",
            "PUT",
            f"/v2/orders/{external_order_id}",
            json={"order": order, "idempotency_key": idempotency_key},
        )
        return OrderSnapshot.from_payload(payload)

    async def list_payments(self, *, begin_time: datetime, end_time: datetime | None = None) -> list[dict]:
        params: dict[str, Any] = {"begin_time": begin_time.isoformat(), "sort_order": "ASC"}
        if end_time is not None:
            params["end_time"] = end_time.isoformat()
        payments: list[dict] = []
        while True:
            payload = await self._request("list_payments", "GET", "/v2/payments", params=params)
            payments.extend(payload.get("payments") or [])
            cursor = payload.get("cursor")
            if not cursor:
                return payments
            params = {**params, "cursor": cursor}
