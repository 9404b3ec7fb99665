import asyncio
import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("TESTING", "true")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("METRICS_ENABLED", "true")


def ensure_event_loop() -> asyncio.AbstractEventLoop:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    if loop.is_closed():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    return loop


ensure_event_loop()

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ordersync.domain.webhooks.signature import compute_signature, signing_message
from ordersync.infra import models  # noqa: F401
from ordersync.infra.db import Base, get_db_session
from ordersync.main import app
from ordersync.settings import settings

WEBHOOK_SECRET = "test-signature-key"
WEBHOOK_URL = "/v1/webhooks/square"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    tracked = (
        "app_env",
        "testing",
        "metrics_enabled",
        "metrics_token",
        "ops_api_token",
        "webhook_signature_key",
        "webhook_sandbox_signature_key",
        "webhook_signature_policy",
        "webhook_signature_scheme",
        "webhook_notification_url",
        "webhook_max_event_age_seconds",
        "webhook_max_body_bytes",
        "webhook_rate_limit_per_minute",
        "webhook_allowed_source_cidrs_raw",
        "webhook_reject_unknown_sources",
        "trust_proxy_headers",
        "trusted_proxies_raw",
        "provider_merchant_id",
        "job_heartbeat_required",
        "job_heartbeat_ttl_seconds",
        "email_mode",
    )
    original = {name: getattr(settings, name) for name in tracked}
    yield
    for name, value in original.items():
        setattr(settings, name, value)


@pytest.fixture(autouse=True)
def enable_test_mode():
    settings.testing = True
    settings.app_env = "dev"
    settings.email_mode = "off"
    settings.ops_api_token = None
    settings.webhook_signature_key = WEBHOOK_SECRET
    settings.webhook_signature_policy = "strict"
    settings.webhook_signature_scheme = "timestamp"
    settings.webhook_rate_limit_per_minute = 0
    yield


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture()
def client(async_session_maker):
    ensure_event_loop()

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


@pytest.fixture()
def client_no_raise(async_session_maker):
    """Test client that returns HTTP responses instead of raising server exceptions."""

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


def make_event(event_type: str, event_id: str, data: dict, *, merchant_id: str = "M1", created_at=None) -> dict:
    created_at = created_at or datetime.now(tz=timezone.utc)
    return {
        "merchantId": merchant_id,
        "type": event_type,
        "eventId": event_id,
        "createdAt": created_at.isoformat(),
        "data": data,
    }


def payment_event(
    event_id: str,
    *,
    payment_id: str = "pay1",
    order_id: str = "ord1",
    status: str = "COMPLETED",
    amount: int = 5826,
    event_type: str = "payment.updated",
) -> dict:
    return make_event(
        event_type,
        event_id,
        {
            "type": "payment",
            "id": payment_id,
            "object": {
                "payment": {
                    "id": payment_id,
                    "order_id": order_id,
                    "status": status,
                    "amount_money": {"amount": amount, "currency": "USD"},
                }
            },
        },
    )


def order_created_event(event_id: str, *, order_id: str = "ord1", state: str = "OPEN", version: int = 1) -> dict:
    return make_event(
        "order.created",
        event_id,
        {
            "type": "order",
            "id": order_id,
            "object": {
                "order_created": {"order_id": order_id, "state": state, "version": version},
                "order": {
                    "id": order_id,
                    "state": state,
                    "version": version,
                    "line_items": [
                        {"name": "Latte", "quantity": "2", "base_price_money": {"amount": 2913, "currency": "USD"}}
                    ],
                    "total_money": {"amount": 5826, "currency": "USD"},
                    "fulfillments": [
                        {
                            "type": "PICKUP",
                            "pickup_details": {
                                "recipient": {
                                    "display_name": "Ada Lovelace",
                                    "email_address": "ada@example.com",
                                    "phone_number": "+15555550100",
                                }
                            },
                        }
                    ],
                },
            },
        },
    )


def signed_headers(body: bytes, *, secret: str = WEBHOOK_SECRET, timestamp: str | None = None) -> dict:
    timestamp = timestamp or str(int(datetime.now(tz=timezone.utc).timestamp()))
    signature = compute_signature(secret, signing_message(body, timestamp))
    return {
        "content-type": "application/json",
        settings.webhook_signature_header: signature,
        settings.webhook_timestamp_header: timestamp,
    }


def encode(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")
