import json
from types import SimpleNamespace

import httpx
import pytest

from ordersync.infra.email import SENDGRID_URL, EmailAdapter, NoopEmailAdapter, resolve_email_adapter


def _email_settings(**overrides):
    values = {
        "email_mode": "sendgrid",
        "email_from": "alerts@ordersync.test",
        "email_from_name": "Ordersync",
        "sendgrid_api_key": "sg-key",
        "email_timeout_seconds": 5,
        "email_http_max_attempts": 3,
        "email_http_backoff_seconds": 0,
        "email_http_backoff_max_seconds": 0,
        "email_circuit_failure_threshold": 5,
        "email_circuit_recovery_seconds": 30,
        "testing": False,
    }
    values.update(overrides)
    return SimpleNamespace(**values, email_sender=values["email_from"])


@pytest.mark.anyio
async def test_sendgrid_send_retries_server_errors():
    requests = []
    statuses = iter([503, 202])

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(next(statuses))

    adapter = EmailAdapter(_email_settings(), http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    try:
        sent = await adapter.send_email("ops@example.com", "[HIGH] Events in dead letter", "2 events")
    finally:
        await adapter.close()

    assert sent is True
    assert len(requests) == 2
    assert str(requests[-1].url) == SENDGRID_URL
    body = json.loads(requests[-1].content)
    assert body["personalizations"] == [{"to": [{"email": "ops@example.com"}]}]
    assert body["from"] == {"email": "alerts@ordersync.test", "name": "Ordersync"}
    assert requests[-1].headers["Authorization"] == "Bearer sg-key"


@pytest.mark.anyio
async def test_sendgrid_client_error_raises():
    adapter = EmailAdapter(
        _email_settings(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(400))),
    )
    try:
        with pytest.raises(RuntimeError, match="sendgrid_status_400"):
            await adapter.send_email("ops@example.com", "subject", "body")
    finally:
        await adapter.close()


@pytest.mark.anyio
async def test_email_off_skips_delivery():
    adapter = EmailAdapter(_email_settings(email_mode="off"))

    assert await adapter.send_email("ops@example.com", "subject", "body") is False
    assert await NoopEmailAdapter().send_email("ops@example.com", "subject", "body") is False


def test_resolve_email_adapter_uses_noop_in_tests():
    assert isinstance(resolve_email_adapter(_email_settings(testing=True)), NoopEmailAdapter)
    assert isinstance(resolve_email_adapter(_email_settings(email_mode="off")), NoopEmailAdapter)
    assert isinstance(resolve_email_adapter(_email_settings()), EmailAdapter)
