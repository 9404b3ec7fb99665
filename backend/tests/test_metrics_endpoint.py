from ordersync.infra.metrics import configure_metrics
from ordersync.main import app
from ordersync.settings import settings
from tests.conftest import WEBHOOK_URL, encode, payment_event, signed_headers


def _samples(metric) -> list:
    samples = []
    for family in metric.collect():
        samples.extend(family.samples)
    return samples


def test_metrics_endpoint_renders_prometheus_payload(client):
    settings.metrics_token = None
    app.state.metrics = configure_metrics(True)

    body = encode(payment_event("evt-metrics"))
    client.post(WEBHOOK_URL, content=body, headers=signed_headers(body))
    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert b"webhook_events_total" in response.content
    assert b"http_request_latency_seconds" in response.content


def test_metrics_endpoint_requires_token_when_configured(client):
    settings.metrics_token = "secret-token"
    app.state.metrics = configure_metrics(True)

    unauthorized = client.get("/metrics")
    wrong = client.get("/metrics", headers={"Authorization": "Bearer nope"})
    authorized = client.get("/metrics", headers={"Authorization": "Bearer secret-token"})
    query_token = client.get("/metrics?token=secret-token")

    assert unauthorized.status_code == 401
    assert wrong.status_code == 401
    assert authorized.status_code == 200
    assert query_token.status_code == 401


def test_metrics_endpoint_in_prod_without_token_is_misconfigured(client):
    settings.metrics_token = None
    settings.app_env = "prod"
    app.state.metrics = configure_metrics(True)

    response = client.get("/metrics")

    assert response.status_code == 500
    assert response.json()["detail"] == "Metrics token misconfigured"


def test_metrics_path_label_uses_route_template(client_no_raise):
    settings.metrics_token = None
    app.state.metrics = configure_metrics(True)

    response = client_no_raise.get("/v1/ops/processing/evt-unknown")
    unmatched = client_no_raise.get("/does-not-exist/12345")

    assert response.status_code == 404
    assert unmatched.status_code == 404
    paths = {sample.labels.get("path") for sample in _samples(app.state.metrics.http_latency)}
    assert "/v1/ops/processing/{event_id}" in paths
    assert "unmatched" in paths
