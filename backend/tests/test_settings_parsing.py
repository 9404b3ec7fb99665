import pytest
from pydantic import ValidationError

from ordersync.settings import Settings


def _prod(**overrides) -> Settings:
    values = {
        "app_env": "prod",
        "testing": False,
        "webhook_signature_key": "sig-key",
        "ops_api_token": "ops-token",
        "metrics_token": "metrics-token",
        "_env_file": None,
    }
    values.update(overrides)
    return Settings(**values)


def test_dev_settings_allow_missing_secrets():
    settings = Settings(app_env="dev", webhook_signature_key=None, _env_file=None)

    assert settings.webhook_signature_key is None
    assert settings.webhook_signature_policy == "permissive"
    assert settings.alert_min_severity == "HIGH"


def test_defaults_to_prod_when_env_missing(monkeypatch):
    monkeypatch.delenv("APP_ENV", raising=False)
    monkeypatch.delenv("TESTING", raising=False)

    settings = Settings(
        webhook_signature_key="sig-key",
        ops_api_token="ops-token",
        metrics_enabled=False,
        _env_file=None,
    )

    assert settings.app_env == "prod"


def test_prod_settings_validate_when_complete():
    settings = _prod()

    assert settings.app_env == "prod"
    assert settings.worker_lease_seconds > settings.handler_timeout_seconds


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"webhook_signature_key": None}, "WEBHOOK_SIGNATURE_KEY"),
        ({"ops_api_token": "  "}, "OPS_API_TOKEN"),
        ({"metrics_enabled": True, "metrics_token": None}, "METRICS_TOKEN"),
        ({"testing": True}, "testing mode"),
    ],
)
def test_prod_rejects_incomplete_configuration(overrides, message):
    with pytest.raises(ValidationError) as exc_info:
        _prod(**overrides)

    assert message in str(exc_info.value)


def test_prod_allows_missing_metrics_token_when_metrics_disabled():
    settings = _prod(metrics_enabled=False, metrics_token=None)

    assert settings.metrics_token is None


def test_signature_keys_are_stripped(monkeypatch):
    monkeypatch.setenv("WEBHOOK_SIGNATURE_KEY", "  padded-key \n")
    monkeypatch.setenv("WEBHOOK_SANDBOX_SIGNATURE_KEY", "   ")

    settings = Settings(app_env="dev", _env_file=None)

    assert settings.webhook_signature_key == "padded-key"
    assert settings.webhook_sandbox_signature_key is None


@pytest.mark.parametrize(
    "env_value, expected",
    [
        (None, []),
        ("ops@example.com", ["ops@example.com"]),
        ("ops@example.com, oncall@example.com", ["ops@example.com", "oncall@example.com"]),
        ('["ops@example.com","oncall@example.com"]', ["ops@example.com", "oncall@example.com"]),
    ],
)
def test_alert_email_recipients_parsing(monkeypatch, env_value, expected):
    if env_value is None:
        monkeypatch.delenv("ALERT_EMAIL_RECIPIENTS", raising=False)
    else:
        monkeypatch.setenv("ALERT_EMAIL_RECIPIENTS", env_value)

    settings = Settings(app_env="dev", _env_file=None)

    assert settings.alert_email_recipients == expected


@pytest.mark.parametrize("ratio", [-0.1, 1.0, 1.5])
def test_jitter_ratio_must_be_fractional(ratio):
    with pytest.raises(ValidationError):
        Settings(app_env="dev", retry_jitter_ratio=ratio, _env_file=None)


def test_drift_sample_size_is_bounded():
    settings = Settings(app_env="dev", reconciliation_drift_sample_size=0, _env_file=None)

    assert settings.reconciliation_drift_sample_size == 0
    with pytest.raises(ValidationError):
        Settings(app_env="dev", reconciliation_drift_sample_size=51, _env_file=None)


def test_lease_must_exceed_handler_timeout():
    with pytest.raises(ValidationError) as exc_info:
        Settings(app_env="dev", worker_lease_seconds=30, handler_timeout_seconds=30, _env_file=None)

    assert "worker_lease_seconds" in str(exc_info.value)


def test_source_ranges_and_trusted_proxies_are_parsed(monkeypatch):
    monkeypatch.setenv("WEBHOOK_ALLOWED_SOURCE_CIDRS", "54.240.0.0/16, 2001:db8::/32")
    monkeypatch.setenv("TRUSTED_PROXIES", '["10.0.0.5", "172.16.0.0/12"]')

    settings = Settings(app_env="dev", _env_file=None)

    assert settings.webhook_allowed_source_cidrs == ["54.240.0.0/16", "2001:db8::/32"]
    assert settings.trusted_proxies == ["10.0.0.5", "172.16.0.0/12"]
    assert settings.webhook_reject_unknown_sources is False


def test_invalid_source_range_is_rejected():
    with pytest.raises(ValidationError) as exc_info:
        Settings(app_env="dev", webhook_allowed_source_cidrs="54.240.0.0/99", _env_file=None)

    assert "invalid network" in str(exc_info.value)
