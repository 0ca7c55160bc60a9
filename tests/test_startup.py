from vetpay.common.config import CommonSettings
from vetpay.common.startup import _safe_env, log_startup_config, provider_readiness


def test_secret_like_keys_are_redacted(monkeypatch):
    monkeypatch.setenv("MERCADOPAGO_ACCESS_TOKEN", "APP_USR-123")
    monkeypatch.setenv("APP_URL", "https://vet.test")
    monkeypatch.delenv("FRONTEND_URL", raising=False)

    assert _safe_env("MERCADOPAGO_ACCESS_TOKEN") == "<redacted>"
    assert _safe_env("APP_URL") == "https://vet.test"
    assert _safe_env("FRONTEND_URL") == "<unset>"


def test_provider_readiness():
    settings = CommonSettings(_env_file=None, mercadopago_access_token=None)
    assert provider_readiness(settings)["mercadopago"] == "unconfigured"
    assert provider_readiness(settings)["manual"] == "ready"


def test_missing_webhook_secret_is_loud(caplog):
    settings = CommonSettings(_env_file=None, mercadopago_access_token="TEST-token", mercadopago_webhook_secret=None)

    with caplog.at_level("INFO"):
        log_startup_config("vetpay-payments", ["APP_URL"], settings)

    assert "startup_config" in caplog.text
    assert "insecure_webhooks" in caplog.text
